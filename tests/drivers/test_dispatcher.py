import asyncio

import pytest

from autostart import AutoStarter
from drivers.bridges import FunctionBridge
from drivers.capabilities import builtin_bindings
from drivers.dispatcher import Dispatcher
from drivers.registry import DriverRegistry
from errors import (
    BridgeUnavailableError,
    CapabilityUnsupportedError,
    DispatchTimeoutError,
    MalformedCallError,
    NoCallFound,
    UnknownTargetError,
)
from policies import RestartPolicy
from tests.helpers import (
    RecordingBridge,
    StubLauncher,
    get_forecast,
    make_meta,
    make_provider,
    probe_factory,
    process_deployment,
)
from tests.utils import assert_parallel_execution, measure_duration, wait_for_condition

WEATHER_CALL = (
    "Let me look that up.\n"
    "```json\n"
    '{"target": "wx", "function": "get_forecast", "arguments": {"city": "Oslo"}}\n'
    "```"
)


def _weather(registry, bridge=None, **meta_fields):
    meta_fields.setdefault("prefix", "wx")
    return registry.register(
        make_meta("weather-1", **meta_fields),
        make_provider(),
        bridge,
        capabilities=builtin_bindings(meta_fields.get("capabilities", ())),
    )


def test_dispatch_routes_by_prefix_and_returns_bridge_result(registry, telemetry):
    async def _run():
        bridge = RecordingBridge({"temp": 21})
        _weather(registry, bridge)
        dispatcher = Dispatcher(registry, telemetry=telemetry)

        result = await dispatcher.dispatch(WEATHER_CALL)

        assert result == {"temp": 21}
        assert bridge.calls == 1
        assert bridge.operations[0].arguments == {"city": "Oslo"}
        event = telemetry.dispatches[-1]
        assert event.success is True
        assert event.driver_id == "weather-1"
        assert event.request_summary == "wx/get_forecast(Oslo)"

    asyncio.run(_run())


def test_unknown_target_never_touches_a_bridge(registry, telemetry):
    async def _run():
        bridge = RecordingBridge()
        _weather(registry, bridge)
        dispatcher = Dispatcher(registry, telemetry=telemetry)
        text = '{"target": "nope", "function": "get_forecast"}'

        with pytest.raises(UnknownTargetError) as excinfo:
            await dispatcher.dispatch(text)

        assert excinfo.value.raw_input == text
        assert bridge.calls == 0
        assert telemetry.snapshot()["dispatch_errors"] == 1

    asyncio.run(_run())


def test_no_call_found_is_distinct_from_failure(registry, telemetry):
    async def _run():
        bridge = RecordingBridge()
        _weather(registry, bridge)
        dispatcher = Dispatcher(registry, telemetry=telemetry)

        with pytest.raises(NoCallFound):
            await dispatcher.dispatch("It will probably rain, bring an umbrella.")

        assert bridge.calls == 0
        counters = telemetry.snapshot()
        assert counters["no_call"] == 1
        assert counters["dispatch_errors"] == 0

    asyncio.run(_run())


def test_malformed_call_is_reported_with_raw_input(registry):
    async def _run():
        _weather(registry, RecordingBridge())
        dispatcher = Dispatcher(registry)
        text = '```json\n{"target": "wx"}\n```'

        with pytest.raises(MalformedCallError) as excinfo:
            await dispatcher.dispatch(text)

        assert excinfo.value.raw_input == text

    asyncio.run(_run())


def test_timeout_reports_unknown_outcome(registry, telemetry):
    async def _run():
        _weather(registry, RecordingBridge(delay=0.5))
        dispatcher = Dispatcher(registry, telemetry=telemetry, default_timeout=5)

        with pytest.raises(DispatchTimeoutError) as excinfo:
            await dispatcher.dispatch(WEATHER_CALL, timeout=0.02)

        assert excinfo.value.driver_id == "weather-1"
        assert "outcome unknown" in str(excinfo.value)
        assert telemetry.dispatches[-1].error_type == "recoverable"

    asyncio.run(_run())


def test_bridge_exceptions_propagate_unchanged(registry, telemetry):
    async def _run():
        def boom(operation):
            raise RuntimeError("backend exploded")

        _weather(registry, RecordingBridge(boom))
        dispatcher = Dispatcher(registry, telemetry=telemetry)

        with pytest.raises(RuntimeError, match="backend exploded"):
            await dispatcher.dispatch(WEATHER_CALL)
        assert telemetry.dispatches[-1].error_type == "RuntimeError"

    asyncio.run(_run())


def test_mismatched_arguments_raise_typed_error(registry, telemetry):
    async def _run():
        bridge = FunctionBridge({"getForecast": get_forecast})
        _weather(registry, bridge)
        dispatcher = Dispatcher(registry, telemetry=telemetry)
        text = '{"target": "wx", "function": "getForecast", "arguments": {"town": "Berlin"}}'

        with pytest.raises(MalformedCallError, match="town") as excinfo:
            await dispatcher.dispatch(text)

        assert excinfo.value.driver_id == "weather-1"
        assert excinfo.value.raw_input == text
        assert telemetry.dispatches[-1].error_type == "validation"

        result = await dispatcher.dispatch(
            '{"target": "wx", "function": "getForecast", "arguments": {"city": "Berlin"}}'
        )
        assert result == {"city": "Berlin", "days": 1, "forecast": "sunny"}

    asyncio.run(_run())


def test_unbound_driver_without_autostart(registry):
    async def _run():
        _weather(registry)
        dispatcher = Dispatcher(registry)

        with pytest.raises(BridgeUnavailableError) as excinfo:
            await dispatcher.dispatch(WEATHER_CALL)

        assert excinfo.value.state == "unbound"
        assert excinfo.value.raw_input == WEATHER_CALL

    asyncio.run(_run())


def test_capability_calls(registry):
    async def _run():
        _weather(registry, capabilities=["status"])
        dispatcher = Dispatcher(registry)

        status = await dispatcher.dispatch('{"target": "wx", "function": "status"}')
        assert status["id"] == "weather-1"
        assert status["bound"] is False

        with pytest.raises(CapabilityUnsupportedError) as excinfo:
            await dispatcher.dispatch('{"target": "wx", "function": "capability:cache"}')
        assert excinfo.value.capability == "cache"

    asyncio.run(_run())


def test_reserved_names_reach_the_backend_unless_declared(registry):
    async def _run():
        bridge = RecordingBridge({"state": "green"})
        _weather(registry, bridge)
        dispatcher = Dispatcher(registry)

        result = await dispatcher.dispatch('{"target": "wx", "function": "status"}')

        assert result == {"state": "green"}
        assert [operation.name for operation in bridge.operations] == ["status"]

        with pytest.raises(CapabilityUnsupportedError):
            await dispatcher.dispatch('{"target": "wx", "function": "capability:status"}')
        assert len(bridge.operations) == 1

    asyncio.run(_run())


def test_different_drivers_dispatch_concurrently(registry):
    async def _run():
        first = RecordingBridge(delay=0.1)
        second = RecordingBridge(delay=0.1)
        registry.register(make_meta("alpha"), make_provider(), first)
        registry.register(make_meta("beta"), make_provider(), second)
        dispatcher = Dispatcher(registry)

        _, duration = await measure_duration(
            asyncio.gather(
                dispatcher.dispatch('{"target": "alpha", "function": "f"}'),
                dispatcher.dispatch('{"target": "beta", "function": "f"}'),
            )
        )

        assert_parallel_execution(duration, 0.1)
        assert (first.calls, second.calls) == (1, 1)

    asyncio.run(_run())


def test_dispatch_with_explicit_registry(registry):
    async def _run():
        other = DriverRegistry()
        bridge = RecordingBridge("from other")
        other.register(make_meta("weather-1", prefix="wx"), make_provider(), bridge)
        dispatcher = Dispatcher(registry)

        assert await dispatcher.dispatch(WEATHER_CALL, other) == "from other"

    asyncio.run(_run())


def _autostart_setup(registry, telemetry, *, restart_on_exit=False):
    launcher = StubLauncher(delay=0.02)
    autostarter = AutoStarter(
        {"process": launcher},
        restart_policy=RestartPolicy(max_restarts=3, restart_on_exit=restart_on_exit),
        probe_factory=probe_factory(lambda: True),
        telemetry=telemetry,
    )
    bridges = []

    def factory(endpoint):
        bridge = RecordingBridge({"endpoint": endpoint.url})
        bridges.append(bridge)
        return bridge

    driver = registry.register(
        make_meta("weather-1", prefix="wx"),
        make_provider(),
        bridge_factory=factory,
        deployment=process_deployment(port=9100),
    )
    dispatcher = Dispatcher(registry, autostarter=autostarter, telemetry=telemetry)
    return dispatcher, autostarter, launcher, driver, bridges


def test_autostart_binds_once_for_concurrent_calls(registry, telemetry):
    async def _run():
        dispatcher, autostarter, launcher, driver, bridges = _autostart_setup(registry, telemetry)

        results = await asyncio.gather(*(dispatcher.dispatch(WEATHER_CALL) for _ in range(5)))

        assert launcher.launches == 1
        assert len(bridges) == 1
        assert bridges[0].calls == 5
        assert results[0] == {"endpoint": "http://127.0.0.1:9100"}
        assert driver.is_bound
        assert autostarter.state("weather-1").value == "ready"
        await autostarter.shutdown()

    asyncio.run(_run())


def test_crash_unbinds_and_next_call_relaunches(registry, telemetry):
    async def _run():
        dispatcher, autostarter, launcher, driver, bridges = _autostart_setup(registry, telemetry)

        await dispatcher.dispatch(WEATHER_CALL)
        launcher.last_handle.exit(1)
        await wait_for_condition(lambda: not driver.is_bound)
        await wait_for_condition(lambda: bridges[0].closed)
        assert autostarter.state("weather-1").value == "crashed"

        await dispatcher.dispatch(WEATHER_CALL)

        assert launcher.launches == 2
        assert len(bridges) == 2
        assert autostarter.status("weather-1")["restart_count"] == 1
        await autostarter.shutdown()
        assert not driver.is_bound

    asyncio.run(_run())


def test_capability_call_autostarts_when_possible(registry, telemetry):
    async def _run():
        launcher = StubLauncher()
        autostarter = AutoStarter({"process": launcher}, probe_factory=probe_factory(lambda: True))
        registry.register(
            make_meta("svc", capabilities=["healthcheck"]),
            make_provider(),
            capabilities=builtin_bindings(["healthcheck"]),
            bridge_factory=lambda endpoint: RecordingBridge(),
            deployment=process_deployment(),
        )
        dispatcher = Dispatcher(registry, autostarter=autostarter)

        health = await dispatcher.dispatch('{"target": "svc", "function": "healthcheck"}')

        assert health == {"driver_id": "svc", "healthy": True}
        assert launcher.launches == 1
        await autostarter.shutdown()

    asyncio.run(_run())


def test_dispatch_all_keeps_order_and_isolates_failures(registry, telemetry):
    async def _run():
        bridge = RecordingBridge(lambda op: op.arguments.get("city"))
        _weather(registry, bridge)
        dispatcher = Dispatcher(registry, telemetry=telemetry)
        text = (
            '```json\n{"target": "wx", "function": "get_forecast", "arguments": {"city": "Oslo"}}\n```\n'
            '```json\n{"target": "ghost", "function": "get_forecast"}\n```\n'
            '```json\n{"target": "weather-1/get_forecast", "arguments": {"city": "Rome"}}\n```'
        )

        outcomes = await dispatcher.dispatch_all(text)

        assert [outcome.index for outcome in outcomes] == [0, 1, 2]
        assert [outcome.ok for outcome in outcomes] == [True, False, True]
        assert outcomes[0].result == "Oslo"
        assert outcomes[2].result == "Rome"
        assert isinstance(outcomes[1].error, UnknownTargetError)
        assert outcomes[1].to_dict()["error"]["error"] == "UnknownTargetError"

        with pytest.raises(NoCallFound):
            await dispatcher.dispatch_all("nothing to do")

    asyncio.run(_run())
