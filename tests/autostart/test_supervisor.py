import asyncio
import logging

import pytest

from autostart.supervisor import AutoStarter, SupervisorState
from errors import (
    DriverUnavailableError,
    HealthCheckTimeoutError,
    LaunchError,
    LaunchPolicyError,
    LaunchTimeoutError,
    ResolutionError,
)
from policies import HealthCheckPolicy, RestartPolicy
from tests.helpers import StubLauncher, make_meta, probe_factory, process_deployment
from tests.utils import wait_for_condition

META = make_meta("svc")


def _starter(launcher, *, healthy=lambda: True, health=None, restart=None, **kwargs):
    starter = AutoStarter(
        {"process": launcher},
        health_policy=health or HealthCheckPolicy(base_delay=0.001, max_delay=0.002, max_attempts=3),
        restart_policy=restart or RestartPolicy(max_restarts=2, window_seconds=60, restart_on_exit=False),
        probe_factory=probe_factory(healthy),
        **kwargs,
    )
    starter.register_deployment("svc", process_deployment(port=9200))
    return starter


def _record_transitions(starter):
    seen = []
    starter.add_listener(lambda driver_id, previous, current: seen.append((previous.value, current.value)))
    return seen


def test_concurrent_callers_share_one_launch(telemetry):
    async def _run():
        launcher = StubLauncher(delay=0.05)
        starter = _starter(launcher, telemetry=telemetry)
        seen = _record_transitions(starter)

        endpoints = await asyncio.gather(*(starter.ensure_running(META) for _ in range(10)))

        assert launcher.launches == 1
        assert len({endpoint.url for endpoint in endpoints}) == 1
        assert endpoints[0].url == "http://127.0.0.1:9200"
        assert starter.state(META) is SupervisorState.READY
        assert seen == [
            ("unresolved", "launching"),
            ("launching", "health_checking"),
            ("health_checking", "ready"),
        ]
        assert telemetry.snapshot()["launches"] == 1

        again = await starter.ensure_running(META)
        assert again is endpoints[0]
        assert launcher.launches == 1
        await starter.shutdown()

    asyncio.run(_run())


def test_unhealthy_driver_exhausts_restarts_then_stays_stopped(telemetry):
    async def _run():
        launcher = StubLauncher()
        healthy = [False]
        starter = _starter(launcher, healthy=lambda: healthy[0], telemetry=telemetry)

        for expected_state in ("crashed", "crashed", "stopped"):
            with pytest.raises(HealthCheckTimeoutError) as excinfo:
                await starter.ensure_running(META)
            assert excinfo.value.state == expected_state

        assert launcher.launches == 3
        assert len(launcher.stopped) == 3
        status = starter.status("svc")
        assert status["state"] == "stopped"
        assert status["exhausted"] is True
        assert status["restart_count"] == 2
        assert telemetry.snapshot()["crashes"] == 3
        assert telemetry.snapshot()["restarts"] == 2

        with pytest.raises(DriverUnavailableError) as excinfo:
            await starter.ensure_running(META)
        assert excinfo.value.state == "stopped"
        assert launcher.launches == 3

        healthy[0] = True
        await starter.reset(META)
        assert starter.state("svc") is SupervisorState.UNRESOLVED
        assert starter.status("svc")["restart_count"] == 0

        await starter.ensure_running(META)
        assert launcher.launches == 4
        await starter.shutdown()

    asyncio.run(_run())


def test_restart_window_forgets_old_restarts():
    async def _run():
        now = [0.0]
        launcher = StubLauncher()
        starter = _starter(
            launcher,
            healthy=lambda: False,
            restart=RestartPolicy(max_restarts=2, window_seconds=10, restart_on_exit=False),
            clock=lambda: now[0],
        )

        for _ in range(2):
            with pytest.raises(HealthCheckTimeoutError):
                await starter.ensure_running(META)
        now[0] = 100.0
        with pytest.raises(HealthCheckTimeoutError):
            await starter.ensure_running(META)

        status = starter.status("svc")
        assert status["state"] == "crashed"
        assert status["restart_count"] == 2
        assert status["recent_restarts"] == 1

    asyncio.run(_run())


def test_unexpected_exit_triggers_eager_restart():
    async def _run():
        launcher = StubLauncher()
        starter = _starter(launcher, restart=RestartPolicy(max_restarts=3, restart_on_exit=True))
        seen = _record_transitions(starter)

        await starter.ensure_running(META)
        first = launcher.last_handle
        first.exit(1)

        await wait_for_condition(
            lambda: launcher.launches == 2 and starter.state(META) is SupervisorState.READY
        )
        assert launcher.last_handle is not first
        assert seen[3:] == [
            ("ready", "crashed"),
            ("crashed", "restarting"),
            ("restarting", "health_checking"),
            ("health_checking", "ready"),
        ]
        status = starter.status("svc")
        assert status["restart_count"] == 1
        assert status["last_error"] is None
        await starter.shutdown()

    asyncio.run(_run())


def test_failed_health_check_waits_for_next_caller_to_restart():
    async def _run():
        launcher = StubLauncher()
        starter = _starter(
            launcher,
            healthy=lambda: False,
            restart=RestartPolicy(max_restarts=2, restart_on_exit=True),
        )

        with pytest.raises(HealthCheckTimeoutError):
            await starter.ensure_running(META)
        await asyncio.sleep(0.05)

        assert launcher.launches == 1
        assert starter.state(META) is SupervisorState.CRASHED
        assert starter.status("svc")["restart_count"] == 0

    asyncio.run(_run())


def test_exit_without_restart_budget_stops_driver():
    async def _run():
        launcher = StubLauncher()
        starter = _starter(launcher, restart=RestartPolicy(max_restarts=0, restart_on_exit=True))

        await starter.ensure_running(META)
        launcher.last_handle.exit(2)

        await wait_for_condition(lambda: starter.state(META) is SupervisorState.STOPPED)
        assert launcher.launches == 1
        assert "code 2" in starter.status("svc")["last_error"]

    asyncio.run(_run())


def test_stop_is_terminal_until_reset():
    async def _run():
        launcher = StubLauncher()
        starter = _starter(launcher)

        await starter.ensure_running(META)
        handle = launcher.last_handle

        assert await starter.stop("svc") is True
        assert launcher.stopped == [handle]
        assert starter.state("svc") is SupervisorState.STOPPED
        assert starter.status("svc")["handle"] is None
        assert await starter.stop("svc") is False
        assert await starter.stop("never-started") is False

        with pytest.raises(DriverUnavailableError):
            await starter.ensure_running(META)

        await starter.reset("svc")
        await starter.ensure_running(META)
        assert launcher.launches == 2
        await starter.shutdown()

    asyncio.run(_run())


def test_stop_during_health_check_cancels_waiters():
    async def _run():
        launcher = StubLauncher()
        starter = _starter(
            launcher,
            healthy=lambda: False,
            health=HealthCheckPolicy(base_delay=0.05, max_delay=0.05, max_attempts=100),
        )

        waiter = asyncio.create_task(starter.ensure_running(META))
        await wait_for_condition(lambda: starter.state(META) is SupervisorState.HEALTH_CHECKING)
        await starter.stop(META)

        with pytest.raises(DriverUnavailableError, match="cancelled"):
            await waiter
        assert len(launcher.stopped) == 1

    asyncio.run(_run())


def test_caller_timeout_does_not_cancel_shared_launch():
    async def _run():
        launcher = StubLauncher(delay=0.1)
        starter = _starter(launcher)

        with pytest.raises(LaunchTimeoutError) as excinfo:
            await starter.ensure_running(META, timeout=0.01)
        assert excinfo.value.state == "launching"

        endpoint = await starter.ensure_running(META)
        assert endpoint.port == 9200
        assert launcher.launches == 1
        await starter.shutdown()

    asyncio.run(_run())


def test_resolution_and_policy_failures_do_not_count_as_crashes():
    async def _run():
        starter = AutoStarter({"process": StubLauncher()}, probe_factory=probe_factory(lambda: True))
        with pytest.raises(ResolutionError):
            await starter.ensure_running(make_meta("nodeploy"))
        assert starter.state("nodeploy") is SupervisorState.UNRESOLVED

        with pytest.raises(ResolutionError, match="no launcher"):
            await starter.ensure_running(
                make_meta("boxed"),
                deployment={"kind": "container", "image": "img"},
            )

        refused = StubLauncher(fail_with=LaunchPolicyError("blocked", driver_id="svc"))
        starter = _starter(refused)
        with pytest.raises(LaunchPolicyError):
            await starter.ensure_running(META)
        status = starter.status("svc")
        assert status["state"] == "unresolved"
        assert status["last_error"] == "blocked"

    asyncio.run(_run())


def test_unexpected_launcher_failure_is_a_launch_error():
    async def _run():
        starter = _starter(StubLauncher(fail_with=RuntimeError("fork failed")))

        with pytest.raises(LaunchError, match="fork failed") as excinfo:
            await starter.ensure_running(META)

        assert excinfo.value.state == "crashed"
        assert starter.state(META) is SupervisorState.CRASHED

    asyncio.run(_run())


def test_listener_errors_are_logged_and_unsubscribe_works(caplog):
    async def _run():
        starter = _starter(StubLauncher())
        calls = []

        def broken(driver_id, previous, current):
            raise ValueError("listener bug")

        starter.add_listener(broken)
        remove = starter.add_listener(lambda *args: calls.append(args))

        with caplog.at_level(logging.ERROR, logger="autostart.supervisor"):
            await starter.ensure_running(META)
        assert "State listener failed" in caplog.text
        assert len(calls) == 3

        remove()
        await starter.stop(META)
        assert len(calls) == 3

    asyncio.run(_run())


def test_status_lists_every_supervised_driver():
    async def _run():
        starter = _starter(StubLauncher())
        assert starter.status() == {}
        assert starter.status("svc") is None

        await starter.ensure_running(META)

        everything = starter.status()
        assert list(everything) == ["svc"]
        assert everything["svc"]["endpoint"] == {
            "address": "127.0.0.1",
            "port": 9200,
            "scheme": "http",
            "token": None,
        }
        assert everything["svc"]["handle"].startswith("stub:")
        await starter.shutdown()

    asyncio.run(_run())
