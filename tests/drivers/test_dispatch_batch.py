import asyncio

import pytest

from drivers.dispatcher import Dispatcher
from drivers.parallel import DispatchBatch, DispatchOutcome
from errors import MalformedCallError
from tests.helpers import RecordingBridge, make_meta, make_provider


def _payload(city: str) -> str:
    return '{"target": "weather-1", "function": "get_forecast", "arguments": {"city": "%s"}}' % city


def test_batch_respects_concurrency_limit(registry):
    async def _run():
        bridge = RecordingBridge(lambda op: op.arguments["city"].upper(), delay=0.02)
        registry.register(make_meta(), make_provider(), bridge)
        batch = DispatchBatch(Dispatcher(registry), max_concurrency=2)

        outcomes = await batch.run([_payload(city) for city in ("oslo", "rome", "lima", "kyiv", "baku")])

        assert [outcome.result for outcome in outcomes] == ["OSLO", "ROME", "LIMA", "KYIV", "BAKU"]
        assert bridge.max_active == 2

    asyncio.run(_run())


def test_malformed_payload_becomes_outcome_error(registry):
    async def _run():
        registry.register(make_meta(), make_provider(), RecordingBridge("fine"))
        batch = DispatchBatch(Dispatcher(registry))

        outcomes = await batch.run([_payload("oslo"), '{"target": "weather-1"}'], raw="model text")

        assert outcomes[0].ok
        assert isinstance(outcomes[1].error, MalformedCallError)
        assert outcomes[1].call is None
        assert outcomes[1].error.raw_input == "model text"
        assert outcomes[1].to_dict() == {
            "index": 1,
            "ok": False,
            "error": outcomes[1].error.to_dict(),
        }

    asyncio.run(_run())


def test_outcome_to_dict_without_call():
    outcome = DispatchOutcome(index=0, payload="{}", result={"temp": 3})
    assert outcome.to_dict() == {"index": 0, "ok": True, "result": {"temp": 3}}


def test_concurrency_must_be_positive(registry):
    with pytest.raises(ValueError):
        DispatchBatch(Dispatcher(registry), max_concurrency=0)
