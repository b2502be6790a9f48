from __future__ import annotations

import json

import httpx
import pytest

from fidelis.guardian.client import GuardianClient, build_telemetry, map_final_gate_decision
from fidelis.harness.contracts import GateState
from fidelis.harness.errors import GateError


def _client(handler, endpoint_key: str | None = "secret") -> GuardianClient:
    return GuardianClient(
        core_url="http://core.test/",
        gate_url="http://gate.test",
        endpoint_key=endpoint_key,
        transport=httpx.MockTransport(handler),
    )


def test_map_final_gate_decision() -> None:
    assert map_final_gate_decision("PAUSE") == GateState.PAUSE
    assert map_final_gate_decision("defer") == GateState.PAUSE
    assert map_final_gate_decision("Yield") == GateState.YIELD
    assert map_final_gate_decision("CONTINUE") == GateState.CONTINUE
    assert map_final_gate_decision("") == GateState.CONTINUE
    assert map_final_gate_decision("anything-else") == GateState.CONTINUE


def test_build_telemetry_defaults() -> None:
    telemetry = build_telemetry({}, "CONTINUE", ())
    assert telemetry.authority_trend == "0.00"
    assert telemetry.revision_mode == "continue"
    assert telemetry.temporal_resistance_detected is False
    assert telemetry.trajectory_state == "CONTINUE"


@pytest.mark.asyncio
async def test_observe_posts_event_and_builds_telemetry() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "telemetry": {"transitions": {"transition_index": 0.15}, "temporal_spacing": 0.1},
                "structural_recommendation": "PAUSE",
                "reason_codes": ["authority_drift", "late_revision"],
            },
        )

    client = _client(handler)
    try:
        observation = await client.observe(31, "The answer is 41.")
    finally:
        await client.close()

    request = seen[0]
    assert str(request.url) == "http://core.test/observe"
    assert request.headers["X-Guardian-Key"] == "secret"
    body = json.loads(request.content)
    assert body["event_id"] == "turn-31"
    assert body["raw_output"] == "The answer is 41."
    assert isinstance(body["timestamp"], float)

    assert observation.recommendation == "PAUSE"
    assert observation.reason_codes == ("authority_drift", "late_revision")
    telemetry = observation.telemetry
    assert telemetry is not None
    assert telemetry.authority_trend == "0.15"
    assert telemetry.revision_mode == "pause"
    assert telemetry.grounding_markers == ()
    assert telemetry.temporal_resistance_detected is True
    assert telemetry.trajectory_state == "authority_drift"


@pytest.mark.asyncio
async def test_decide_maps_gate_response() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "http://gate.test/decide"
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"final_gate_decision": "DEFER", "reason_codes": ["literal_mismatch"]})

    client = _client(handler, endpoint_key=None)
    try:
        decision = await client.decide("PAUSE", "41", "42")
    finally:
        await client.close()

    assert decision.final_gate_state == GateState.PAUSE
    assert decision.reason_codes == ("literal_mismatch",)
    assert decision.raw_decision == "DEFER"
    assert seen == [{"structural_recommendation": "PAUSE", "raw_output": "41", "deterministic_constraint": "42"}]


@pytest.mark.asyncio
async def test_submit_constraint_truncates_and_continues() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"final_gate_decision": "CONTINUE"})

    client = _client(handler)
    try:
        await client.submit_constraint("  " + "x" * 25_000 + "  ")
    finally:
        await client.close()

    assert seen[0]["structural_recommendation"] == "CONTINUE"
    assert seen[0]["deterministic_constraint"] is None
    assert len(seen[0]["raw_output"]) == 20_000


@pytest.mark.asyncio
async def test_http_error_raises_gate_error_with_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="observer overloaded")

    client = _client(handler)
    try:
        with pytest.raises(GateError, match="HTTP 503: observer overloaded"):
            await client.observe(10, "42")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_malformed_responses_raise_gate_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/observe":
            return httpx.Response(200, json={"telemetry": {}})
        return httpx.Response(200, text="<html>")

    client = _client(handler)
    try:
        with pytest.raises(GateError, match="structural_recommendation"):
            await client.observe(10, "42")
        with pytest.raises(GateError, match="invalid JSON"):
            await client.decide("CONTINUE", "42")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transport_failure_raises_gate_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    try:
        with pytest.raises(GateError, match="ConnectError"):
            await client.decide("CONTINUE", "42")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_empty_inputs_are_rejected_without_calls() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    client = _client(handler)
    try:
        with pytest.raises(GateError):
            await client.observe(10, "   ")
        with pytest.raises(GateError):
            await client.submit_constraint("\n")
    finally:
        await client.close()
    assert not calls
