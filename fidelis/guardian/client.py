from __future__ import annotations

import json
import time
from typing import Any

import httpx

from fidelis.harness.contracts import GateDecision, GateState, Observation, Telemetry
from fidelis.harness.errors import GateError

DEFAULT_CORE_URL = "http://127.0.0.1:18101"
DEFAULT_GATE_URL = "http://127.0.0.1:18102"
CONSTRAINT_MAX_CHARS = 20_000
TEMPORAL_RESISTANCE_THRESHOLD = 0.2
_BODY_EXCERPT = 500


class GuardianClient:
    """HTTP client for the external observe/decide services."""

    def __init__(
        self,
        core_url: str = DEFAULT_CORE_URL,
        gate_url: str = DEFAULT_GATE_URL,
        endpoint_key: str | None = None,
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.core_url = _normalize_base_url(core_url)
        self.gate_url = _normalize_base_url(gate_url)
        headers = {"accept": "application/json"}
        key = (endpoint_key or "").strip()
        if key:
            headers["X-Guardian-Key"] = key
        self._client = httpx.AsyncClient(timeout=timeout_seconds, headers=headers, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def observe(self, trial_id: int, text: str) -> Observation:
        if not text.strip():
            raise GateError("output is required")
        payload = {
            "event_id": f"turn-{trial_id}",
            "timestamp": time.time(),
            "raw_output": text,
        }
        data = await self._post_json(f"{self.core_url}/observe", payload)
        recommendation = data.get("structural_recommendation")
        if not isinstance(recommendation, str):
            raise GateError("observe response missing structural_recommendation")
        reason_codes = tuple(str(code) for code in data.get("reason_codes") or [])
        return Observation(
            recommendation=recommendation,
            telemetry=build_telemetry(data.get("telemetry") or {}, recommendation, reason_codes),
            reason_codes=reason_codes,
        )

    async def decide(self, recommendation: str, text: str, constraint: str | None = None) -> GateDecision:
        payload = {
            "structural_recommendation": recommendation,
            "raw_output": text,
            "deterministic_constraint": constraint,
        }
        data = await self._post_json(f"{self.gate_url}/decide", payload)
        raw = str(data.get("final_gate_decision") or "")
        return GateDecision(
            final_gate_state=map_final_gate_decision(raw),
            reason_codes=tuple(str(code) for code in data.get("reason_codes") or []),
            raw_decision=raw,
        )

    async def submit_constraint(self, text: str) -> None:
        content = text.strip()
        if not content:
            raise GateError("constraint content is required")
        payload = {
            "structural_recommendation": GateState.CONTINUE.value,
            "raw_output": content[:CONSTRAINT_MAX_CHARS],
            "deterministic_constraint": None,
        }
        await self._post_json(f"{self.gate_url}/decide", payload)

    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise GateError(f"{type(exc).__name__}: {exc}") from exc
        text = response.text
        if response.is_error:
            raise GateError(f"HTTP {response.status_code}: {text[:_BODY_EXCERPT]}")
        if not text:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise GateError(f"gate returned invalid JSON: {text[:_BODY_EXCERPT]}") from exc
        if not isinstance(data, dict):
            raise GateError("gate returned a non-object JSON payload")
        return data


def map_final_gate_decision(value: str) -> GateState:
    upper = value.strip().upper()
    if upper in ("PAUSE", "DEFER"):
        return GateState.PAUSE
    if upper == "YIELD":
        return GateState.YIELD
    return GateState.CONTINUE


def build_telemetry(raw: dict[str, Any], recommendation: str, reason_codes: tuple[str, ...]) -> Telemetry:
    transitions = raw.get("transitions") or {}
    transition = _as_float(transitions.get("transition_index"), 0.0)
    spacing = _as_float(raw.get("temporal_spacing"), 1.0)
    return Telemetry(
        authority_trend=f"{transition:.2f}",
        revision_mode=recommendation.lower(),
        grounding_markers=(),
        temporal_resistance_detected=(
            spacing <= TEMPORAL_RESISTANCE_THRESHOLD and transition <= TEMPORAL_RESISTANCE_THRESHOLD
        ),
        trajectory_state=reason_codes[0] if reason_codes else recommendation,
    )


def _as_float(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _normalize_base_url(value: str) -> str:
    return value.strip().rstrip("/")
