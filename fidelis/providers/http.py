from __future__ import annotations

import json
from typing import Any

import httpx

from fidelis.harness.errors import ProviderError

_BODY_EXCERPT = 500


async def post_json(
    url: str,
    *,
    payload: dict[str, Any],
    headers: dict[str, str] | None = None,
    timeout_sec: float = 30.0,
) -> dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout_sec) as client:
            resp = await client.post(url, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        raise ProviderError(f"{type(exc).__name__}: {exc}") from exc

    text = resp.text
    if resp.is_error:
        raise ProviderError(f"HTTP {resp.status_code}: {text[:_BODY_EXCERPT]}")
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"provider returned invalid JSON: {text[:_BODY_EXCERPT]}") from exc
    if not isinstance(data, dict):
        raise ProviderError("provider returned a non-object JSON payload")
    return data


def require_prompt(prompt: str) -> str:
    if not prompt.strip():
        raise ProviderError("prompt is required")
    return prompt
