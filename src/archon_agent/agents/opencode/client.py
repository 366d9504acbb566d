from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

import httpx

from .events import SSEEvent, parse_sse_lines

_WRAPPER_ONLY_KEYS = ("payload", "directory")


def _normalize_sse_event(event: SSEEvent) -> SSEEvent:
    """Unwrap ``{"payload": {...}}`` envelopes and use the payload type as the event name."""
    try:
        payload = json.loads(event.data) if event.data else None
    except (json.JSONDecodeError, TypeError):
        return event
    if not isinstance(payload, dict):
        return event
    inner = payload.get("payload")
    if isinstance(inner, dict):
        merged = dict(inner)
        for key, value in payload.items():
            if key in _WRAPPER_ONLY_KEYS:
                continue
            merged.setdefault(key, value)
        payload = merged
        data = json.dumps(payload)
    else:
        data = event.data
    event_type = event.event
    if "type" in payload:
        event_type = str(payload["type"])
    return SSEEvent(event=event_type, data=data, id=event.id, retry=event.retry)


class OpenCodeClient:
    def __init__(
        self,
        base_url: str,
        *,
        auth: Optional[tuple[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        response = await self._client.request(method, path, params=params, json=json)
        response.raise_for_status()
        if response.content:
            return response.json()
        return None

    def _message_payload(
        self,
        parts: list[dict[str, Any]],
        *,
        model: Optional[dict[str, str]],
        agent: Optional[str],
        variant: Optional[str],
        tools: Optional[dict[str, bool]],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"parts": parts}
        if model:
            payload["model"] = model
        if agent:
            payload["agent"] = agent
        if variant:
            payload["variant"] = variant
        if tools is not None:
            payload["tools"] = tools
        return payload

    async def app_log(self, *, service: str, level: str, message: str) -> Any:
        return await self._request(
            "POST",
            "/log",
            json={"service": service, "level": level, "message": message},
        )

    async def create_session(self, *, title: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {}
        if title:
            payload["title"] = title
        return await self._request("POST", "/session", json=payload)

    async def share_session(self, session_id: str) -> Any:
        return await self._request("POST", f"/session/{session_id}/share")

    async def list_messages(self, session_id: str) -> Any:
        return await self._request("GET", f"/session/{session_id}/message")

    async def send_message(
        self,
        session_id: str,
        *,
        parts: list[dict[str, Any]],
        model: Optional[dict[str, str]] = None,
        agent: Optional[str] = None,
        variant: Optional[str] = None,
        tools: Optional[dict[str, bool]] = None,
    ) -> Any:
        """Submit a message and block until the assistant reply is complete."""
        payload = self._message_payload(
            parts, model=model, agent=agent, variant=variant, tools=tools
        )
        return await self._request(
            "POST", f"/session/{session_id}/message", json=payload
        )

    async def prompt_async(
        self,
        session_id: str,
        *,
        parts: list[dict[str, Any]],
        model: Optional[dict[str, str]] = None,
        agent: Optional[str] = None,
        variant: Optional[str] = None,
        tools: Optional[dict[str, bool]] = None,
    ) -> None:
        """Submit a message without waiting; progress arrives on the event stream."""
        payload = self._message_payload(
            parts, model=model, agent=agent, variant=variant, tools=tools
        )
        await self._request(
            "POST", f"/session/{session_id}/prompt_async", json=payload
        )

    async def abort(self, session_id: str) -> Any:
        return await self._request("POST", f"/session/{session_id}/abort")

    async def stream_events(self) -> AsyncIterator[SSEEvent]:
        async with self._client.stream("GET", "/event", timeout=None) as response:
            response.raise_for_status()
            async for sse in parse_sse_lines(response.aiter_lines()):
                yield _normalize_sse_event(sse)


__all__ = ["OpenCodeClient"]
