from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional


@dataclass(frozen=True)
class SSEEvent:
    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None


async def parse_sse_lines(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    """Group raw server-sent-event lines into events.

    Events are separated by a blank line; ``data:`` lines are joined with
    newlines and comment lines (``:``) are ignored.
    """
    event_name = "message"
    data_lines: list[str] = []
    event_id: Optional[str] = None
    retry: Optional[int] = None
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data_lines:
                yield SSEEvent(
                    event=event_name,
                    data="\n".join(data_lines),
                    id=event_id,
                    retry=retry,
                )
            event_name = "message"
            data_lines = []
            event_id = None
            retry = None
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_name = value or "message"
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value
        elif field == "retry":
            try:
                retry = int(value)
            except ValueError:
                pass
    if data_lines:
        yield SSEEvent(event=event_name, data="\n".join(data_lines), id=event_id, retry=retry)


__all__ = ["SSEEvent", "parse_sse_lines"]
