from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ...errors import ContextOverflowError, SessionError
from ...prompt import PromptAttachment

CONTEXT_OVERFLOW_ERROR = "ContextOverflowError"

TOOL_LABELS = {
    "todowrite": "Todo",
    "todoread": "Todo",
    "bash": "Bash",
    "edit": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "list": "List",
    "read": "Read",
    "write": "Write",
    "websearch": "Search",
}


@dataclass(frozen=True)
class ToolEvent:
    tool: str
    status: str
    title: str


def extract_session_id(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("sessionID", "sessionId", "session_id"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    properties = payload.get("properties")
    if isinstance(properties, dict):
        value = properties.get("sessionID")
        if isinstance(value, str) and value:
            return value
        for nested in ("part", "info"):
            inner = properties.get(nested)
            if isinstance(inner, dict):
                value = inner.get("sessionID")
                if isinstance(value, str) and value:
                    return value
                if nested == "info" and isinstance(inner.get("id"), str):
                    # session.updated carries the session itself as ``info``.
                    if payload.get("type", "").startswith("session."):
                        return inner["id"]
    return None


def parse_tool_event(part: Any) -> Optional[ToolEvent]:
    """Return a ToolEvent for a completed tool part, otherwise None."""
    if not isinstance(part, dict) or part.get("type") != "tool":
        return None
    state = part.get("state")
    if not isinstance(state, dict) or state.get("status") != "completed":
        return None
    raw_tool = str(part.get("tool") or "unknown")
    title = state.get("title")
    if not isinstance(title, str) or not title:
        tool_input = state.get("input")
        if isinstance(tool_input, dict) and tool_input:
            title = json.dumps(tool_input)
        else:
            title = "Unknown"
    return ToolEvent(
        tool=TOOL_LABELS.get(raw_tool, raw_tool),
        status="completed",
        title=title,
    )


def build_message_parts(
    text: str, attachments: Sequence[PromptAttachment] = ()
) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for attachment in attachments:
        parts.append(
            {
                "type": "file",
                "mime": attachment.mime,
                "url": f"data:{attachment.mime};base64,{attachment.content}",
                "filename": attachment.filename,
                "source": {
                    "type": "file",
                    "text": {
                        "value": attachment.replacement,
                        "start": attachment.start,
                        "end": attachment.end,
                    },
                    "path": attachment.filename,
                },
            }
        )
    return parts


def format_prompt_too_large(attachments: Sequence[PromptAttachment] = ()) -> str:
    message = "PROMPT_TOO_LARGE: The prompt exceeds the model's context limit."
    if attachments:
        lines = [
            f"  - {attachment.filename} ({attachment.decoded_size / 1024:.0f} KB)"
            for attachment in attachments
        ]
        message += "\n\nFiles in prompt:\n" + "\n".join(lines)
    return message


def raise_for_message_error(
    payload: Any, attachments: Sequence[PromptAttachment] = ()
) -> None:
    """Raise when the assistant message info carries a structured error."""
    if not isinstance(payload, dict):
        return
    info = payload.get("info")
    error = info.get("error") if isinstance(info, dict) else None
    if not isinstance(error, dict):
        return
    name = str(error.get("name") or "UnknownError")
    if name == CONTEXT_OVERFLOW_ERROR:
        raise ContextOverflowError(format_prompt_too_large(attachments))
    data = error.get("data")
    message = data.get("message") if isinstance(data, dict) else None
    raise SessionError(f"{name}: {message}" if message else name)


def extract_response_text(parts: Any) -> Optional[str]:
    """Return the last text part, or None when only tool/reasoning parts exist."""
    if not isinstance(parts, list) or not parts:
        raise SessionError("Failed to parse response: no parts returned")
    text_parts = [
        part
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text"
    ]
    if not text_parts:
        return None
    text = text_parts[-1].get("text")
    if not isinstance(text, str):
        return None
    return text


__all__ = [
    "CONTEXT_OVERFLOW_ERROR",
    "ToolEvent",
    "build_message_parts",
    "extract_response_text",
    "extract_session_id",
    "format_prompt_too_large",
    "parse_tool_event",
    "raise_for_message_error",
]
