from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from ...errors import AgentUnavailableError, ArchonError, SessionError, SessionTimeoutError
from ...logging_utils import log_event
from ...prompt import PromptAttachment, truncate_prompt
from .client import OpenCodeClient
from .events import SSEEvent
from .runtime import (
    ToolEvent,
    build_message_parts,
    extract_response_text,
    extract_session_id,
    parse_tool_event,
    raise_for_message_error,
)

SUMMARY_PROMPT = (
    "Summarize the actions (tool calls & reasoning) you did for the user in 1-2 sentences."
)
TITLE_PROMPT = "Summarize the following in less than 40 characters:\n\n{response}"

_POLL_INITIAL_SECONDS = 0.1
_POLL_MAX_SECONDS = 2.0
_PROBE_INITIAL_SECONDS = 0.3
_PROBE_MAX_SECONDS = 2.0

progress_logger = logging.getLogger("archon_agent.progress")


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class Session:
    id: str
    title: str = ""
    version: str = ""
    status: SessionStatus = SessionStatus.PENDING
    error: Optional[dict[str, Any]] = None
    latest_text: str = ""

    @property
    def share_id(self) -> str:
        return self.id[-8:]


class SessionListener:
    """Consumes the runtime event feed for a single session.

    The listener is the only writer of ``session.status``; readers only act on
    it after ``finished`` is set.
    """

    def __init__(
        self,
        client: OpenCodeClient,
        session: Session,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self.session = session
        self._logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task[None]] = None
        self.finished = asyncio.Event()
        self.tool_events: list[ToolEvent] = []

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def reset(self) -> None:
        """Prepare for another prompt on the same session."""
        self.finished.clear()
        self.session.status = SessionStatus.PENDING
        self.session.error = None

    async def _consume(self) -> None:
        try:
            async for event in self._client.stream_events():
                self.apply_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "opencode.stream.failed",
                session_id=self.session.id,
                exc=exc,
            )

    def apply_event(self, event: SSEEvent) -> None:
        try:
            payload = json.loads(event.data) if event.data else {}
        except json.JSONDecodeError:
            return
        if extract_session_id(payload) != self.session.id:
            return
        properties = payload.get("properties")
        properties = properties if isinstance(properties, dict) else {}
        if event.event == "message.part.updated":
            self._apply_part(properties.get("part"))
        elif event.event == "session.updated":
            info = properties.get("info")
            if isinstance(info, dict):
                self.session.title = str(info.get("title") or self.session.title)
                self.session.version = str(info.get("version") or self.session.version)
        elif event.event == "session.idle":
            self._finish(SessionStatus.COMPLETED)
        elif event.event == "session.status":
            status = properties.get("status")
            if isinstance(status, dict) and status.get("type") == "idle":
                self._finish(SessionStatus.COMPLETED)
        elif event.event == "session.error":
            error = properties.get("error")
            if not isinstance(error, dict):
                error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
            self.session.error = error
            self._finish(SessionStatus.ERROR)

    def _apply_part(self, part: Any) -> None:
        if not isinstance(part, dict):
            return
        if self.session.status == SessionStatus.PENDING:
            self.session.status = SessionStatus.STREAMING
        tool_event = parse_tool_event(part)
        if tool_event is not None:
            self.tool_events.append(tool_event)
            progress_logger.info("| %-7s %s", tool_event.tool, tool_event.title)
            return
        if part.get("type") == "text":
            text = part.get("text")
            if isinstance(text, str):
                self.session.latest_text = text
            timing = part.get("time")
            if isinstance(timing, dict) and timing.get("end"):
                progress_logger.info("%s", self.session.latest_text)

    def _finish(self, status: SessionStatus) -> None:
        if self.finished.is_set():
            return
        self.session.status = status
        self.finished.set()


class SessionOrchestrator:
    def __init__(
        self,
        client: OpenCodeClient,
        *,
        model: dict[str, str],
        agent: Optional[str] = None,
        variant: Optional[str] = None,
        completion: str = "blocking",
        timeout_seconds: float = 600.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._model = model
        self._agent = agent
        self._variant = variant
        self._completion = completion
        self._timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger(__name__)
        self.session: Optional[Session] = None
        self.listener: Optional[SessionListener] = None

    async def create(self, title: Optional[str] = None) -> Session:
        payload = await self._client.create_session(title=title)
        if not isinstance(payload, dict) or not payload.get("id"):
            raise SessionError("Agent runtime did not return a session id")
        session = Session(
            id=str(payload["id"]),
            title=str(payload.get("title") or title or ""),
            version=str(payload.get("version") or ""),
        )
        self.session = session
        self.listener = SessionListener(self._client, session, logger=self._logger)
        self.listener.start()
        log_event(
            self._logger,
            logging.INFO,
            "opencode.session.created",
            session_id=session.id,
            completion=self._completion,
        )
        return session

    async def share(self) -> str:
        session = self._require_session()
        await self._client.share_session(session.id)
        return session.share_id

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.stop()

    async def run(
        self, text: str, attachments: Sequence[PromptAttachment] = ()
    ) -> str:
        """Send the prompt and return the agent's final text response."""
        capped = truncate_prompt(text)
        if capped != text:
            log_event(
                self._logger,
                logging.WARNING,
                "opencode.prompt.truncated",
                original_chars=len(text),
            )
        result = await self._submit(build_message_parts(capped, attachments))
        raise_for_message_error(result, attachments)
        response = extract_response_text(_parts_of(result))
        if response:
            return response

        log_event(self._logger, logging.INFO, "opencode.summary.requested")
        summary = await self._submit(
            build_message_parts(SUMMARY_PROMPT), tools={"*": False}
        )
        raise_for_message_error(summary, attachments)
        try:
            summary_text = extract_response_text(_parts_of(summary))
        except SessionError:
            summary_text = None
        if not summary_text:
            raise SessionError("Failed to get summary from agent")
        return summary_text

    async def summarize_title(self, response: str, *, fallback: str) -> str:
        try:
            return await self.run(TITLE_PROMPT.format(response=response))
        except (ArchonError, httpx.HTTPError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "opencode.summary.failed",
                fallback=fallback,
                exc=exc,
            )
            return fallback

    async def _submit(
        self,
        parts: list[dict[str, Any]],
        *,
        tools: Optional[dict[str, bool]] = None,
    ) -> Any:
        session = self._require_session()
        if self._completion == "blocking":
            return await self._client.send_message(
                session.id,
                parts=parts,
                model=self._model,
                agent=self._agent,
                variant=self._variant,
                tools=tools,
            )
        listener = self._require_listener()
        listener.reset()
        await self._client.prompt_async(
            session.id,
            parts=parts,
            model=self._model,
            agent=self._agent,
            variant=self._variant,
            tools=tools,
        )
        await self._wait_for_completion()
        if session.status == SessionStatus.ERROR:
            return {"info": {"error": session.error or {"name": "SessionError"}}}
        return _last_assistant_message(await self._client.list_messages(session.id))

    async def _wait_for_completion(self) -> None:
        session = self._require_session()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout_seconds
        delay = _POLL_INITIAL_SECONDS
        while session.status not in (SessionStatus.COMPLETED, SessionStatus.ERROR):
            remaining = deadline - loop.time()
            if remaining <= 0:
                await self._abort(session)
                raise SessionTimeoutError(session.id, self._timeout_seconds)
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, _POLL_MAX_SECONDS)

    async def _abort(self, session: Session) -> None:
        try:
            await self._client.abort(session.id)
        except httpx.HTTPError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "opencode.session.abort_failed",
                session_id=session.id,
                exc=exc,
            )

    def _require_session(self) -> Session:
        if self.session is None:
            raise SessionError("Session has not been created")
        return self.session

    def _require_listener(self) -> SessionListener:
        if self.listener is None:
            raise SessionError("Session listener is not running")
        return self.listener


def _parts_of(message: Any) -> Any:
    if isinstance(message, dict):
        return message.get("parts")
    return None


def _last_assistant_message(messages: Any) -> Any:
    if not isinstance(messages, list):
        return None
    for message in reversed(messages):
        info = message.get("info") if isinstance(message, dict) else None
        if isinstance(info, dict) and info.get("role") == "assistant":
            return message
    return None


async def probe_runtime(
    client: OpenCodeClient,
    *,
    attempts: int = 30,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Wait until the agent runtime answers, backing off between attempts."""
    log = logger or logging.getLogger(__name__)
    delay = _PROBE_INITIAL_SECONDS
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            await client.app_log(
                service="archon", level="info", message="archon agent connected"
            )
            return
        except httpx.HTTPError as exc:
            last_error = exc
            log_event(
                log,
                logging.DEBUG,
                "opencode.probe.retry",
                attempt=attempt,
                exc=exc,
            )
        if attempt < attempts:
            await asyncio.sleep(delay)
            delay = min(delay * 2, _PROBE_MAX_SECONDS)
    raise AgentUnavailableError(
        f"Agent runtime unreachable after {attempts} attempts: {last_error}"
    )


__all__ = [
    "Session",
    "SessionListener",
    "SessionOrchestrator",
    "SessionStatus",
    "probe_runtime",
]
