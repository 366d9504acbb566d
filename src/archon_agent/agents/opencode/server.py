from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional, Sequence

from ...errors import AgentUnavailableError
from ...logging_utils import log_event

_LISTENING_RE = re.compile(r"listening on (http://[^\s]+)")


class OpenCodeServer:
    """Runs a local agent runtime for the duration of a run.

    Used when no remote runtime URL is reachable and a command is configured
    (for example ``["opencode", "serve", "--port", "0"]``).
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        logger: Optional[logging.Logger] = None,
        ready_timeout: float = 20.0,
    ) -> None:
        self._command = [str(arg) for arg in command]
        self._cwd = cwd
        self._logger = logger or logging.getLogger(__name__)
        self._ready_timeout = ready_timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task[None]] = None
        self.base_url: Optional[str] = None

    async def __aenter__(self) -> "OpenCodeServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def start(self) -> str:
        process = await asyncio.create_subprocess_exec(
            *self._command,
            cwd=str(self._cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=dict(os.environ),
        )
        self._process = process
        try:
            base_url = await self._read_base_url(process)
        except Exception:
            await self.close()
            raise
        if not base_url:
            await self.close()
            raise AgentUnavailableError("Agent runtime failed to report its base URL")
        self.base_url = base_url
        # Keep draining stdout so the child never blocks on a full pipe.
        self._stdout_task = asyncio.create_task(self._drain_stdout(process))
        log_event(
            self._logger,
            logging.INFO,
            "opencode.server.started",
            base_url=base_url,
            pid=process.pid,
        )
        return base_url

    async def close(self) -> None:
        stdout_task = self._stdout_task
        self._stdout_task = None
        if stdout_task is not None and not stdout_task.done():
            stdout_task.cancel()
            try:
                await stdout_task
            except asyncio.CancelledError:
                pass
        process = self._process
        self._process = None
        if process is not None and process.returncode is None:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()

    async def _drain_stdout(self, process: asyncio.subprocess.Process) -> None:
        if process.stdout is None:
            return
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            if not self._logger.isEnabledFor(logging.DEBUG):
                continue
            decoded = line.decode("utf-8", errors="ignore").rstrip()
            if decoded:
                log_event(self._logger, logging.DEBUG, "opencode.stdout", line=decoded)

    async def _read_base_url(
        self, process: asyncio.subprocess.Process
    ) -> Optional[str]:
        if process.stdout is None:
            return None
        start = time.monotonic()
        while True:
            if process.returncode is not None:
                raise AgentUnavailableError("Agent runtime exited before ready")
            elapsed = time.monotonic() - start
            if elapsed >= self._ready_timeout:
                return None
            try:
                line = await asyncio.wait_for(
                    process.stdout.readline(), timeout=self._ready_timeout - elapsed
                )
            except asyncio.TimeoutError:
                return None
            if not line:
                if process.stdout.at_eof():
                    await process.wait()
                continue
            match = _LISTENING_RE.search(line.decode("utf-8", errors="ignore"))
            if match:
                return match.group(1)


__all__ = ["OpenCodeServer"]
