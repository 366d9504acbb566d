from __future__ import annotations

import asyncio
import base64
import logging
import posixpath
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

from ...logging_utils import log_event
from ...prompt import PromptAttachment, ResolvedPrompt

_MARKDOWN_RE = re.compile(
    r"!?\[.*?\]\((https://github\.com/user-attachments/[^)]+)\)", re.IGNORECASE
)
_IMG_TAG_RE = re.compile(
    r'<img .*?src="(https://github\.com/user-attachments/[^"]+)" />', re.IGNORECASE
)


@dataclass(frozen=True)
class DownloadedFile:
    content: bytes
    content_type: Optional[str]


Downloader = Callable[[str], Awaitable[DownloadedFile]]


@dataclass(frozen=True)
class _Match:
    start: int
    tag: str
    url: str


def find_attachment_links(text: str) -> list[_Match]:
    matches = [
        _Match(start=m.start(), tag=m.group(0), url=m.group(1))
        for pattern in (_MARKDOWN_RE, _IMG_TAG_RE)
        for m in pattern.finditer(text)
    ]
    return sorted(matches, key=lambda m: m.start)


def _mime_for(content_type: Optional[str]) -> str:
    if content_type and content_type.startswith("image/"):
        return content_type
    return "text/plain"


async def extract_attachments(
    text: str,
    download: Downloader,
    *,
    logger: Optional[logging.Logger] = None,
) -> ResolvedPrompt:
    """
    Download user-attachment links found in ``text`` and swap each for an
    ``@filename`` token.

    Downloads run concurrently; the rewrite is applied in match order with a
    running offset so earlier replacements never corrupt later positions.
    """
    log = logger or logging.getLogger(__name__)
    matches = find_attachment_links(text)
    if not matches:
        return ResolvedPrompt(text=text)

    results = await asyncio.gather(
        *(download(m.url) for m in matches), return_exceptions=True
    )

    rewritten = text
    offset = 0
    attachments: list[PromptAttachment] = []
    for match, result in zip(matches, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            log_event(
                log,
                logging.WARNING,
                "github.attachment.download_failed",
                url=match.url,
                exc=result,
            )
            continue
        filename = posixpath.basename(urlparse(match.url).path)
        replacement = f"@{filename}"
        start = match.start + offset
        rewritten = rewritten[:start] + replacement + rewritten[start + len(match.tag):]
        offset += len(replacement) - len(match.tag)
        attachments.append(
            PromptAttachment(
                filename=filename,
                mime=_mime_for(result.content_type),
                content=base64.b64encode(result.content).decode("ascii"),
                start=start,
                end=start + len(replacement),
                replacement=replacement,
            )
        )
    return ResolvedPrompt(text=rewritten, attachments=attachments)


__all__ = ["DownloadedFile", "Downloader", "extract_attachments", "find_attachment_links"]
