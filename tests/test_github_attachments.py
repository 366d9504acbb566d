import asyncio
import base64

import pytest

from archon_agent.integrations.github.attachments import (
    DownloadedFile,
    extract_attachments,
)

FIRST = "https://github.com/user-attachments/assets/first.png"
SECOND = "https://github.com/user-attachments/files/second.log"


@pytest.mark.anyio
async def test_rewrites_links_in_order_when_downloads_finish_out_of_order() -> None:
    text = f"see ![shot]({FIRST}) and <img alt=\"x\" src=\"{SECOND}\" /> now"

    async def download(url: str) -> DownloadedFile:
        # The first link resolves last.
        await asyncio.sleep(0.02 if url == FIRST else 0)
        if url == FIRST:
            return DownloadedFile(content=b"png", content_type="image/png")
        return DownloadedFile(content=b"log line", content_type="application/octet-stream")

    resolved = await extract_attachments(text, download)

    assert resolved.text == "see @first.png and @second.log now"
    first, second = resolved.attachments
    assert (first.filename, first.mime) == ("first.png", "image/png")
    assert (second.filename, second.mime) == ("second.log", "text/plain")
    assert resolved.text[first.start:first.end] == "@first.png"
    assert resolved.text[second.start:second.end] == "@second.log"
    assert base64.b64decode(second.content) == b"log line"


@pytest.mark.anyio
async def test_failed_download_keeps_original_link() -> None:
    text = f"![a]({FIRST}) then ![b]({SECOND})"

    async def download(url: str) -> DownloadedFile:
        if url == FIRST:
            raise RuntimeError("404")
        return DownloadedFile(content=b"ok", content_type="text/plain")

    resolved = await extract_attachments(text, download)

    assert resolved.text == f"![a]({FIRST}) then @second.log"
    assert [a.filename for a in resolved.attachments] == ["second.log"]
    (attachment,) = resolved.attachments
    assert resolved.text[attachment.start:attachment.end] == "@second.log"


@pytest.mark.anyio
async def test_text_without_links_is_unchanged() -> None:
    async def download(url: str) -> DownloadedFile:
        raise AssertionError("no downloads expected")

    resolved = await extract_attachments("plain prompt", download)
    assert resolved.text == "plain prompt"
    assert resolved.attachments == []
