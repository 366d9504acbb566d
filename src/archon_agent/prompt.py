from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

MAX_PROMPT_CHARS = 4000
TRUNCATION_MARKER = "\n\n[context truncated due to length]"


@dataclass(frozen=True)
class PromptAttachment:
    """A downloaded file referenced from the prompt by an ``@filename`` token.

    ``start``/``end`` locate the token in the rewritten prompt text.
    """

    filename: str
    mime: str
    content: str
    start: int
    end: int
    replacement: str

    @property
    def decoded_size(self) -> int:
        return int(len(self.content) * 0.75)


@dataclass(frozen=True)
class ResolvedPrompt:
    text: str
    attachments: list[PromptAttachment] = field(default_factory=list)


def truncate_prompt(text: str, limit: int = MAX_PROMPT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def append_context(prompt: str, context: Optional[str]) -> str:
    if not context:
        return prompt
    return f"{prompt}\n\n{context}"


__all__ = [
    "MAX_PROMPT_CHARS",
    "PromptAttachment",
    "ResolvedPrompt",
    "TRUNCATION_MARKER",
    "append_context",
    "truncate_prompt",
]
