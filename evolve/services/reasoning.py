"""Split backend text into exposed reasoning blocks and the working output."""
from __future__ import annotations

import re

from evolve.models.thought import Thought, ThoughtType

_TAG_RE = re.compile(r"<(/?)(think|thinking)\s*>", re.IGNORECASE)


def _tidy(text: str) -> str:
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def extract_thoughts(
    text: str,
    thought_type: ThoughtType = ThoughtType.REASONING,
) -> tuple[list[Thought], str]:
    """Return ``(thoughts, cleaned_text)`` for ``<think>`` delimited text.

    Nested blocks fold into their outermost block. Unbalanced delimiters
    (unterminated block or a stray closing tag) extract nothing and return the
    text unchanged.
    """
    if not text:
        return [], text or ""

    tags = list(_TAG_RE.finditer(text))
    if not tags:
        return [], text

    outside: list[str] = []
    blocks: list[str] = []
    depth = 0
    pos = 0
    block_start = 0
    for match in tags:
        closing = match.group(1) == "/"
        if not closing:
            if depth == 0:
                outside.append(text[pos:match.start()])
                block_start = match.end()
            depth += 1
            continue
        if depth == 0:
            return [], text
        depth -= 1
        if depth == 0:
            blocks.append(text[block_start:match.start()])
            pos = match.end()

    if depth != 0:
        return [], text
    outside.append(text[pos:])

    thoughts: list[Thought] = []
    for block in blocks:
        content = _tidy(_TAG_RE.sub("", block))
        if content:
            thoughts.append(Thought(content=content, type=thought_type))
    return thoughts, _tidy("".join(outside))
