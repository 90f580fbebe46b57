"""Markdown stripping for model replies.

Providers answer in markdown, but the chat UI renders plain text.  The rules
run in a fixed order: emphasis markers first, then code fences, inline code,
headings and finally blank-line collapsing.  Each emphasis pattern is a
non-greedy, single-line pair match, so an unmatched delimiter (a lone ``*``)
is left untouched.
"""

from __future__ import annotations

import re

_BOLD_STARS = re.compile(r"\*\*(.*?)\*\*")
_BOLD_UNDERSCORES = re.compile(r"__(.*?)__")
_ITALIC_STARS = re.compile(r"\*(.*?)\*")
_ITALIC_UNDERSCORES = re.compile(r"_(.*?)_")
_STRIKETHROUGH = re.compile(r"~~(.*?)~~")
_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`(.*?)`")
_HEADING = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BLANK_RUN = re.compile(r"\n\s*\n")

# (pattern, replacement) in application order
_PAIR_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (_BOLD_STARS, r"\1"),
    (_BOLD_UNDERSCORES, r"\1"),
    (_ITALIC_STARS, r"\1"),
    (_ITALIC_UNDERSCORES, r"\1"),
    (_STRIKETHROUGH, r"\1"),
)


def _unfence(match: re.Match[str]) -> str:
    """Drop the fence markers of a code block, keeping its body verbatim."""
    return match.group(0).replace("```", "").strip()


def sanitize(raw_text: str) -> str:
    """Strip common markdown syntax from *raw_text*.

    Never fails: text without markdown comes back unchanged (apart from
    surrounding whitespace), and an empty string stays empty.
    """
    if not raw_text:
        return ""

    text = raw_text
    for pattern, replacement in _PAIR_RULES:
        text = pattern.sub(replacement, text)

    text = _CODE_FENCE.sub(_unfence, text)
    text = _INLINE_CODE.sub(r"\1", text)
    text = _HEADING.sub("", text)
    text = _BLANK_RUN.sub("\n\n", text)
    return text.strip()
