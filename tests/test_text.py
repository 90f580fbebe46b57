"""Tests for markdown sanitizing and token estimation."""

from __future__ import annotations

import pytest

from polychat.text.markdown import sanitize
from polychat.text.tokens import estimate_messages_tokens, estimate_tokens


class TestSanitize:
    def test_mixed_inline_markup(self) -> None:
        assert sanitize("**bold** and _em_ and `code`") == "bold and em and code"

    def test_bold_underscores(self) -> None:
        assert sanitize("this is __very__ important") == "this is very important"

    def test_italic_stars(self) -> None:
        assert sanitize("an *emphasised* word") == "an emphasised word"

    def test_strikethrough(self) -> None:
        assert sanitize("~~old~~ new") == "old new"

    def test_code_fence_keeps_inner_lines(self) -> None:
        raw = "Run this:\n```\nline one\nline two\n```\nDone."
        assert sanitize(raw) == "Run this:\nline one\nline two\nDone."

    def test_code_fence_language_tag_is_kept_as_text(self) -> None:
        assert sanitize("```python\nprint(1)\n```") == "python\nprint(1)"

    def test_headings_removed_at_line_start(self) -> None:
        raw = "# Title\nintro\n### Section\nbody"
        assert sanitize(raw) == "Title\nintro\nSection\nbody"

    def test_hash_inside_line_is_kept(self) -> None:
        assert sanitize("issue #42 is fixed") == "issue #42 is fixed"

    def test_blank_lines_collapse(self) -> None:
        assert sanitize("para one\n\n\n\npara two") == "para one\n\npara two"

    def test_whitespace_only_lines_collapse(self) -> None:
        assert sanitize("a\n   \n \nb") == "a\n\nb"

    def test_outer_whitespace_trimmed(self) -> None:
        assert sanitize("  \n hello \n\n") == "hello"

    def test_unmatched_star_left_alone(self) -> None:
        assert sanitize("2 * 3 = 6") == "2 * 3 = 6"

    def test_empty(self) -> None:
        assert sanitize("") == ""

    @pytest.mark.parametrize(
        "text",
        [
            "Hello, world.",
            "Plain sentence with numbers 1, 2 and 3.",
            "Line one\nLine two",
        ],
    )
    def test_plain_text_unchanged(self, text: str) -> None:
        assert sanitize(text) == text

    @pytest.mark.parametrize(
        "text",
        [
            "**bold** and _em_ and `code`",
            "# Heading\n\n\n\nBody with ~~strike~~",
            "```\ncode block\n```\n\ntail",
        ],
    )
    def test_idempotent(self, text: str) -> None:
        once = sanitize(text)
        assert sanitize(once) == once


class TestEstimateTokens:
    def test_empty(self) -> None:
        assert estimate_tokens("") == 0

    def test_none(self) -> None:
        assert estimate_tokens(None) == 0

    def test_exact_multiples(self) -> None:
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcdefgh") == 2

    def test_rounds_up(self) -> None:
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abcde") == 2

    def test_messages_sum_per_message(self) -> None:
        # ceil(4/4) + ceil(5/4), not ceil(9/4)
        assert estimate_messages_tokens(["abcd", "abcde"]) == 3

    def test_messages_empty(self) -> None:
        assert estimate_messages_tokens([]) == 0
