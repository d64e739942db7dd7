from __future__ import annotations

import pytest

from utils.chat_utils import MAX_CHAT_MESSAGE_LENGTH, ChatUtils


def test_short_message_is_unchanged() -> None:
    assert ChatUtils.truncate_message("hello", header="[", footer="]") == "[hello]"


def test_long_message_is_truncated_to_limit() -> None:
    result = ChatUtils.truncate_message("a" * 600)
    assert len(result) == MAX_CHAT_MESSAGE_LENGTH
    assert result.endswith(" ...")


def test_header_and_footer_are_kept() -> None:
    result = ChatUtils.truncate_message("b" * 100, 50, header="@viewer ", footer=" !")
    assert result.startswith("@viewer b")
    assert result.endswith(" ... !")
    assert len(result) == 50


def test_content_keeps_minimum_length(caplog: pytest.LogCaptureFixture) -> None:
    result = ChatUtils.truncate_message("c" * 100, 30, header="h" * 20)
    assert result == "h" * 20 + "c" * 20 + " ..."
    assert any("cannot be truncated" in rec.message for rec in caplog.records)


def test_none_content() -> None:
    assert ChatUtils.truncate_message(None) == ""


@pytest.mark.parametrize(
    ("content", "expected"),
    [("  a   b \n c ", "a b c"), ("", ""), (None, "")],
)
def test_normalize_whitespace(content: str | None, expected: str) -> None:
    assert ChatUtils.normalize_whitespace(content) == expected
