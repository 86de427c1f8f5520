from __future__ import annotations

import re

import pytest

from run_engine.tools.naming import (
    FUNCTION_PREFIX,
    XML_TAG_PREFIX,
    generate_fallback_name,
    is_valid_tool_name,
    sanitize_tool_name,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("read_file", "read_file"),
        ("  read file  ", "read_file"),
        ("read   many\tfiles", "read_many_files"),
        ("web-browser-takeover", "web-browser-takeover"),
        ("search!@#$", "search"),
        ("日志read", "read"),
    ],
)
def test_sanitize_is_deterministic_for_salvageable_names(raw: str, expected: str) -> None:
    assert sanitize_tool_name(raw) == expected
    assert sanitize_tool_name(raw) == sanitize_tool_name(raw)


def test_sanitize_truncates_to_64_chars() -> None:
    name = sanitize_tool_name("a" * 100)
    assert name == "a" * 64


@pytest.mark.parametrize("raw", ["", "   ", "!!!", None, 42])
def test_sanitize_empty_or_invalid_uses_prefixed_fallback(raw: object) -> None:
    name = sanitize_tool_name(raw, prefix=FUNCTION_PREFIX, context="SearchTool")
    assert is_valid_tool_name(name)
    assert re.fullmatch(r"toolfunc_SearchTool_[0-9a-f]{8}", name)


def test_fallback_without_context_and_context_truncation() -> None:
    assert re.fullmatch(r"xmltag_[0-9a-f]{8}", generate_fallback_name(XML_TAG_PREFIX))
    long_ctx = generate_fallback_name(FUNCTION_PREFIX, "A" * 50)
    assert re.fullmatch(r"toolfunc_A{20}_[0-9a-f]{8}", long_ctx)


def test_fallback_names_are_randomized() -> None:
    names = {generate_fallback_name(FUNCTION_PREFIX, "ctx") for _ in range(20)}
    assert len(names) > 1


def test_collision_appends_suffix_and_stays_valid() -> None:
    taken = {"search"}
    name = sanitize_tool_name("search", is_taken=lambda n: n in taken)
    assert name != "search"
    assert re.fullmatch(r"search_[0-9a-f]{8}", name)

    long_taken = {"x" * 64}
    renamed = sanitize_tool_name("x" * 80, is_taken=lambda n: n in long_taken)
    assert len(renamed) == 64
    assert is_valid_tool_name(renamed)


def test_is_valid_tool_name() -> None:
    assert is_valid_tool_name("ok_name-1")
    assert not is_valid_tool_name("")
    assert not is_valid_tool_name("has space")
    assert not is_valid_tool_name("x" * 65)
    assert not is_valid_tool_name(None)
