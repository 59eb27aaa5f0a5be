"""Tests for response formatters."""

import copy
import re

import pytest

from nodetop.formatter import (
    DEFAULT_FORMATTER,
    Formatter,
    IdentityFormatter,
    RedactingFormatter,
    TruncatingFormatter,
)

RESPONSES = [
    None,
    42,
    "text",
    b"bytes",
    [1, [2, 3]],
    (1, "two"),
    {"result": {"nested": ["value"]}},
    ValueError("boom"),
]


@pytest.mark.parametrize("response", RESPONSES)
def test_identity_returns_input(response):
    """Test the identity formatter returns the very same object."""
    formatter = IdentityFormatter()

    assert formatter.format_response(response) is response


@pytest.mark.parametrize("response", RESPONSES)
def test_identity_is_idempotent(response):
    formatter = IdentityFormatter()

    once = formatter.format_response(response)
    assert formatter.format_response(once) == once


def test_default_formatter_is_identity():
    assert isinstance(DEFAULT_FORMATTER, IdentityFormatter)


def test_formatter_is_abstract():
    with pytest.raises(TypeError):
        Formatter()


def test_custom_formatter():
    """Test alternative formatters only need format_response."""

    class UpperFormatter(Formatter):
        def format_response(self, response):
            return response.upper() if isinstance(response, str) else response

    assert UpperFormatter().format_response("ok") == "OK"


class TestTruncatingFormatter:
    """Tests for TruncatingFormatter."""

    def test_truncates_strings(self):
        assert TruncatingFormatter(4).format_response("abcdefgh") == "abcd..."

    def test_truncates_bytes(self):
        assert TruncatingFormatter(2, marker="~").format_response(b"abcdef") == b"ab~"

    def test_truncates_sequences(self):
        formatter = TruncatingFormatter(2)

        assert formatter.format_response([1, 2, 3]) == [1, 2]
        assert formatter.format_response((1, 2, 3)) == (1, 2)

    def test_short_values_untouched(self):
        value = "abc"
        assert TruncatingFormatter(3).format_response(value) is value

    def test_other_values_pass_through(self):
        value = {"a": "x" * 100}
        assert TruncatingFormatter(1).format_response(value) is value

    def test_does_not_mutate_input(self):
        value = [1, 2, 3]
        TruncatingFormatter(1).format_response(value)
        assert value == [1, 2, 3]

    def test_negative_length_rejected(self):
        with pytest.raises(ValueError):
            TruncatingFormatter(-1)


class TestRedactingFormatter:
    """Tests for RedactingFormatter."""

    def test_redacts_strings(self):
        formatter = RedactingFormatter([r"token=\w+"])

        assert formatter.format_response("url?token=abc123&x=1") == "url?[REDACTED]&x=1"

    def test_redacts_nested_values(self):
        formatter = RedactingFormatter([re.compile(r"\d{4}-\d{4}")], replacement="****")
        response = {"cards": ["1234-5678", ("9999-0000", 7)], "count": 2}
        original = copy.deepcopy(response)

        result = formatter.format_response(response)

        assert result == {"cards": ["****", ("****", 7)], "count": 2}
        assert response == original

    def test_is_idempotent(self):
        formatter = RedactingFormatter([r"secret"])

        once = formatter.format_response("a secret b")
        assert formatter.format_response(once) == once
