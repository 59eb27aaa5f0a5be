"""Pluggable formatting of evaluation responses.

A formatter turns an evaluation response into the response that is shown to
the user. Formatters must be pure: they return a value and never mutate their
input or touch anything else.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Iterable

from nodetop.models import EvaluationResponse


class Formatter(ABC):
    """Transforms an evaluation response before it is surfaced."""

    @abstractmethod
    def format_response(self, response: EvaluationResponse) -> EvaluationResponse:
        """Return the formatted response."""


class IdentityFormatter(Formatter):
    """The default formatter, leaving the response unchanged."""

    def format_response(self, response: EvaluationResponse) -> EvaluationResponse:
        return response


class TruncatingFormatter(Formatter):
    """Shortens long strings, bytes, lists and tuples; other values pass through."""

    def __init__(self, max_length: int, marker: str = "...") -> None:
        if max_length < 0:
            raise ValueError("max_length must not be negative")
        self._max_length = max_length
        self._marker = marker

    @property
    def max_length(self) -> int:
        return self._max_length

    def format_response(self, response: EvaluationResponse) -> EvaluationResponse:
        if not isinstance(response, (str, bytes, list, tuple)) or len(response) <= self._max_length:
            return response
        head = response[: self._max_length]
        if isinstance(response, str):
            return head + self._marker
        if isinstance(response, bytes):
            return head + self._marker.encode()
        return head


class RedactingFormatter(Formatter):
    """Masks regex matches in strings, including strings nested in dicts, lists and tuples."""

    def __init__(self, patterns: Iterable[str | re.Pattern[str]], replacement: str = "[REDACTED]") -> None:
        self._patterns = [re.compile(pattern) for pattern in patterns]
        self._replacement = replacement

    def format_response(self, response: EvaluationResponse) -> EvaluationResponse:
        if isinstance(response, str):
            for pattern in self._patterns:
                response = pattern.sub(self._replacement, response)
            return response
        if isinstance(response, dict):
            return {key: self.format_response(value) for key, value in response.items()}
        if isinstance(response, list):
            return [self.format_response(item) for item in response]
        if isinstance(response, tuple):
            return tuple(self.format_response(item) for item in response)
        return response


DEFAULT_FORMATTER: Formatter = IdentityFormatter()
