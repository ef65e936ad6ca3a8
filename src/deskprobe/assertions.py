"""Value assertions exposed to test bodies as `context.assertions`."""

from __future__ import annotations

import re
from collections.abc import Sized
from typing import Any

from .errors import AssertionFailure
from .ipc import json_equal


class Assertions:
    """Plain value checks raising `AssertionFailure` with expected/actual."""

    def ok(self, condition: object, message: str | None = None) -> None:
        if not condition:
            raise AssertionFailure(
                message or "Expected condition to be truthy",
                expected=True,
                actual=condition,
            )

    def equal(self, actual: Any, expected: Any, message: str | None = None) -> None:
        if not json_equal(actual, expected):
            raise AssertionFailure(
                message or f"Expected {expected!r}, got {actual!r}",
                expected=expected,
                actual=actual,
            )

    def not_equal(self, actual: Any, unexpected: Any, message: str | None = None) -> None:
        if json_equal(actual, unexpected):
            raise AssertionFailure(
                message or f"Expected value to differ from {unexpected!r}",
                expected=f"not {unexpected!r}",
                actual=actual,
            )

    def greater_than(self, actual: float, expected: float, message: str | None = None) -> None:
        if not actual > expected:
            raise AssertionFailure(
                message or f"Expected {actual} to be greater than {expected}",
                expected=f"> {expected}",
                actual=actual,
            )

    def less_than(self, actual: float, expected: float, message: str | None = None) -> None:
        if not actual < expected:
            raise AssertionFailure(
                message or f"Expected {actual} to be less than {expected}",
                expected=f"< {expected}",
                actual=actual,
            )

    def greater_or_equal(
        self, actual: float, expected: float, message: str | None = None
    ) -> None:
        if not actual >= expected:
            raise AssertionFailure(
                message or f"Expected {actual} to be >= {expected}",
                expected=f">= {expected}",
                actual=actual,
            )

    def less_or_equal(self, actual: float, expected: float, message: str | None = None) -> None:
        if not actual <= expected:
            raise AssertionFailure(
                message or f"Expected {actual} to be <= {expected}",
                expected=f"<= {expected}",
                actual=actual,
            )

    def contains(self, haystack: str, needle: str, message: str | None = None) -> None:
        if needle not in haystack:
            raise AssertionFailure(
                message or f'Expected "{haystack}" to contain "{needle}"',
                expected=needle,
                actual=haystack,
            )

    def matches(self, actual: str, pattern: str | re.Pattern[str], message: str | None = None) -> None:
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        if compiled.search(actual) is None:
            raise AssertionFailure(
                message or f'Expected "{actual}" to match {compiled.pattern}',
                expected=compiled.pattern,
                actual=actual,
            )

    def not_zero(self, value: float, message: str | None = None) -> None:
        if value == 0:
            raise AssertionFailure(
                message or "Expected non-zero value, got 0",
                expected="non-zero",
                actual=value,
            )

    def not_empty(self, value: Sized, message: str | None = None) -> None:
        if len(value) == 0:
            raise AssertionFailure(
                message or "Expected non-empty value",
                expected="non-empty",
                actual=value,
            )
