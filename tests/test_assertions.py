"""Tests for value assertions exposed to test bodies."""

from __future__ import annotations

import re

import pytest

from deskprobe.assertions import Assertions
from deskprobe.errors import AssertionFailure


def test_passing_checks_return_quietly() -> None:
    check = Assertions()
    check.ok(1)
    check.equal({"a": [1, 2]}, {"a": [1, 2]})
    check.not_equal(True, 1)
    check.greater_than(2, 1)
    check.less_than(1, 2)
    check.greater_or_equal(2, 2)
    check.less_or_equal(2, 2)
    check.contains("project.json", "json")
    check.matches("build 42", r"\d+")
    check.matches("v1.2", re.compile(r"v\d"))
    check.not_zero(-1)
    check.not_empty([0])


def test_failures_carry_expected_and_actual() -> None:
    check = Assertions()

    with pytest.raises(AssertionFailure) as excinfo:
        check.equal(1, 2)
    assert str(excinfo.value) == "Expected 2, got 1"
    assert (excinfo.value.expected, excinfo.value.actual) == (2, 1)

    with pytest.raises(AssertionFailure, match="custom message"):
        check.ok(False, "custom message")
    with pytest.raises(AssertionFailure, match="greater than"):
        check.greater_than(1, 1)
    with pytest.raises(AssertionFailure, match="less than"):
        check.less_than(3, 2)
    with pytest.raises(AssertionFailure, match='to contain "yaml"'):
        check.contains("project.json", "yaml")
    with pytest.raises(AssertionFailure, match="to match"):
        check.matches("abc", r"^\d+$")
    with pytest.raises(AssertionFailure, match="non-zero"):
        check.not_zero(0)
    with pytest.raises(AssertionFailure, match="non-empty"):
        check.not_empty("")


def test_assertion_failure_is_an_assertion_error() -> None:
    with pytest.raises(AssertionError):
        Assertions().equal("a", "b")
