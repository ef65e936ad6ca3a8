"""Error kinds raised by the interception engine, list probe, and runner."""

from __future__ import annotations


class DeskProbeError(Exception):
    """Base class for all deskprobe errors."""


class ChannelError(DeskProbeError):
    """Remote execution channel failed (disconnect, protocol error, ...)."""


class BridgeUnavailable(DeskProbeError):
    """No mock matched and no original invocation path is reachable."""


class MockError(DeskProbeError):
    """Deliberately configured failure returned by a mock entry."""


class WaitTimeout(DeskProbeError, TimeoutError):
    """A polling wait or search exceeded its time budget."""


class NotFound(DeskProbeError, LookupError):
    """Target container or item is absent after an exhaustive search."""


class SuiteAborted(DeskProbeError):
    """Suite setup failed; no test in the suite was run."""


class AssertionFailure(DeskProbeError, AssertionError):
    """Post-hoc verification mismatch carrying expected and actual values."""

    def __init__(
        self, message: str, *, expected: object = None, actual: object = None
    ) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual
