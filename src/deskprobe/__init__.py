"""deskprobe package."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from .errors import (
    AssertionFailure,
    BridgeUnavailable,
    ChannelError,
    DeskProbeError,
    MockError,
    NotFound,
    SuiteAborted,
    WaitTimeout,
)
from .ipc import IpcInterceptor, MockEntry
from .runner import TestCase, TestContext, TestRunner, run_suite
from .runtime_config import RunnerConfig
from .session import TestSession
from .virtual_list import VirtualListProbe

__all__ = [
    "AssertionFailure",
    "BridgeUnavailable",
    "ChannelError",
    "DeskProbeError",
    "IpcInterceptor",
    "MockEntry",
    "MockError",
    "NotFound",
    "RunnerConfig",
    "SuiteAborted",
    "TestCase",
    "TestContext",
    "TestRunner",
    "TestSession",
    "VirtualListProbe",
    "WaitTimeout",
    "__version__",
    "run_suite",
]

try:
    __version__ = version("deskprobe")
except PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"
