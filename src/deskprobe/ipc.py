"""Bridge-call interception, mocking, and call/event history.

`IpcInterceptor` wraps the invocation entry point of a caller-supplied bridge
object. Every call is resolved against the mock table (or delegated to the
original entry point) and recorded before the result reaches the caller, so
assertions made right after a call always observe it.

Mock behaviors form a closed instruction set (`respond`, `error`, `lookup`,
plus `delay_ms`/`once`/`match_args` modifiers) so a mock table can be shipped to
the application side as plain JSON instead of serialized code.
"""

from __future__ import annotations

import asyncio
import copy
import heapq
import inspect
import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .bridge import EventDispatcher
from .channel import (
    IPC_CLEAR_HISTORY,
    IPC_HISTORY,
    IPC_SET_MOCKS,
    JsonValue,
    RemoteExecutionChannel,
)
from .errors import AssertionFailure, BridgeUnavailable, MockError, WaitTimeout
from .polling import POLL_INTERVAL_S, ms_to_s, poll_until

logger = logging.getLogger(__name__)

INVOKE_ATTR = "invoke"
DEFAULT_WAIT_TIMEOUT_MS = 10_000

MockHandler = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class LookupHandler:
    """Serializable handler answering from a table keyed by one argument.

    Non-string argument values are keyed by their canonical JSON text.
    """

    key: str
    table: Mapping[str, Any]
    default: Any = None

    def __call__(self, args: Mapping[str, Any]) -> Any:
        if self.key not in args:
            return self.default
        return self.table.get(lookup_key(args[self.key]), self.default)


@dataclass(frozen=True)
class MockEntry:
    """Configured substitute behavior for one bridge command."""

    command: str
    response: Any = None
    error: str | None = None
    handler: MockHandler | None = None
    delay_ms: int = 0
    once: bool = False
    match_args: Mapping[str, Any] | None = None

    def to_instruction(self) -> dict[str, JsonValue]:
        """Return the JSON instruction form of this entry.

        Raises `ValueError` for handlers that are plain Python callables; use
        `LookupHandler` for mocks that must cross the channel.
        """
        behavior: dict[str, JsonValue]
        if self.error is not None:
            behavior = {"op": "error", "message": self.error}
        elif isinstance(self.handler, LookupHandler):
            behavior = {
                "op": "lookup",
                "key": self.handler.key,
                "table": dict(self.handler.table),
                "default": self.handler.default,
            }
        elif self.handler is not None:
            raise ValueError(
                f"Mock for {self.command!r} uses a Python callable handler and "
                "cannot be sent to the application; use LookupHandler instead."
            )
        else:
            behavior = {"op": "respond", "value": self.response}
        return {
            "command": self.command,
            "behavior": behavior,
            "delay_ms": self.delay_ms,
            "once": self.once,
            "match_args": dict(self.match_args) if self.match_args is not None else None,
        }

    @classmethod
    def from_instruction(cls, instruction: Mapping[str, Any]) -> MockEntry:
        """Build an entry from its JSON instruction form."""
        behavior = instruction.get("behavior")
        if not isinstance(behavior, Mapping):
            raise ValueError("Mock instruction is missing a behavior object")
        op = behavior.get("op")
        command = str(instruction["command"])
        match_args = instruction.get("match_args")
        common: dict[str, Any] = {
            "delay_ms": int(instruction.get("delay_ms") or 0),
            "once": bool(instruction.get("once", False)),
            "match_args": dict(match_args) if isinstance(match_args, Mapping) else None,
        }
        if op == "respond":
            return cls(command, response=behavior.get("value"), **common)
        if op == "error":
            return cls(command, error=str(behavior.get("message", "")), **common)
        if op == "lookup":
            table = behavior.get("table")
            handler = LookupHandler(
                key=str(behavior.get("key", "")),
                table=dict(table) if isinstance(table, Mapping) else {},
                default=behavior.get("default"),
            )
            return cls(command, handler=handler, **common)
        raise ValueError(f"Unknown mock instruction op: {op!r}")


@dataclass(frozen=True)
class InvokeRecord:
    """One completed bridge call. Never mutated after it is appended."""

    command: str
    args: dict[str, Any]
    timestamp: float
    intercepted: bool
    response: Any = None
    error: str | None = None
    duration_ms: float | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_json(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": self.args,
            "timestamp": self.timestamp,
            "intercepted": self.intercepted,
            "response": self.response,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> InvokeRecord:
        """Build a record from the JSON form kept by the application side."""
        args = data.get("args")
        error = data.get("error")
        duration = data.get("duration_ms")
        return cls(
            command=str(data.get("command", "")),
            args=dict(args) if isinstance(args, Mapping) else {},
            timestamp=float(data.get("timestamp") or 0.0),
            intercepted=bool(data.get("intercepted", False)),
            response=data.get("response"),
            error=str(error) if error is not None else None,
            duration_ms=float(duration) if isinstance(duration, (int, float)) else None,
        )


@dataclass(frozen=True)
class EventRecord:
    """One emitted event. Never mutated after it is appended."""

    event: str
    payload: Any
    timestamp: float

    def to_json(self) -> dict[str, Any]:
        return {"event": self.event, "payload": self.payload, "timestamp": self.timestamp}

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> EventRecord:
        return cls(
            event=str(data.get("event", "")),
            payload=data.get("payload"),
            timestamp=float(data.get("timestamp") or 0.0),
        )


def lookup_key(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def json_equal(left: Any, right: Any) -> bool:
    """Deep equality with JSON semantics (booleans never equal numbers)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left) != set(right):
            return False
        return all(json_equal(left[key], right[key]) for key in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(json_equal(a, b) for a, b in zip(left, right))
    return bool(left == right)


def args_match(args: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    """Return whether every key in `expected` is present and deep-equal in `args`."""
    for key, value in expected.items():
        if key not in args or not json_equal(args[key], value):
            return False
    return True


async def resolve_mock(entry: MockEntry, args: dict[str, Any]) -> Any:
    """Produce the mocked outcome: error > handler > response."""
    if entry.error is not None:
        raise MockError(entry.error)
    if entry.handler is not None:
        result = entry.handler(args)
        if inspect.isawaitable(result):
            result = await result
        return result
    return copy.deepcopy(entry.response)


async def interpret_instruction(
    instruction: Mapping[str, Any], args: dict[str, Any]
) -> Any:
    """Run one JSON mock instruction against call arguments, delay included."""
    entry = MockEntry.from_instruction(instruction)
    if entry.delay_ms > 0:
        await asyncio.sleep(entry.delay_ms / 1000)
    return await resolve_mock(entry, args)


def _snapshot(value: Any) -> Any:
    try:
        return copy.deepcopy(value)
    except (TypeError, copy.Error):
        return value


def _error_text(exc: BaseException) -> str:
    text = str(exc)
    return text or exc.__class__.__name__


def assert_invoked(
    history: list[InvokeRecord],
    command: str,
    *,
    times: int | None = None,
    at_least: int | None = None,
    at_most: int | None = None,
) -> None:
    """Check call-count constraints for `command` over a history snapshot."""
    count = sum(1 for record in history if record.command == command)
    if times is None and at_least is None and at_most is None and count == 0:
        raise AssertionFailure(
            f"Expected {command} to be invoked, but it was never invoked",
            expected="at least 1",
            actual=count,
        )
    if times is not None and count != times:
        raise AssertionFailure(
            f"Expected {command} to be invoked {times} times, "
            f"but was invoked {count} times",
            expected=times,
            actual=count,
        )
    if at_least is not None and count < at_least:
        raise AssertionFailure(
            f"Expected {command} to be invoked at least {at_least} times, "
            f"but was invoked {count} times",
            expected=at_least,
            actual=count,
        )
    if at_most is not None and count > at_most:
        raise AssertionFailure(
            f"Expected {command} to be invoked at most {at_most} times, "
            f"but was invoked {count} times",
            expected=at_most,
            actual=count,
        )


def assert_invoked_with(
    history: list[InvokeRecord], command: str, expected_args: Mapping[str, Any]
) -> None:
    """Check that some call to `command` carried all of `expected_args`."""
    records = [record for record in history if record.command == command]
    if any(args_match(record.args, expected_args) for record in records):
        return
    actual_args = [record.args for record in records]
    raise AssertionFailure(
        f"Expected {command} to be invoked with {_json_text(expected_args)}, "
        f"but was invoked with: {_json_text(actual_args)}",
        expected=dict(expected_args),
        actual=actual_args,
    )


def assert_not_invoked(history: list[InvokeRecord], command: str) -> None:
    count = sum(1 for record in history if record.command == command)
    if count:
        raise AssertionFailure(
            f"Expected {command} to not be invoked, but was invoked {count} times",
            expected=0,
            actual=count,
        )


def _json_text(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=repr)


@dataclass
class _InstallState:
    original: Callable[..., Any] | None = None
    # Instance attribute replaced by the wrapper; restored verbatim on uninstall.
    own_value: Any = None
    had_own_value: bool = False
    installed: bool = False


class IpcInterceptor:
    """Mock table plus ordered call and event history for one bridge.

    The interceptor is session-scoped: create it when a session opens and
    discard it when the session closes.

    With a `channel`, calls and events that the application resolves on its
    own side (from pushed mocks or its real handlers) are pulled in by
    `refresh_history` and merged with local records in timestamp order.
    """

    def __init__(
        self,
        bridge: object | None,
        *,
        channel: RemoteExecutionChannel | None = None,
        attr: str = INVOKE_ATTR,
        poll_interval_s: float = POLL_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bridge = bridge
        self._channel = channel
        self._attr = attr
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._state = _InstallState()
        self._mocks: dict[str, MockEntry] = {}
        self._history: list[InvokeRecord] = []
        self._events: list[EventRecord] = []
        self._remote_history: list[InvokeRecord] = []
        self._remote_events: list[EventRecord] = []
        # Entries as last mirrored to the application side.
        self._pushed: dict[str, MockEntry] = {}
        self._last_timestamp = 0.0

    @property
    def installed(self) -> bool:
        return self._state.installed

    def install(self) -> None:
        """Wrap the bridge entry point. Calling twice is a no-op."""
        if self._state.installed:
            return
        bridge = self._bridge
        original = getattr(bridge, self._attr, None) if bridge is not None else None
        own = getattr(bridge, "__dict__", {}) if bridge is not None else {}
        self._state = _InstallState(
            original=original if callable(original) else None,
            own_value=own.get(self._attr),
            had_own_value=self._attr in own,
            installed=True,
        )
        if bridge is not None:
            setattr(bridge, self._attr, self.invoke)
        logger.debug(
            "IPC interceptor installed",
            extra={"event": "ipc_installed", "has_original": original is not None},
        )

    def uninstall(self) -> None:
        """Restore the original entry point. Calling twice is a no-op."""
        if not self._state.installed:
            return
        bridge = self._bridge
        if bridge is not None:
            if self._state.had_own_value:
                setattr(bridge, self._attr, self._state.own_value)
            else:
                delattr(bridge, self._attr)
        self._state = _InstallState()
        logger.debug("IPC interceptor uninstalled", extra={"event": "ipc_uninstalled"})

    # Mock table

    def mock(
        self,
        command: str,
        *,
        response: Any = None,
        error: str | None = None,
        handler: MockHandler | None = None,
        delay_ms: int = 0,
        once: bool = False,
        match_args: Mapping[str, Any] | None = None,
    ) -> MockEntry:
        """Register (or replace) the mock entry for `command`."""
        entry = MockEntry(
            command=command,
            response=_snapshot(response),
            error=error,
            handler=handler,
            delay_ms=max(0, int(delay_ms)),
            once=once,
            match_args=_snapshot(dict(match_args)) if match_args is not None else None,
        )
        self._mocks[command] = entry
        logger.debug(
            "Mock registered for %s",
            command,
            extra={"event": "ipc_mock_registered", "command": command, "once": once},
        )
        return entry

    def mock_error(self, command: str, message: str, **kwargs: Any) -> MockEntry:
        return self.mock(command, error=message, **kwargs)

    def mock_with_delay(
        self, command: str, response: Any, delay_ms: int, **kwargs: Any
    ) -> MockEntry:
        return self.mock(command, response=response, delay_ms=delay_ms, **kwargs)

    def unmock(self, command: str) -> None:
        self._mocks.pop(command, None)

    def clear_mocks(self) -> None:
        self._mocks.clear()

    def get_mock(self, command: str) -> MockEntry | None:
        return self._mocks.get(command)

    def mock_instructions(self) -> dict[str, dict[str, JsonValue]]:
        """Return the mock table in its JSON instruction form."""
        return {command: entry.to_instruction() for command, entry in self._mocks.items()}

    async def push_mocks(self, channel: RemoteExecutionChannel | None = None) -> None:
        """Mirror the mock table onto the application side of `channel`.

        Defaults to the channel given at construction.
        """
        target = channel if channel is not None else self._channel
        if target is None:
            raise ValueError("No channel to push mocks to")
        instructions = self.mock_instructions()
        await target.evaluate(IPC_SET_MOCKS, {"mocks": instructions})
        self._pushed = dict(self._mocks)
        logger.debug(
            "Pushed %d mock instructions",
            len(instructions),
            extra={"event": "ipc_mocks_pushed", "count": len(instructions)},
        )

    # Invocation

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any:
        """Resolve one bridge call through the mock table or the original."""
        call_args = dict(args or {})
        started = time.perf_counter()
        entry = self._claim(command, call_args)
        if entry is None:
            return await self._delegate(command, call_args, started)

        try:
            if entry.delay_ms > 0:
                await asyncio.sleep(entry.delay_ms / 1000)
            response = await resolve_mock(entry, call_args)
        except Exception as exc:
            self._record(command, call_args, started, intercepted=True, error=_error_text(exc))
            raise
        self._record(command, call_args, started, intercepted=True, response=response)
        return response

    def _claim(self, command: str, args: dict[str, Any]) -> MockEntry | None:
        entry = self._mocks.get(command)
        if entry is None:
            return None
        if entry.match_args is not None and not args_match(args, entry.match_args):
            logger.debug("Mock for %s skipped: arguments did not match", command)
            return None
        if entry.once:
            # Consumed at match time so a concurrent call cannot reuse it.
            self._mocks.pop(command, None)
        return entry

    async def _delegate(self, command: str, args: dict[str, Any], started: float) -> Any:
        original = self._original_invoke()
        if original is None:
            message = f"Bridge invoke not available for {command!r}"
            self._record(command, args, started, intercepted=False, error=message)
            raise BridgeUnavailable(message)
        try:
            response = await original(command, args)
        except Exception as exc:
            self._record(command, args, started, intercepted=False, error=_error_text(exc))
            raise
        self._record(command, args, started, intercepted=False, response=response)
        return response

    def _original_invoke(self) -> Callable[..., Any] | None:
        if self._state.installed:
            return self._state.original
        if self._bridge is None:
            return None
        original = getattr(self._bridge, self._attr, None)
        return original if callable(original) else None

    def _next_timestamp(self) -> float:
        now = float(self._clock()) * 1000.0
        self._last_timestamp = max(self._last_timestamp, now)
        return self._last_timestamp

    def _record(
        self,
        command: str,
        args: dict[str, Any],
        started: float,
        *,
        intercepted: bool,
        response: Any = None,
        error: str | None = None,
    ) -> InvokeRecord:
        record = InvokeRecord(
            command=command,
            args=_snapshot(args),
            timestamp=self._next_timestamp(),
            intercepted=intercepted,
            response=_snapshot(response),
            error=error,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        self._history.append(record)
        logger.debug(
            "Bridge call %s recorded",
            command,
            extra={
                "event": "ipc_call_recorded",
                "command": command,
                "intercepted": intercepted,
                "failed": error is not None,
            },
        )
        return record

    # History

    def get_history(self, command: str | None = None) -> list[InvokeRecord]:
        """Local and application-side calls, oldest first.

        Application-side calls appear once `refresh_history` has pulled them.
        """
        history = list(
            heapq.merge(self._history, self._remote_history, key=lambda r: r.timestamp)
        )
        if command is None:
            return history
        return [record for record in history if record.command == command]

    def get_last_invoke(self, command: str | None = None) -> InvokeRecord | None:
        history = self.get_history(command)
        return history[-1] if history else None

    def clear_history(self) -> None:
        self._history.clear()
        self._remote_history.clear()

    async def refresh_history(self) -> None:
        """Pull calls and events recorded on the application side.

        Remote buffers are drained, so each record is imported once. Pushed
        `once` mocks that the application has consumed are dropped from the
        local table too. Does nothing without a channel.
        """
        if self._channel is None:
            return
        snapshot = await self._channel.evaluate(IPC_HISTORY, {"drain": True})
        if not isinstance(snapshot, Mapping):
            return
        invokes = snapshot.get("invokes")
        events = snapshot.get("events")
        remote_mocks = snapshot.get("mocks")
        if isinstance(invokes, list):
            self._remote_history.extend(
                InvokeRecord.from_json(item) for item in invokes if isinstance(item, Mapping)
            )
        if isinstance(events, list):
            self._remote_events.extend(
                EventRecord.from_json(item) for item in events if isinstance(item, Mapping)
            )
        if isinstance(remote_mocks, list):
            self._reconcile_pushed({str(command) for command in remote_mocks})

    def _reconcile_pushed(self, remote_commands: set[str]) -> None:
        for command, entry in list(self._pushed.items()):
            if command in remote_commands:
                continue
            del self._pushed[command]
            # A newer local entry for the same command was never pushed; keep it.
            if entry.once and self._mocks.get(command) is entry:
                self._mocks.pop(command)
                logger.debug(
                    "Mock for %s consumed by the application",
                    command,
                    extra={"event": "ipc_mock_consumed_remotely", "command": command},
                )

    async def clear_remote_history(self) -> None:
        """Drop application-side records, pulled or not."""
        self._remote_history.clear()
        self._remote_events.clear()
        if self._channel is not None:
            await self._channel.evaluate(IPC_CLEAR_HISTORY, {})

    async def wait_for_invoke(
        self,
        command: str,
        *,
        timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
        match_args: Mapping[str, Any] | None = None,
    ) -> InvokeRecord:
        """Poll history until a matching call appears; raise `WaitTimeout` otherwise."""

        async def _find() -> InvokeRecord | None:
            await self.refresh_history()
            for record in self.get_history(command):
                if match_args is None or args_match(record.args, match_args):
                    return record
            return None

        found = await poll_until(
            _find, timeout_s=ms_to_s(timeout_ms), interval_s=self._poll_interval_s
        )
        if found is None:
            raise WaitTimeout(f"Timeout waiting for invoke: {command}")
        return found

    def assert_invoked(
        self,
        command: str,
        *,
        times: int | None = None,
        at_least: int | None = None,
        at_most: int | None = None,
    ) -> None:
        assert_invoked(
            self.get_history(), command, times=times, at_least=at_least, at_most=at_most
        )

    def assert_invoked_with(self, command: str, expected_args: Mapping[str, Any]) -> None:
        assert_invoked_with(self.get_history(), command, expected_args)

    def assert_not_invoked(self, command: str) -> None:
        assert_not_invoked(self.get_history(), command)

    # Events

    async def emit(self, event: str, payload: Any = None) -> bool:
        """Record an event, then try to deliver it to the application.

        Returns whether delivery succeeded. The record is kept either way.
        """
        self._events.append(
            EventRecord(event=event, payload=_snapshot(payload), timestamp=self._next_timestamp())
        )
        if not isinstance(self._bridge, EventDispatcher):
            logger.debug("No event dispatch surface for %s", event)
            return False
        try:
            await self._bridge.emit(event, payload)
        except Exception as exc:
            logger.warning(
                "Event delivery failed for %s: %s",
                event,
                exc,
                extra={"event": "ipc_event_delivery_failed", "event_name": event},
            )
            return False
        return True

    def get_event_history(self, event: str | None = None) -> list[EventRecord]:
        events = list(
            heapq.merge(self._events, self._remote_events, key=lambda r: r.timestamp)
        )
        if event is None:
            return events
        return [record for record in events if record.event == event]

    def clear_event_history(self) -> None:
        self._events.clear()
        self._remote_events.clear()

    def reset(self) -> None:
        """Drop mocks and both histories."""
        self._mocks.clear()
        self._pushed.clear()
        self.clear_history()
        self.clear_event_history()


__all__ = [
    "EventRecord",
    "InvokeRecord",
    "IpcInterceptor",
    "LookupHandler",
    "MockEntry",
    "args_match",
    "assert_invoked",
    "assert_invoked_with",
    "assert_not_invoked",
    "interpret_instruction",
    "json_equal",
    "resolve_mock",
]
