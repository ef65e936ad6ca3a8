"""In-memory remote side for deterministic testing.

`FakeRemoteChannel` enforces the same JSON boundary a real channel has, and
the simulated application pieces (`FakeVirtualList`, `FakeIpcHost`) register
the remote routines the engine and probe call.
"""

from __future__ import annotations

import json
import math
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .channel import (
    IPC_CLEAR_HISTORY,
    IPC_EMIT,
    IPC_HISTORY,
    IPC_INVOKE,
    IPC_SET_MOCKS,
    VIRTUAL_LIST_ACTIVATE,
    VIRTUAL_LIST_MEASURE_SCROLL,
    VIRTUAL_LIST_SAMPLE,
    VIRTUAL_LIST_SCROLL_TO,
    JsonValue,
)
from .errors import ChannelError
from .ipc import EventRecord, InvokeRecord, args_match, interpret_instruction

RemoteRoutine = Callable[[dict[str, Any]], Awaitable[Any]]


def _json_roundtrip(value: Any, *, what: str) -> Any:
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise ChannelError(f"{what} is not JSON-serializable: {exc}") from exc


class FakeRemoteChannel:
    """Request/response channel backed by registered Python routines."""

    def __init__(
        self,
        routines: Mapping[str, RemoteRoutine] | None = None,
        *,
        connect_error: str | None = None,
    ) -> None:
        self._routines: dict[str, RemoteRoutine] = dict(routines or {})
        self._connect_error = connect_error
        self.connected = False
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._in_flight = 0
        self.max_in_flight = 0

    def register(self, name: str, routine: RemoteRoutine) -> None:
        self._routines[name] = routine

    async def connect(self) -> None:
        if self._connect_error is not None:
            raise ChannelError(self._connect_error)
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def evaluate(
        self, function: str, args: Mapping[str, JsonValue] | None = None
    ) -> JsonValue:
        if not self.connected:
            raise ChannelError("Channel is not connected")
        routine = self._routines.get(function)
        if routine is None:
            raise ChannelError(f"Unknown remote routine: {function}")
        payload = _json_roundtrip(dict(args or {}), what="Argument payload")
        self.calls.append((function, payload))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            result = await routine(payload)
        finally:
            self._in_flight -= 1
        return _json_roundtrip(result, what="Routine result")

    def calls_to(self, function: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.calls if name == function]


def _default_frames() -> list[float]:
    return [16.67] * 120


@dataclass
class FakeVirtualList:
    """Fixed-height windowed list rendering only the rows near the viewport."""

    texts: list[str]
    item_height: float = 30.0
    client_height: float = 300.0
    overscan: int = 2
    role: str = "treeitem"
    explicit_indices: bool = True
    expose_total_count: bool = False
    present: bool = True
    # Number of samples taken before a requested scroll is applied.
    scroll_latency_samples: int = 0
    # Acknowledge scroll requests without moving, like a stalled renderer.
    ignore_scroll: bool = False
    frame_deltas_ms: list[float] = field(default_factory=_default_frames)
    selected: set[int] = field(default_factory=set)
    expandable: set[int] = field(default_factory=set)
    expanded: set[int] = field(default_factory=set)
    levels: dict[int, int] = field(default_factory=dict)
    scroll_top: float = 0.0
    activations: list[tuple[str, int]] = field(default_factory=list)
    _pending_top: float | None = field(default=None, init=False, repr=False)
    _pending_countdown: int = field(default=0, init=False, repr=False)
    _selector: str = field(default="", init=False, repr=False)

    def install(self, channel: FakeRemoteChannel, selector: str) -> None:
        self._selector = selector
        channel.register(VIRTUAL_LIST_SAMPLE, self._sample)
        channel.register(VIRTUAL_LIST_SCROLL_TO, self._scroll_to)
        channel.register(VIRTUAL_LIST_MEASURE_SCROLL, self._measure_scroll)
        channel.register(VIRTUAL_LIST_ACTIVATE, self._activate)

    @property
    def max_scroll_top(self) -> float:
        return max(0.0, len(self.texts) * self.item_height - self.client_height)

    def window(self) -> range:
        if not self.texts:
            return range(0)
        first = int(self.scroll_top // self.item_height)
        visible = math.ceil(self.client_height / self.item_height)
        start = max(0, first - self.overscan)
        end = min(len(self.texts), first + visible + self.overscan)
        return range(start, end)

    def _matches(self, args: Mapping[str, Any]) -> bool:
        return self.present and args.get("selector") == self._selector

    def _apply_pending_scroll(self) -> None:
        if self._pending_top is None:
            return
        if self._pending_countdown > 0:
            self._pending_countdown -= 1
            return
        self.scroll_top = self._pending_top
        self._pending_top = None

    def _render_item(self, index: int) -> dict[str, Any]:
        attributes: dict[str, str] = {"role": self.role, "data-id": f"item-{index}"}
        if self.explicit_indices:
            attributes["data-index"] = str(index)
        if index in self.selected:
            attributes["class"] = "row selected"
            attributes["aria-selected"] = "true"
        if index in self.expandable:
            attributes["aria-expanded"] = "true" if index in self.expanded else "false"
        if index in self.levels:
            attributes["aria-level"] = str(self.levels[index])
        return {
            "attributes": attributes,
            "text": self.texts[index],
            "bounds": {
                "top": index * self.item_height - self.scroll_top,
                "left": 0.0,
                "width": 240.0,
                "height": self.item_height,
            },
            "has_group": index in self.expanded,
        }

    async def _sample(self, args: dict[str, Any]) -> dict[str, Any] | None:
        if not self._matches(args):
            return None
        self._apply_pending_scroll()
        return {
            "container": {
                "scroll_top": self.scroll_top,
                "scroll_height": len(self.texts) * self.item_height,
                "client_height": self.client_height,
                "top": 0.0,
                "left": 0.0,
                "bottom": self.client_height,
                "total_count": len(self.texts) if self.expose_total_count else None,
            },
            "items": [self._render_item(index) for index in self.window()],
        }

    async def _scroll_to(self, args: dict[str, Any]) -> bool:
        if not self._matches(args):
            return False
        top = min(max(0.0, float(args.get("top") or 0.0)), self.max_scroll_top)
        if self.ignore_scroll:
            return True
        if self.scroll_latency_samples > 0:
            self._pending_top = top
            self._pending_countdown = self.scroll_latency_samples
        else:
            self.scroll_top = top
        return True

    async def _measure_scroll(self, args: dict[str, Any]) -> dict[str, Any] | None:
        if not self._matches(args):
            return None
        rendered = len(self.window())
        distance = float(args.get("distance") or 0.0)
        self.scroll_top = min(self.scroll_top + distance, self.max_scroll_top)
        rendered = max(rendered, len(self.window()))
        return {"frames": list(self.frame_deltas_ms), "items_rendered": rendered}

    async def _activate(self, args: dict[str, Any]) -> bool:
        if not self._matches(args):
            return False
        target = self._find_rendered(args.get("index"), args.get("text"))
        if target is None:
            return False
        action = str(args.get("action"))
        if action == "toggle":
            self.expanded ^= {target}
        elif action == "click":
            self.selected = {target}
        self.activations.append((action, target))
        return True

    def _find_rendered(self, index: Any, text: Any) -> int | None:
        window = self.window()
        if isinstance(index, int):
            return index if index in window else None
        if isinstance(text, str):
            needle = text.lower()
            for candidate in window:
                if needle in self.texts[candidate].lower():
                    return candidate
        return None


class FakeIpcHost:
    """Application-side bridge host reachable through `ipc.*` routines.

    Mock instructions pushed with `IpcInterceptor.push_mocks` apply to calls
    the simulated application makes through `app_invoke`. Those calls, and
    events raised with `app_emit`, are kept as JSON records until the
    interceptor drains them through `ipc.history`.
    """

    def __init__(
        self,
        commands: Mapping[str, Callable[[dict[str, Any]], Any]] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.commands: dict[str, Callable[[dict[str, Any]], Any]] = dict(commands or {})
        self.mocks: dict[str, dict[str, Any]] = {}
        self.events: list[tuple[str, Any]] = []
        self.deliver_events = True
        self.invoke_records: list[dict[str, Any]] = []
        self.event_records: list[dict[str, Any]] = []
        self._clock = clock
        self._last_timestamp = 0.0

    def install(self, channel: FakeRemoteChannel) -> None:
        channel.register(IPC_INVOKE, self._invoke)
        channel.register(IPC_EMIT, self._emit)
        channel.register(IPC_SET_MOCKS, self._set_mocks)
        channel.register(IPC_HISTORY, self._history)
        channel.register(IPC_CLEAR_HISTORY, self._clear_history)

    async def app_invoke(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Issue a call the way application UI code would."""
        call_args = dict(args or {})
        started = time.perf_counter()
        intercepted = False
        try:
            instruction = self._claim(command, call_args)
            if instruction is not None:
                intercepted = True
                response = await interpret_instruction(instruction, call_args)
            else:
                handler = self.commands.get(command)
                if handler is None:
                    raise ChannelError(f"Command {command} not found")
                response = handler(call_args)
        except Exception as exc:
            self._record_invoke(
                command,
                call_args,
                started,
                intercepted=intercepted,
                error=str(exc) or exc.__class__.__name__,
            )
            raise
        self._record_invoke(command, call_args, started, intercepted=intercepted, response=response)
        return response

    def app_emit(self, event: str, payload: Any = None) -> None:
        """Raise an event from application code."""
        record = EventRecord(event=event, payload=payload, timestamp=self._next_timestamp())
        self.event_records.append(record.to_json())

    def _claim(self, command: str, args: dict[str, Any]) -> dict[str, Any] | None:
        instruction = self.mocks.get(command)
        if instruction is None:
            return None
        match_args = instruction.get("match_args")
        if isinstance(match_args, Mapping) and not args_match(args, match_args):
            return None
        if instruction.get("once"):
            self.mocks.pop(command, None)
        return instruction

    def _next_timestamp(self) -> float:
        self._last_timestamp = max(self._last_timestamp, float(self._clock()) * 1000.0)
        return self._last_timestamp

    def _record_invoke(
        self,
        command: str,
        args: dict[str, Any],
        started: float,
        *,
        intercepted: bool,
        response: Any = None,
        error: str | None = None,
    ) -> None:
        record = InvokeRecord(
            command=command,
            args=args,
            timestamp=self._next_timestamp(),
            intercepted=intercepted,
            response=response,
            error=error,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        self.invoke_records.append(record.to_json())

    async def _invoke(self, args: dict[str, Any]) -> Any:
        # Calls arriving here are recorded by the interceptor that sent them.
        command = str(args.get("command"))
        handler = self.commands.get(command)
        if handler is None:
            raise ChannelError(f"Command {command} not found")
        try:
            return handler(dict(args.get("args") or {}))
        except ChannelError:
            raise
        except Exception as exc:
            raise ChannelError(str(exc)) from exc

    async def _emit(self, args: dict[str, Any]) -> bool:
        if not self.deliver_events:
            raise ChannelError("Event dispatch surface unavailable")
        self.events.append((str(args.get("event")), args.get("payload")))
        return True

    async def _set_mocks(self, args: dict[str, Any]) -> int:
        mocks = args.get("mocks")
        self.mocks = dict(mocks) if isinstance(mocks, Mapping) else {}
        return len(self.mocks)

    async def _history(self, args: dict[str, Any]) -> dict[str, Any]:
        snapshot = {
            "invokes": list(self.invoke_records),
            "events": list(self.event_records),
            "mocks": sorted(self.mocks),
        }
        if args.get("drain"):
            self.invoke_records.clear()
            self.event_records.clear()
        return snapshot

    async def _clear_history(self, _args: dict[str, Any]) -> bool:
        self.invoke_records.clear()
        self.event_records.clear()
        return True
