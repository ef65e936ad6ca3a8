"""Bridge invocation surfaces the interception engine can wrap.

A bridge is any object exposing an async `invoke(command, args)` entry point
and, optionally, an async `emit(event, payload)` dispatch surface. The engine
wraps the entry point of a caller-supplied bridge instead of patching ambient
global state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from .channel import IPC_EMIT, IPC_INVOKE, JsonValue, RemoteExecutionChannel
from .errors import BridgeUnavailable

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Awaitable[Any]]
EventListener = Callable[[Any], Awaitable[None]]


class Bridge(Protocol):
    """Invocation entry point consumed by `IpcInterceptor`."""

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any: ...


@runtime_checkable
class EventDispatcher(Protocol):
    """Optional capability protocol for delivering events to the application."""

    async def emit(self, event: str, payload: Any) -> None: ...


class ChannelBridge:
    """Bridge that forwards calls to the host through the remote channel."""

    def __init__(self, channel: RemoteExecutionChannel) -> None:
        self._channel = channel

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any:
        payload: dict[str, JsonValue] = {"command": command, "args": dict(args or {})}
        return await self._channel.evaluate(IPC_INVOKE, payload)

    async def emit(self, event: str, payload: Any) -> None:
        await self._channel.evaluate(IPC_EMIT, {"event": event, "payload": payload})


class InProcessBridge:
    """In-memory bridge with registered command handlers and event listeners.

    Useful for Python-hosted front ends and for exercising the engine without
    a live application.
    """

    def __init__(self, handlers: Mapping[str, CommandHandler] | None = None) -> None:
        self._handlers: dict[str, CommandHandler] = dict(handlers or {})
        self._listeners: dict[str, list[EventListener]] = {}

    def register(self, command: str, handler: CommandHandler) -> None:
        self._handlers[command] = handler

    def listen(self, event: str, listener: EventListener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    async def invoke(self, command: str, args: Mapping[str, Any] | None = None) -> Any:
        handler = self._handlers.get(command)
        if handler is None:
            raise BridgeUnavailable(f"No host handler registered for {command!r}")
        return await handler(dict(args or {}))

    async def emit(self, event: str, payload: Any) -> None:
        listeners = list(self._listeners.get(event, ()))
        if not listeners:
            logger.debug("No listeners for event %s", event)
        for listener in listeners:
            await listener(payload)
