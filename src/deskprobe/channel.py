"""Remote execution channel contract.

The channel is the single boundary between deskprobe and the application under
test. Callers pass a remote routine name and a JSON-serializable argument
payload; the remote side runs that routine against live application state and
returns a JSON value. Expressions are never assembled as text.

Transport and connection management are provided by concrete channel
implementations outside this package. `deskprobe.fake_channel` ships an
in-memory implementation for deterministic tests.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, TypeAlias

JsonScalar: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonScalar | list["JsonValue"] | dict[str, "JsonValue"]

# Remote routine names understood by the application-side agent.
IPC_INVOKE = "ipc.invoke"
IPC_EMIT = "ipc.emit"
IPC_SET_MOCKS = "ipc.set_mocks"
IPC_HISTORY = "ipc.history"
IPC_CLEAR_HISTORY = "ipc.clear_history"
VIRTUAL_LIST_SAMPLE = "virtual_list.sample"
VIRTUAL_LIST_SCROLL_TO = "virtual_list.scroll_to"
VIRTUAL_LIST_MEASURE_SCROLL = "virtual_list.measure_scroll"
VIRTUAL_LIST_ACTIVATE = "virtual_list.activate"

REMOTE_ROUTINES: tuple[str, ...] = (
    IPC_INVOKE,
    IPC_EMIT,
    IPC_SET_MOCKS,
    IPC_HISTORY,
    IPC_CLEAR_HISTORY,
    VIRTUAL_LIST_SAMPLE,
    VIRTUAL_LIST_SCROLL_TO,
    VIRTUAL_LIST_MEASURE_SCROLL,
    VIRTUAL_LIST_ACTIVATE,
)


class RemoteExecutionChannel(Protocol):
    """Request/response evaluation channel consumed by the engine and probe.

    Implementations raise `deskprobe.errors.ChannelError` on any transport
    failure. Only one evaluation is in flight at a time per session.
    """

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def evaluate(
        self, function: str, args: Mapping[str, JsonValue] | None = None
    ) -> JsonValue: ...
