"""Session object owning the channel, interceptor, and list probes.

A session is created at suite start and torn down at suite end. Mocks,
histories, and probes live only as long as one open/close cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import TracebackType

from .bridge import ChannelBridge
from .channel import JsonValue, RemoteExecutionChannel
from .errors import ChannelError
from .ipc import IpcInterceptor
from .polling import POLL_INTERVAL_S
from .virtual_list import VirtualListProbe

logger = logging.getLogger(__name__)


class TestSession:
    """One connected session against the application under test.

    When no `bridge` is supplied, bridge calls go to the host through the
    channel (`ChannelBridge`).
    """

    __test__ = False

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        *,
        bridge: object | None = None,
        poll_interval_s: float = POLL_INTERVAL_S,
    ) -> None:
        self.channel = channel
        self._bridge = bridge
        self._poll_interval_s = poll_interval_s
        self._ipc: IpcInterceptor | None = None
        self._probes: dict[str, VirtualListProbe] = {}

    @property
    def is_open(self) -> bool:
        return self._ipc is not None

    @property
    def ipc(self) -> IpcInterceptor:
        if self._ipc is None:
            raise RuntimeError("Session is not open")
        return self._ipc

    async def open(self) -> None:
        """Connect the channel and install a fresh interceptor."""
        if self._ipc is not None:
            return
        try:
            await self.channel.connect()
        except ChannelError:
            raise
        except Exception as exc:
            raise ChannelError(f"Connection failed: {exc}") from exc
        bridge = self._bridge if self._bridge is not None else ChannelBridge(self.channel)
        # Application-side history only exists behind the default channel bridge.
        interceptor = IpcInterceptor(
            bridge,
            channel=self.channel if self._bridge is None else None,
            poll_interval_s=self._poll_interval_s,
        )
        interceptor.install()
        self._ipc = interceptor
        logger.info("Session opened", extra={"event": "session_opened"})

    async def close(self) -> None:
        """Uninstall the interceptor, drop session state, and disconnect."""
        if self._ipc is None:
            return
        self._ipc.uninstall()
        self._ipc.reset()
        self._ipc = None
        self._probes.clear()
        try:
            await self.channel.disconnect()
        except Exception as exc:
            logger.warning(
                "Channel disconnect failed: %s",
                exc,
                extra={"event": "session_disconnect_failed"},
            )
        logger.info("Session closed", extra={"event": "session_closed"})

    def virtual_list(self, selector: str) -> VirtualListProbe:
        """Return the probe for `selector`, reusing one per selector."""
        if self._ipc is None:
            raise RuntimeError("Session is not open")
        probe = self._probes.get(selector)
        if probe is None:
            probe = VirtualListProbe(
                self.channel, selector, poll_interval_s=self._poll_interval_s
            )
            self._probes[selector] = probe
        return probe

    async def evaluate(
        self, function: str, args: Mapping[str, JsonValue] | None = None
    ) -> JsonValue:
        return await self.channel.evaluate(function, args)

    async def __aenter__(self) -> TestSession:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
