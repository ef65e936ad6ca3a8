"""Tests for the in-memory remote side used by deterministic tests."""

from __future__ import annotations

import asyncio

import pytest

from deskprobe.channel import VIRTUAL_LIST_SAMPLE
from deskprobe.errors import ChannelError
from deskprobe.fake_channel import FakeRemoteChannel, FakeVirtualList


def _run(coro):
    """Run async channel scenario from sync test functions."""
    return asyncio.run(coro)


def test_evaluate_requires_connection_and_known_routine() -> None:
    async def run() -> None:
        async def echo(args: dict) -> dict:
            return args

        channel = FakeRemoteChannel({"echo": echo})
        with pytest.raises(ChannelError, match="not connected"):
            await channel.evaluate("echo", {})

        await channel.connect()
        assert await channel.evaluate("echo", {"n": 1}) == {"n": 1}
        with pytest.raises(ChannelError, match="Unknown remote routine"):
            await channel.evaluate("eval", {"code": "1+1"})
        assert channel.calls_to("echo") == [{"n": 1}]

    _run(run())


def test_evaluate_enforces_json_boundary() -> None:
    async def run() -> None:
        async def leak(_args: dict) -> object:
            return object()

        async def echo(args: dict) -> dict:
            return args

        channel = FakeRemoteChannel({"leak": leak, "echo": echo})
        await channel.connect()
        with pytest.raises(ChannelError, match="Routine result is not JSON-serializable"):
            await channel.evaluate("leak")
        with pytest.raises(ChannelError, match="Argument payload is not JSON-serializable"):
            await channel.evaluate("echo", {"fn": print})  # type: ignore[dict-item]
        assert await channel.evaluate("echo", {"t": (1, 2)}) == {"t": [1, 2]}  # type: ignore[dict-item]

    _run(run())


def test_connect_error_is_raised() -> None:
    channel = FakeRemoteChannel(connect_error="target not running")
    with pytest.raises(ChannelError, match="target not running"):
        _run(channel.connect())
    assert not channel.connected


def test_fake_list_renders_window_around_scroll_offset() -> None:
    async def run() -> None:
        channel = FakeRemoteChannel()
        fake = FakeVirtualList(texts=[str(i) for i in range(100)], expose_total_count=True)
        fake.install(channel, "#list")
        await channel.connect()

        fake.scroll_top = 600.0
        sample = await channel.evaluate(VIRTUAL_LIST_SAMPLE, {"selector": "#list"})
        indices = [int(item["attributes"]["data-index"]) for item in sample["items"]]

        assert indices == list(range(18, 32))
        assert sample["container"]["total_count"] == 100
        assert await channel.evaluate(VIRTUAL_LIST_SAMPLE, {"selector": "#other"}) is None

    _run(run())
