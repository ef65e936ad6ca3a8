"""Tests for virtual-list state derivation and the list probe."""

from __future__ import annotations

import asyncio

import pytest

from deskprobe.errors import AssertionFailure, NotFound, WaitTimeout
from deskprobe.fake_channel import FakeRemoteChannel, FakeVirtualList
from deskprobe.virtual_list import (
    DEFAULT_ITEM_HEIGHT,
    ITEM_TEXT_LIMIT,
    VirtualListProbe,
    assert_scroll_performance,
    compute_scroll_performance,
    derive_state,
)

SELECTOR = "#file-tree"


def _run(coro):
    """Run async probe scenario from sync test functions."""
    return asyncio.run(coro)


def _texts(count: int) -> list[str]:
    return [f"Item {index:04d}" for index in range(count)]


async def _probe(fake: FakeVirtualList) -> VirtualListProbe:
    channel = FakeRemoteChannel()
    fake.install(channel, SELECTOR)
    await channel.connect()
    return VirtualListProbe(channel, SELECTOR, poll_interval_s=0.001, smooth_settle_s=0.0)


def _raw_item(
    text: str,
    top: float,
    *,
    height: float = 30.0,
    attributes: dict[str, str] | None = None,
    has_group: bool = False,
) -> dict:
    return {
        "attributes": attributes if attributes is not None else {"role": "row"},
        "text": text,
        "bounds": {"top": top, "left": 10.0, "width": 200.0, "height": height},
        "has_group": has_group,
    }


def test_derive_state_estimates_total_from_fixed_heights() -> None:
    sample = {
        "container": {
            "scroll_top": 0,
            "scroll_height": 3000,
            "client_height": 90,
            "top": 100,
            "left": 10,
            "bottom": 190,
        },
        "items": [
            _raw_item("A", 100, attributes={"data-index": "0"}),
            _raw_item("B", 130, attributes={"data-index": "1"}),
            _raw_item("C", 160, attributes={"data-index": "2"}),
            _raw_item("D", 190, attributes={"data-index": "3"}),
        ],
    }

    state = derive_state(sample)

    assert state.avg_item_height == 30.0
    assert state.total_count == 100
    assert state.total_count_estimated is True
    assert (state.start_index, state.end_index) == (0, 3)
    assert state.rendered_count == 4
    assert state.visible_items[0].bounds.top == 0.0
    assert state.visible_items[0].bounds.left == 0.0
    assert [item.visible for item in state.visible_items] == [True, True, True, False]


def test_derive_state_prefers_total_count_marker() -> None:
    sample = {
        "container": {"scroll_height": 3000, "client_height": 300, "total_count": 42},
        "items": [_raw_item("A", 0, attributes={"data-index": "5"})],
    }
    state = derive_state(sample)
    assert state.total_count == 42
    assert state.total_count_estimated is False


def test_derive_state_filters_non_items_and_uses_positional_indices() -> None:
    sample = {
        "container": {"scroll_height": 90, "client_height": 90, "bottom": 90},
        "items": [
            _raw_item("header", 0, attributes={"class": "toolbar"}),
            _raw_item("first", 0, attributes={"role": "listitem"}),
            _raw_item("second", 30, attributes={"data-key": "k2"}),
        ],
    }
    state = derive_state(sample)

    assert [item.text for item in state.visible_items] == ["first", "second"]
    assert [item.index for item in state.visible_items] == [0, 1]
    assert state.visible_items[1].id == "k2"
    # Without explicit indices the window bounds stay at zero.
    assert (state.start_index, state.end_index) == (0, 0)


def test_derive_state_empty_sample_uses_default_height() -> None:
    state = derive_state({"container": {"scroll_height": 0, "client_height": 300}, "items": []})
    assert state.avg_item_height == DEFAULT_ITEM_HEIGHT
    assert state.total_count == 0
    assert state.rendered_count == 0
    assert not state.contains_index(0)


def test_derive_state_total_count_never_below_rendered_window() -> None:
    sample = {
        "container": {"scroll_height": 30, "client_height": 300, "bottom": 300},
        "items": [_raw_item(str(i), i * 30, attributes={"data-index": str(i + 10)}) for i in range(3)],
    }
    state = derive_state(sample)
    assert state.end_index == 12
    assert state.total_count >= state.end_index + 1
    assert state.total_count >= state.rendered_count


def test_derive_state_reads_tree_item_attributes() -> None:
    long_text = "x" * (ITEM_TEXT_LIMIT + 50)
    sample = {
        "container": {"scroll_height": 600, "client_height": 300, "bottom": 300},
        "items": [
            _raw_item(
                "  src  ",
                0,
                attributes={
                    "role": "treeitem",
                    "data-index": "0",
                    "data-id": "node-src",
                    "aria-expanded": "true",
                    "aria-level": "1",
                    "class": "node selected",
                },
                has_group=True,
            ),
            _raw_item(
                long_text,
                30,
                attributes={"role": "treeitem", "data-index": "1", "aria-selected": "true"},
            ),
            _raw_item("leaf", 60, attributes={"role": "treeitem", "data-index": "2"}),
        ],
    }
    folder, long_item, leaf = derive_state(sample).visible_items

    assert folder.text == "src"
    assert folder.id == "node-src"
    assert folder.level == 1
    assert folder.expanded is True
    assert folder.has_children is True
    assert folder.selected is True
    assert folder.attributes == {"data-index": "0", "data-id": "node-src"}
    assert len(long_item.text) == ITEM_TEXT_LIMIT
    assert long_item.selected is True
    assert leaf.expanded is None
    assert leaf.has_children is False


def test_compute_scroll_performance_counts_dropped_frames() -> None:
    frames = [16.67] * 118 + [40.0, 50.004]
    sample = compute_scroll_performance(frames, duration_ms=2000, distance=5000, items_rendered=14)

    assert sample.fps == 60
    assert sample.dropped_frames == 2
    assert sample.max_frame_time_ms == 50.0
    assert sample.distance == 5000
    assert sample.items_rendered == 14

    empty = compute_scroll_performance([], duration_ms=0, distance=0, items_rendered=0)
    assert (empty.fps, empty.avg_frame_time_ms, empty.max_frame_time_ms) == (0, 0.0, 0.0)

    with pytest.raises(AssertionFailure, match="Dropped frames 2 exceeds 0"):
        assert_scroll_performance(sample, min_fps=30, max_dropped_frames=0)
    with pytest.raises(AssertionFailure, match="below minimum"):
        assert_scroll_performance(sample, min_fps=120)


def test_probe_reads_rendered_window() -> None:
    async def run() -> None:
        probe = await _probe(FakeVirtualList(texts=_texts(1000)))

        state = await probe.get_state()
        visible = await probe.get_visible_items()

        assert state.total_count == 1000
        assert state.rendered_count == 12
        assert (state.start_index, state.end_index) == (0, 11)
        assert len(visible) == 10
        item = await probe.get_item_by_text("item 0003")
        assert item is not None and item.index == 3
        await probe.assert_item_count(1000)
        await probe.assert_min_item_count(500)
        with pytest.raises(AssertionFailure):
            await probe.assert_item_count(999)

    _run(run())


def test_probe_raises_not_found_for_missing_container() -> None:
    async def run() -> None:
        probe = await _probe(FakeVirtualList(texts=_texts(10), present=False))
        with pytest.raises(NotFound, match="Virtual list not found: #file-tree"):
            await probe.get_state()
        with pytest.raises(NotFound):
            await probe.measure_scroll_performance()
        with pytest.raises(NotFound):
            await probe.scroll_to_top()

    _run(run())


def test_scroll_to_index_converges_despite_render_latency() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(1000), scroll_latency_samples=3)
        probe = await _probe(fake)

        await probe.scroll_to_index(400)

        state = await probe.get_state()
        assert state.contains_index(400)
        item = await probe.get_item_by_index(400)
        assert item is not None and item.text == "Item 0400"

    _run(run())


def test_scroll_to_index_gives_up_silently_on_timeout() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(1000), scroll_latency_samples=100_000)
        probe = await _probe(fake)

        result = await probe.scroll_to_index(500, timeout_ms=20)

        assert result is None
        assert not (await probe.get_state()).contains_index(500)

    _run(run())


def test_scroll_to_item_scans_until_found() -> None:
    async def run() -> None:
        probe = await _probe(FakeVirtualList(texts=_texts(1000)))

        item = await probe.scroll_to_item("Item 0500")

        assert item.index == 500
        assert item.text == "Item 0500"

    _run(run())


def test_scroll_to_item_raises_not_found_at_end_of_list() -> None:
    async def run() -> None:
        probe = await _probe(FakeVirtualList(texts=_texts(50)))
        with pytest.raises(NotFound, match='Item not found: "missing"'):
            await probe.scroll_to_item("missing")

    _run(run())


def test_scroll_to_item_raises_not_found_when_window_stalls() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(1000), ignore_scroll=True)
        probe = await _probe(fake)

        with pytest.raises(NotFound, match='Item not found: "Item 0900"'):
            await probe.scroll_to_item("Item 0900", timeout_ms=5000, step_timeout_ms=20)

        assert fake.scroll_top == 0.0
        assert fake.scroll_top < fake.max_scroll_top

    _run(run())


def test_scroll_to_index_on_positional_list_skips_convergence_wait() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(1000), explicit_indices=False)
        probe = await _probe(fake)
        assert not (await probe.get_state()).has_explicit_indices

        loop = asyncio.get_running_loop()
        started = loop.time()
        await probe.scroll_to_index(500, timeout_ms=5000)
        elapsed = loop.time() - started

        assert fake.scroll_top == 15000.0
        assert elapsed < 1.0
        state = await probe.get_state()
        assert (state.start_index, state.end_index) == (0, 0)
        assert any(item.text == "Item 0500" for item in state.visible_items)

    _run(run())


def test_scroll_to_item_raises_wait_timeout_when_budget_is_spent() -> None:
    async def run() -> None:
        probe = await _probe(FakeVirtualList(texts=_texts(1000)))
        with pytest.raises(WaitTimeout, match="Timeout scrolling to item"):
            await probe.scroll_to_item("Item 0900", timeout_ms=0)

    _run(run())


def test_scroll_to_top_and_bottom() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(100))
        probe = await _probe(fake)

        await probe.scroll_to_bottom()
        assert fake.scroll_top == fake.max_scroll_top
        state = await probe.get_state()
        assert state.end_index == 99

        await probe.scroll_to_top()
        assert fake.scroll_top == 0.0

    _run(run())


def test_click_and_expand_items() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(200), expandable={2, 150})
        probe = await _probe(fake)

        await probe.click_item_by_text("Item 0003")
        await probe.assert_item_selected("Item 0003")

        await probe.expand_item("Item 0002")
        await probe.expand_item("Item 0002")
        await probe.assert_item_expanded("Item 0002")
        assert fake.activations.count(("toggle", 2)) == 1

        await probe.collapse_item("Item 0002")
        assert 2 not in fake.expanded

        await probe.click_item(150)
        assert fake.selected == {150}

        await probe.dblclick_item_by_text("Item 0150")
        assert fake.activations[-1] == ("dblclick", 150)

    _run(run())


def test_assert_item_visible_rejects_offscreen_overscan_rows() -> None:
    async def run() -> None:
        probe = await _probe(FakeVirtualList(texts=_texts(100)))
        await probe.assert_item_visible("Item 0009")
        with pytest.raises(AssertionFailure, match='Expected item "Item 0011" to be visible'):
            await probe.assert_item_visible("Item 0011")

    _run(run())


def test_measure_scroll_performance_reduces_remote_frames() -> None:
    async def run() -> None:
        fake = FakeVirtualList(texts=_texts(1000), frame_deltas_ms=[16.0] * 119 + [45.0])
        probe = await _probe(fake)

        sample = await probe.measure_scroll_performance(scroll_distance=600, duration_ms=2000)

        assert sample.fps == 60
        assert sample.dropped_frames == 1
        assert sample.max_frame_time_ms == 45.0
        assert sample.items_rendered == 14
        assert fake.scroll_top == 600.0

        checked = await probe.assert_scroll_performance(min_fps=30, max_dropped_frames=1)
        assert checked.fps == 60

    _run(run())
