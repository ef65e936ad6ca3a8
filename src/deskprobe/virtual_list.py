"""Virtualized list/tree/table probe.

The probe never sees application state directly. It asks the remote side for a
raw sample of the rendered window (item attributes, text, and bounds plus the
container's scroll geometry) and derives the logical list state locally.

`total_count` is authoritative only when the container exposes a
`data-total-count` marker. Otherwise it is estimated as
`ceil(scroll_height / avg_item_height)`, which is exact for fixed-height rows
and can be off by the ratio of real to sampled average height for
variable-height content. `VirtualListState.total_count_estimated` tells
callers which case applies.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from .channel import (
    VIRTUAL_LIST_ACTIVATE,
    VIRTUAL_LIST_MEASURE_SCROLL,
    VIRTUAL_LIST_SAMPLE,
    VIRTUAL_LIST_SCROLL_TO,
    RemoteExecutionChannel,
)
from .errors import AssertionFailure, NotFound, WaitTimeout
from .polling import POLL_INTERVAL_S, ms_to_s, poll_until

logger = logging.getLogger(__name__)

ScrollBehavior = Literal["auto", "smooth"]
ActivateAction = Literal["click", "dblclick", "toggle"]

ITEM_SELECTOR = '[data-index], [data-key], [role="treeitem"], [role="row"], [role="listitem"]'
ITEM_ROLES = frozenset({"treeitem", "row", "listitem"})
DEFAULT_ITEM_HEIGHT = 30.0
ITEM_TEXT_LIMIT = 200
SCAN_STRIDE = 20
DROPPED_FRAME_THRESHOLD_MS = 33.33
SMOOTH_SCROLL_SETTLE_S = 0.5
DEFAULT_SCROLL_TIMEOUT_MS = 5_000
DEFAULT_SEARCH_TIMEOUT_MS = 10_000


@dataclass(frozen=True)
class ItemBounds:
    """Item rectangle relative to the container's top-left corner."""

    top: float
    left: float
    width: float
    height: float

    @property
    def bottom(self) -> float:
        return self.top + self.height


@dataclass(frozen=True)
class VirtualItem:
    """One rendered item reconstructed from a sample."""

    index: int
    text: str
    attributes: dict[str, str]
    bounds: ItemBounds
    visible: bool
    selected: bool
    id: str | None = None
    level: int | None = None
    expanded: bool | None = None
    has_children: bool | None = None


@dataclass(frozen=True)
class VirtualListState:
    """Logical list state derived from one sample.

    `visible_items` holds every rendered item; check `VirtualItem.visible` for
    viewport intersection.
    """

    total_count: int
    rendered_count: int
    start_index: int
    end_index: int
    scroll_top: float
    scroll_height: float
    client_height: float
    avg_item_height: float
    visible_items: tuple[VirtualItem, ...]
    total_count_estimated: bool = True
    # False when rows carry no index attribute; start/end then stay 0.
    has_explicit_indices: bool = False

    def contains_index(self, index: int) -> bool:
        return self.rendered_count > 0 and self.start_index <= index <= self.end_index


@dataclass(frozen=True)
class ScrollPerformanceSample:
    """Frame-timing metrics from one measured programmatic scroll."""

    fps: int
    avg_frame_time_ms: float
    max_frame_time_ms: float
    dropped_frames: int
    duration_ms: int
    distance: int
    items_rendered: int


# Derivation


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return default


def _parse_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _attributes(raw_item: Mapping[str, Any]) -> dict[str, str]:
    raw = raw_item.get("attributes")
    if not isinstance(raw, Mapping):
        return {}
    return {str(key): str(value) for key, value in raw.items() if value is not None}


def is_item_element(attributes: Mapping[str, str]) -> bool:
    """Return whether an element carries one of the recognized item markers."""
    if "data-index" in attributes or "data-key" in attributes:
        return True
    return attributes.get("role") in ITEM_ROLES


def _explicit_index(attributes: Mapping[str, str]) -> int | None:
    index = _parse_int(attributes.get("data-index"))
    if index is None or index < 0:
        return None
    return index


def _bounds(raw_item: Mapping[str, Any]) -> tuple[float, float, float, float]:
    raw = raw_item.get("bounds")
    if not isinstance(raw, Mapping):
        return 0.0, 0.0, 0.0, 0.0
    return (
        _as_float(raw.get("top")),
        _as_float(raw.get("left")),
        max(0.0, _as_float(raw.get("width"))),
        max(0.0, _as_float(raw.get("height"))),
    )


def derive_state(sample: Mapping[str, Any]) -> VirtualListState:
    """Derive logical list state from one raw rendered-window sample."""
    container = sample.get("container")
    if not isinstance(container, Mapping):
        container = {}
    raw_items = [
        item
        for item in sample.get("items") or []
        if isinstance(item, Mapping) and is_item_element(_attributes(item))
    ]

    scroll_top = _as_float(container.get("scroll_top"))
    scroll_height = max(0.0, _as_float(container.get("scroll_height")))
    client_height = max(0.0, _as_float(container.get("client_height")))
    viewport_top = _as_float(container.get("top"))
    viewport_left = _as_float(container.get("left"))
    viewport_bottom = _as_float(container.get("bottom"), viewport_top + client_height)

    heights = [_bounds(item)[3] for item in raw_items]
    total_height = sum(heights)
    avg_item_height = total_height / len(heights) if total_height > 0 else DEFAULT_ITEM_HEIGHT

    items: list[VirtualItem] = []
    explicit_indices: list[int] = []
    for position, raw_item in enumerate(raw_items):
        attributes = _attributes(raw_item)
        explicit = _explicit_index(attributes)
        if explicit is not None:
            explicit_indices.append(explicit)
        top, left, width, height = _bounds(raw_item)
        classes = attributes.get("class", "").split()
        aria_expanded = attributes.get("aria-expanded")
        level = _parse_int(attributes.get("aria-level"))
        text = str(raw_item.get("text") or "").strip()[:ITEM_TEXT_LIMIT]
        items.append(
            VirtualItem(
                index=explicit if explicit is not None else position,
                text=text,
                attributes={k: v for k, v in attributes.items() if k.startswith("data-")},
                bounds=ItemBounds(
                    top=top - viewport_top,
                    left=left - viewport_left,
                    width=width,
                    height=height,
                ),
                visible=top < viewport_bottom and top + height > viewport_top,
                selected="selected" in classes or attributes.get("aria-selected") == "true",
                id=attributes.get("data-id") or attributes.get("data-key") or None,
                level=level,
                expanded=aria_expanded == "true" if aria_expanded is not None else None,
                has_children=bool(raw_item.get("has_group")) or aria_expanded is not None,
            )
        )

    start_index = min(explicit_indices) if explicit_indices else 0
    end_index = max(explicit_indices) if explicit_indices else 0
    rendered_count = len(items)

    marker = _parse_int(container.get("total_count"))
    if marker is not None and marker >= 0:
        total_count = marker
        estimated = False
    else:
        total_count = math.ceil(scroll_height / avg_item_height)
        estimated = True
    floor = rendered_count
    if explicit_indices:
        floor = max(floor, end_index + 1)
    if total_count < floor:
        logger.debug(
            "Total count %d below rendered window; raised to %d", total_count, floor
        )
        total_count = floor

    return VirtualListState(
        total_count=total_count,
        rendered_count=rendered_count,
        start_index=start_index,
        end_index=end_index,
        scroll_top=scroll_top,
        scroll_height=scroll_height,
        client_height=client_height,
        avg_item_height=avg_item_height,
        visible_items=tuple(items),
        total_count_estimated=estimated,
        has_explicit_indices=bool(explicit_indices),
    )


def _round_half_up(value: float, digits: int = 0) -> float:
    scale = 10**digits
    return math.floor(value * scale + 0.5) / scale


def compute_scroll_performance(
    frame_deltas_ms: Sequence[float],
    *,
    duration_ms: int,
    distance: int,
    items_rendered: int,
) -> ScrollPerformanceSample:
    """Reduce inter-frame deltas into scroll performance metrics."""
    frames = [float(delta) for delta in frame_deltas_ms]
    seconds = duration_ms / 1000
    fps = int(_round_half_up(len(frames) / seconds)) if seconds > 0 else 0
    avg = _round_half_up(sum(frames) / len(frames), 2) if frames else 0.0
    worst = _round_half_up(max(frames), 2) if frames else 0.0
    return ScrollPerformanceSample(
        fps=fps,
        avg_frame_time_ms=avg,
        max_frame_time_ms=worst,
        dropped_frames=sum(1 for delta in frames if delta > DROPPED_FRAME_THRESHOLD_MS),
        duration_ms=duration_ms,
        distance=distance,
        items_rendered=items_rendered,
    )


def _at_bottom(state: VirtualListState) -> bool:
    # One pixel of slack for fractional scroll offsets.
    return state.scroll_top + state.client_height >= state.scroll_height - 1


def find_item_by_text(state: VirtualListState, text: str) -> VirtualItem | None:
    """Return the first rendered item whose text contains `text` (case-insensitive)."""
    needle = text.lower()
    for item in state.visible_items:
        if needle in item.text.lower():
            return item
    return None


def find_item_by_index(state: VirtualListState, index: int) -> VirtualItem | None:
    for item in state.visible_items:
        if item.index == index:
            return item
    return None


# Pure checks


def assert_item_visible(
    state: VirtualListState, text: str, message: str | None = None
) -> VirtualItem:
    item = find_item_by_text(state, text)
    if item is None or not item.visible:
        raise AssertionFailure(
            message or f'Expected item "{text}" to be visible',
            expected="visible",
            actual="not rendered" if item is None else "rendered offscreen",
        )
    return item


def assert_item_count(
    state: VirtualListState, expected: int, message: str | None = None
) -> None:
    if state.total_count != expected:
        raise AssertionFailure(
            message or f"Expected {expected} items, got {state.total_count}",
            expected=expected,
            actual=state.total_count,
        )


def assert_min_item_count(
    state: VirtualListState, minimum: int, message: str | None = None
) -> None:
    if state.total_count < minimum:
        raise AssertionFailure(
            message or f"Expected at least {minimum} items, got {state.total_count}",
            expected=minimum,
            actual=state.total_count,
        )


def assert_item_selected(
    state: VirtualListState, text: str, message: str | None = None
) -> None:
    item = find_item_by_text(state, text)
    if item is None or not item.selected:
        raise AssertionFailure(
            message or f'Expected item "{text}" to be selected',
            expected=True,
            actual=None if item is None else item.selected,
        )


def assert_item_expanded(
    state: VirtualListState, text: str, message: str | None = None
) -> None:
    item = find_item_by_text(state, text)
    if item is None or not item.expanded:
        raise AssertionFailure(
            message or f'Expected item "{text}" to be expanded',
            expected=True,
            actual=None if item is None else item.expanded,
        )


def assert_scroll_performance(
    sample: ScrollPerformanceSample,
    *,
    min_fps: float | None = None,
    max_frame_time_ms: float | None = None,
    max_dropped_frames: int | None = None,
) -> None:
    if min_fps is not None and sample.fps < min_fps:
        raise AssertionFailure(
            f"Scroll FPS {sample.fps} is below minimum {min_fps}",
            expected=min_fps,
            actual=sample.fps,
        )
    if max_frame_time_ms is not None and sample.max_frame_time_ms > max_frame_time_ms:
        raise AssertionFailure(
            f"Max frame time {sample.max_frame_time_ms}ms exceeds {max_frame_time_ms}ms",
            expected=max_frame_time_ms,
            actual=sample.max_frame_time_ms,
        )
    if max_dropped_frames is not None and sample.dropped_frames > max_dropped_frames:
        raise AssertionFailure(
            f"Dropped frames {sample.dropped_frames} exceeds {max_dropped_frames}",
            expected=max_dropped_frames,
            actual=sample.dropped_frames,
        )


# Probe


class VirtualListProbe:
    """Samples and drives one virtualized container through the channel."""

    def __init__(
        self,
        channel: RemoteExecutionChannel,
        selector: str,
        *,
        poll_interval_s: float = POLL_INTERVAL_S,
        smooth_settle_s: float = SMOOTH_SCROLL_SETTLE_S,
    ) -> None:
        self._channel = channel
        self.selector = selector
        self._poll_interval_s = poll_interval_s
        self._smooth_settle_s = smooth_settle_s

    def _not_found(self) -> NotFound:
        return NotFound(f"Virtual list not found: {self.selector}")

    async def get_state(self) -> VirtualListState:
        raw = await self._channel.evaluate(
            VIRTUAL_LIST_SAMPLE,
            {"selector": self.selector, "item_selector": ITEM_SELECTOR},
        )
        if not isinstance(raw, Mapping):
            raise self._not_found()
        return derive_state(raw)

    async def get_visible_items(self) -> list[VirtualItem]:
        state = await self.get_state()
        return [item for item in state.visible_items if item.visible]

    async def get_item_by_text(self, text: str) -> VirtualItem | None:
        return find_item_by_text(await self.get_state(), text)

    async def get_item_by_index(self, index: int) -> VirtualItem | None:
        await self.scroll_to_index(index)
        return find_item_by_index(await self.get_state(), index)

    async def _scroll_to_offset(self, top: float, behavior: ScrollBehavior = "auto") -> None:
        found = await self._channel.evaluate(
            VIRTUAL_LIST_SCROLL_TO,
            {"selector": self.selector, "top": top, "behavior": behavior},
        )
        if found is False:
            raise self._not_found()

    async def scroll_to_index(
        self,
        index: int,
        *,
        behavior: ScrollBehavior = "auto",
        timeout_ms: int = DEFAULT_SCROLL_TIMEOUT_MS,
    ) -> None:
        """Scroll so `index` falls inside the rendered window.

        Gives up silently once `timeout_ms` elapses; read the state afterwards
        to confirm convergence. Lists whose rows carry no index attribute only
        get the offset scroll: their window cannot be matched against `index`,
        so no convergence wait happens.
        """
        state = await self.get_state()
        await self._scroll_to_offset(index * state.avg_item_height, behavior)
        if behavior == "smooth":
            await asyncio.sleep(self._smooth_settle_s)
        if state.rendered_count > 0 and not state.has_explicit_indices:
            logger.debug("Scrolled to offset for index %d on a positional list", index)
            return

        async def _converged() -> bool | None:
            current = await self.get_state()
            return True if current.contains_index(index) else None

        converged = await poll_until(
            _converged, timeout_s=ms_to_s(timeout_ms), interval_s=self._poll_interval_s
        )
        if converged is None:
            logger.debug(
                "Scroll to index %d did not converge within %dms",
                index,
                timeout_ms,
                extra={"event": "virtual_list_scroll_unconverged", "index": index},
            )

    async def scroll_to_item(
        self,
        text: str,
        *,
        timeout_ms: int = DEFAULT_SEARCH_TIMEOUT_MS,
        step_timeout_ms: int = DEFAULT_SCROLL_TIMEOUT_MS,
    ) -> VirtualItem:
        """Advance the window until an item containing `text` is rendered.

        Each step moves `SCAN_STRIDE` rows down, capped at one viewport so no
        row is skipped, and waits up to `step_timeout_ms` for the window to
        move. Raises `NotFound` once the window stops advancing and
        `WaitTimeout` when `timeout_ms` runs out first.
        """
        deadline = time.monotonic() + ms_to_s(timeout_ms)
        while time.monotonic() < deadline:
            state = await self.get_state()
            item = find_item_by_text(state, text)
            if item is not None:
                return item
            if _at_bottom(state):
                raise NotFound(f'Item not found: "{text}"')

            step = SCAN_STRIDE * state.avg_item_height
            if state.client_height > 0:
                step = min(step, state.client_height)
            await self._scroll_to_offset(state.scroll_top + step)

            async def _advanced(before: VirtualListState = state) -> VirtualListState | None:
                current = await self.get_state()
                if current.scroll_top > before.scroll_top or current.end_index > before.end_index:
                    return current
                return None

            remaining_s = deadline - time.monotonic()
            advanced = await poll_until(
                _advanced,
                timeout_s=min(ms_to_s(step_timeout_ms), max(0.0, remaining_s)),
                interval_s=self._poll_interval_s,
            )
            if advanced is None and time.monotonic() < deadline:
                raise NotFound(f'Item not found: "{text}"')
        raise WaitTimeout(f'Timeout scrolling to item: "{text}"')

    async def scroll_to_top(self) -> None:
        await self._scroll_to_offset(0)

    async def scroll_to_bottom(self) -> None:
        state = await self.get_state()
        await self._scroll_to_offset(state.scroll_height)

    async def _activate(
        self, action: ActivateAction, *, index: int | None = None, text: str | None = None
    ) -> None:
        found = await self._channel.evaluate(
            VIRTUAL_LIST_ACTIVATE,
            {"selector": self.selector, "action": action, "index": index, "text": text},
        )
        if not found:
            target = f"index {index}" if index is not None else f'"{text}"'
            raise NotFound(f"Item {target} not found in {self.selector}")

    async def click_item(self, index: int) -> None:
        await self.scroll_to_index(index)
        await self._activate("click", index=index)

    async def click_item_by_text(self, text: str) -> None:
        await self.scroll_to_item(text)
        await self._activate("click", text=text)

    async def dblclick_item_by_text(self, text: str) -> None:
        await self.scroll_to_item(text)
        await self._activate("dblclick", text=text)

    async def expand_item(self, text: str) -> None:
        item = await self.scroll_to_item(text)
        if item.expanded:
            return
        await self._activate("toggle", text=text)

    async def collapse_item(self, text: str) -> None:
        item = await self.scroll_to_item(text)
        if not item.expanded:
            return
        await self._activate("toggle", text=text)

    async def measure_scroll_performance(
        self, *, scroll_distance: int = 5_000, duration_ms: int = 2_000
    ) -> ScrollPerformanceSample:
        """Drive a time-boxed scroll remotely and reduce its frame timings."""
        raw = await self._channel.evaluate(
            VIRTUAL_LIST_MEASURE_SCROLL,
            {
                "selector": self.selector,
                "item_selector": ITEM_SELECTOR,
                "distance": scroll_distance,
                "duration_ms": duration_ms,
            },
        )
        if not isinstance(raw, Mapping):
            raise self._not_found()
        frames = raw.get("frames")
        sample = compute_scroll_performance(
            [_as_float(delta) for delta in frames] if isinstance(frames, list) else [],
            duration_ms=duration_ms,
            distance=scroll_distance,
            items_rendered=_parse_int(raw.get("items_rendered")) or 0,
        )
        logger.info(
            "Scroll performance measured for %s",
            self.selector,
            extra={
                "event": "virtual_list_scroll_measured",
                "fps": sample.fps,
                "dropped_frames": sample.dropped_frames,
            },
        )
        return sample

    async def assert_item_visible(self, text: str, message: str | None = None) -> None:
        assert_item_visible(await self.get_state(), text, message)

    async def assert_item_count(self, expected: int, message: str | None = None) -> None:
        assert_item_count(await self.get_state(), expected, message)

    async def assert_min_item_count(self, minimum: int, message: str | None = None) -> None:
        assert_min_item_count(await self.get_state(), minimum, message)

    async def assert_item_selected(self, text: str, message: str | None = None) -> None:
        assert_item_selected(await self.get_state(), text, message)

    async def assert_item_expanded(self, text: str, message: str | None = None) -> None:
        assert_item_expanded(await self.get_state(), text, message)

    async def assert_scroll_performance(
        self,
        *,
        min_fps: float | None = None,
        max_frame_time_ms: float | None = None,
        max_dropped_frames: int | None = None,
    ) -> ScrollPerformanceSample:
        sample = await self.measure_scroll_performance()
        assert_scroll_performance(
            sample,
            min_fps=min_fps,
            max_frame_time_ms=max_frame_time_ms,
            max_dropped_frames=max_dropped_frames,
        )
        return sample
