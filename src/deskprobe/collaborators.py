"""Contracts for collaborators the runner drives but does not implement.

Recording and vision/agent judgment live outside this package. The runner
only brackets tests with recording calls and aggregates the agent's reported
cost, treating both as best-effort.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class CostSummary:
    """Cumulative usage reported by the vision/agent collaborator."""

    total_calls: int = 0
    total_cost: float = 0.0

    def since(self, earlier: CostSummary) -> CostSummary:
        """Return the usage accrued after `earlier` was taken."""
        return CostSummary(
            total_calls=max(0, self.total_calls - earlier.total_calls),
            total_cost=max(0.0, self.total_cost - earlier.total_cost),
        )


class ArtifactRecorder(Protocol):
    """Screen/video recorder bracketing one test."""

    async def start_recording(self, path: str) -> None: ...

    async def stop_recording(self) -> None: ...


@runtime_checkable
class CostSource(Protocol):
    """Opaque source of cumulative vision/agent usage."""

    def cost_summary(self) -> CostSummary: ...


class VisionAgent(Protocol):
    """Hybrid-mode fallback judge. Calls are opaque to deskprobe."""

    async def judge(self, question: str, **kwargs: Any) -> Any: ...
