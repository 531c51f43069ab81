"""Merge strategy selection for sync.

Given how far the local branch and its upstream have diverged, and which
paths are dirty locally or changed upstream, decide what sync may do
without putting uncommitted work at risk.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Divergence:
    """Commit counts relative to the merge base."""

    ahead: int
    behind: int

    @property
    def diverged(self) -> bool:
        return self.ahead > 0 and self.behind > 0


class MergeAction(Enum):
    UP_TO_DATE = "up_to_date"
    PUSH_ONLY = "push_only"
    FAST_FORWARD = "fast_forward"
    MERGE = "merge"
    ABORT = "abort"


@dataclass(frozen=True)
class MergeDecision:
    action: MergeAction
    blocking_paths: List[str] = field(default_factory=list)
    reason: str = ""


class ConflictPolicy:
    """Chooses fast-forward, merge, push-only or abort."""

    def decide(
        self,
        divergence: Divergence,
        uncommitted_paths: Iterable[str],
        upstream_changed_paths: Iterable[str],
    ) -> MergeDecision:
        """Pick the sync action.

        Args:
            divergence: Local vs upstream commit counts
            uncommitted_paths: Paths with uncommitted changes in the working tree
            upstream_changed_paths: Paths changed upstream since the merge base

        Returns:
            MergeDecision. ``ABORT`` carries the paths that blocked it.
        """
        dirty = set(uncommitted_paths)

        if divergence.behind == 0:
            if divergence.ahead == 0:
                return MergeDecision(MergeAction.UP_TO_DATE)
            return MergeDecision(MergeAction.PUSH_ONLY)

        overlap = sorted(dirty & set(upstream_changed_paths))
        if overlap:
            logger.info(f"Sync blocked: {len(overlap)} uncommitted paths changed upstream")
            return MergeDecision(
                MergeAction.ABORT,
                blocking_paths=overlap,
                reason="uncommitted changes would be overwritten by upstream",
            )

        if divergence.diverged and dirty:
            logger.info("Sync blocked: histories diverged with uncommitted changes")
            return MergeDecision(
                MergeAction.ABORT,
                blocking_paths=sorted(dirty),
                reason="cannot merge diverged histories over uncommitted changes",
            )

        if divergence.ahead == 0:
            return MergeDecision(MergeAction.FAST_FORWARD)
        return MergeDecision(MergeAction.MERGE)
