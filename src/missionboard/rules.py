from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from missionboard.stages import VALID_TRANSITIONS, Stage


@dataclass(slots=True, frozen=True)
class TransitionCheck:
    legal: bool
    from_stage: Stage
    to_stage: Stage
    allowed_next: tuple[Stage, ...]

    @property
    def message(self) -> str:
        if self.legal:
            return f"{self.from_stage} -> {self.to_stage}"
        targets = ", ".join(self.allowed_next) or "none"
        return (
            f"Cannot transition from {self.from_stage} to {self.to_stage}. "
            f"Valid targets: {targets}"
        )


@dataclass(slots=True, frozen=True)
class WipCheck:
    allowed: bool
    current: int
    limit: int | None

    @property
    def available(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.current)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current": self.current,
            "limit": self.limit,
            "available": self.available,
        }


def validate_transition(from_stage: Stage, to_stage: Stage) -> TransitionCheck:
    allowed = VALID_TRANSITIONS[from_stage]
    return TransitionCheck(
        legal=to_stage in allowed,
        from_stage=from_stage,
        to_stage=to_stage,
        allowed_next=allowed,
    )


def wip_limit_for(board: dict[str, Any], stage: Stage) -> int | None:
    limits = board.get("wip_limits")
    if not isinstance(limits, dict):
        return None
    value = limits.get(str(stage))
    if value is None:
        return None
    return int(value)


def check_wip_limit(board: dict[str, Any], stage: Stage) -> WipCheck:
    """Entry is allowed while occupancy stays strictly below the stage limit."""
    limit = wip_limit_for(board, stage)
    phases = board.get("phases") or {}
    current = len(phases.get(str(stage)) or [])
    if limit is None:
        return WipCheck(allowed=True, current=current, limit=None)
    return WipCheck(allowed=current < limit, current=current, limit=limit)


def check_dependencies(board: dict[str, Any], dependencies: list[str] | None) -> list[str]:
    """Return the dependency IDs that are neither in ``done`` nor archived."""
    if not dependencies:
        return []
    done_ids = set((board.get("phases") or {}).get(str(Stage.DONE)) or [])
    done_ids.update(board.get("archived") or [])
    return [dep for dep in dependencies if dep not in done_ids]
