# src/kubeweave/engine/results.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.errors import ErrorKind


class Outcome(str, Enum):
    OK_UNCHANGED = "ok-unchanged"
    OK_CHANGED = "ok-changed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def ok(self) -> bool:
        return self in (Outcome.OK_UNCHANGED, Outcome.OK_CHANGED)


@dataclass(frozen=True)
class ExecutionResult:
    node_id: str
    host: str
    role: str
    step: str
    outcome: Outcome
    attempts: int = 0
    # time.monotonic() readings; only meaningful relative to each other
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    required: bool = True             # False for continue_on_error steps

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def blocks_dependents(self) -> bool:
        """Dependents of this node must be skipped."""
        if self.outcome is Outcome.SKIPPED:
            return True
        return self.outcome is Outcome.FAILED and self.required
