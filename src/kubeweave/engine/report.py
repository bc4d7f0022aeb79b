# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/engine/report.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..inventory.models import HostStatus
from .results import ExecutionResult, Outcome

REASON_CANCELLED = "cancelled"
REASON_CLUSTER_FATAL = "cluster-fatal"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.PARTIAL: 2,
    RunStatus.FAILED: 3,
}
EXIT_CANCELLED = 130


def compute_status(
    results: Iterable[ExecutionResult],
    host_status: Mapping[str, HostStatus],
    reason: Optional[str],
) -> RunStatus:
    if reason in (REASON_CANCELLED, REASON_CLUSTER_FATAL):
        return RunStatus.FAILED
    degraded = any(r.blocks_dependents for r in results)
    if not degraded:
        return RunStatus.SUCCESS
    if any(s is HostStatus.CONVERGED for s in host_status.values()):
        return RunStatus.PARTIAL
    return RunStatus.FAILED


@dataclass(frozen=True)
class RunReport:
    """
    Outcome of one run: every node's ExecutionResult grouped by host in
    execution order, each host's final status and the overall status.
    """

    status: RunStatus
    results: Mapping[str, Tuple[ExecutionResult, ...]]
    host_status: Mapping[str, HostStatus]
    started_at: datetime
    finished_at: datetime
    reason: Optional[str] = None
    aborted_by: Optional[str] = None      # node id of the cluster-fatal failure
    run_id: Optional[str] = None
    dry_run: bool = False
    _index: Mapping[str, ExecutionResult] = field(default_factory=lambda: MappingProxyType({}), repr=False, compare=False)

    @classmethod
    def build(
        cls,
        ordered: Iterable[ExecutionResult],
        host_status: Mapping[str, HostStatus],
        *,
        started_at: datetime,
        finished_at: datetime,
        reason: Optional[str] = None,
        aborted_by: Optional[str] = None,
        run_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> "RunReport":
        ordered = list(ordered)
        grouped: Dict[str, List[ExecutionResult]] = {h: [] for h in host_status}
        for r in ordered:
            grouped.setdefault(r.host, []).append(r)
        return cls(
            status=compute_status(ordered, host_status, reason),
            results=MappingProxyType({h: tuple(rs) for h, rs in grouped.items()}),
            host_status=MappingProxyType(dict(host_status)),
            started_at=started_at,
            finished_at=finished_at,
            reason=reason,
            aborted_by=aborted_by,
            run_id=run_id,
            dry_run=dry_run,
            _index=MappingProxyType({r.node_id: r for r in ordered}),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_results(self) -> List[ExecutionResult]:
        return [r for rs in self.results.values() for r in rs]

    def result(self, node_id: str) -> ExecutionResult:
        return self._index[node_id]

    def failed_results(self) -> List[ExecutionResult]:
        return [r for r in self.all_results() if r.outcome is Outcome.FAILED]

    def counts(self) -> Dict[str, int]:
        out = {o.value: 0 for o in Outcome}
        for r in self.all_results():
            out[r.outcome.value] += 1
        return out

    def summary(self) -> str:
        c = self.counts()
        return (
            f"status={self.status.value} "
            f"OK={c['ok-unchanged']} CHANGED={c['ok-changed']} "
            f"FAILED={c['failed']} SKIPPED={c['skipped']}"
        )

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def exit_code(self) -> int:
        if self.reason == REASON_CANCELLED:
            return EXIT_CANCELLED
        return EXIT_CODES[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "reason": self.reason,
            "aborted_by": self.aborted_by,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "counts": self.counts(),
            "hosts": {
                host: {
                    "status": self.host_status[host].value,
                    "steps": [
                        {
                            "node": r.node_id,
                            "role": r.role,
                            "step": r.step,
                            "outcome": r.outcome.value,
                            "attempts": r.attempts,
                            "duration": round(r.duration, 3) if r.duration is not None else None,
                            "error": r.error,
                            "error_kind": r.error_kind.value if r.error_kind else None,
                        }
                        for r in rs
                    ],
                }
                for host, rs in self.results.items()
            },
        }
