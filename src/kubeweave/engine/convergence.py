# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/engine/convergence.py
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from ..core.errors import Cancelled, ErrorKind, StepFailed, StepTimeout
from ..executors.base import RemoteExecutor
from ..graph.builder import TaskGraph, TaskNode
from ..inventory.models import HostStatus

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    new_ctx,
    stamp,
    RunStarted,
    NodeStarted,
    NodeAttempt,
    NodeSucceeded,
    NodeFailed,
    NodeSkipped,
    RunAborted,
    RunSummary,
)
from .report import REASON_CANCELLED, REASON_CLUSTER_FATAL, RunReport
from .results import ExecutionResult, Outcome

log = logging.getLogger("kubeweave")


@dataclass
class EngineOptions:
    concurrency_limit: int = 4             # worker pool size; one node per host at a time
    default_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 0.1
    dry_run: bool = False                  # recorded on the report only

    def __post_init__(self) -> None:
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if self.default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")


@dataclass(frozen=True)
class _Attempted:
    """What a worker hands back to the coordinating loop."""

    changed: bool
    attempts: int
    started_at: float
    finished_at: float
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


class ConvergenceEngine:
    """
    Walks a TaskGraph to completion with a bounded worker pool.

    All run state (results, host statuses, the per-host queues) is owned by
    the loop in ``run``; workers only execute and report back.
    """

    def __init__(
        self,
        options: Optional[EngineOptions] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.options = options or EngineOptions()
        self.bus = bus or EventBus([])
        self.ctx = run_ctx or new_ctx(env="dev", context=None)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _timeout_for(self, node: TaskNode) -> float:
        return node.step.timeout_seconds or self.options.default_timeout_seconds

    def _execute(self, node: TaskNode, executor: RemoteExecutor, cancel: threading.Event) -> _Attempted:
        policy = node.step.retry
        timeout = self._timeout_for(node)
        started = time.monotonic()
        attempt = 0

        while True:
            attempt += 1
            t0 = time.monotonic()
            error: Optional[str] = None
            kind: Optional[ErrorKind] = None
            changed = False
            try:
                outcome = executor.execute(node.host, node.step.action, timeout)
                elapsed = time.monotonic() - t0
                if outcome.error:
                    error, kind = outcome.error, ErrorKind.STEP_FAILED
                elif elapsed > timeout:
                    error, kind = f"exceeded timeout of {timeout:g}s ({elapsed:.1f}s)", ErrorKind.TIMEOUT
                else:
                    changed = outcome.changed
            except Cancelled as e:
                error, kind = str(e) or "cancelled", ErrorKind.CANCELLED
            except (StepTimeout, TimeoutError) as e:
                error, kind = str(e) or f"timed out after {timeout:g}s", ErrorKind.TIMEOUT
            except StepFailed as e:
                error, kind = str(e), e.kind
            except Exception as e:
                error, kind = f"{type(e).__name__}: {e}", ErrorKind.STEP_FAILED

            if error is None:
                return _Attempted(
                    changed=changed,
                    attempts=attempt,
                    started_at=started,
                    finished_at=time.monotonic(),
                )

            log.warning("[%s] attempt %d/%d failed: %s", node.id, attempt, policy.max_attempts, error)
            self.bus.emit(NodeAttempt(node=node.id, attempt=attempt, error=error, **stamp(self.ctx)))

            if attempt >= policy.max_attempts or kind is ErrorKind.CANCELLED:
                break
            # backoff is the only other place a worker waits; cancellation ends it
            if cancel.wait(min(policy.delay_for(attempt), threading.TIMEOUT_MAX)):
                log.info("[%s] run cancelled, not retrying", node.id)
                break

        return _Attempted(
            changed=False,
            attempts=attempt,
            started_at=started,
            finished_at=time.monotonic(),
            error=error,
            error_kind=kind,
        )

    # ------------------------------------------------------------------
    # Coordinator side
    # ------------------------------------------------------------------

    def run(
        self,
        graph: TaskGraph,
        executor: RemoteExecutor,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunReport:
        """
        Execute ``graph`` and return the RunReport. Never raises for node
        failures; those are recorded.
        """
        cancel = cancel_event or threading.Event()
        opts = self.options
        started_wall = datetime.now(timezone.utc)

        hosts = graph.hosts()
        for h in hosts:
            h.status = HostStatus.PENDING

        queues: Dict[str, Deque[TaskNode]] = {h.name: deque(graph.nodes_for_host(h.name)) for h in hosts}
        results: Dict[str, ExecutionResult] = {}
        in_flight: Dict[Future, TaskNode] = {}
        busy_hosts: set = set()
        dispatched_hosts: set = set()
        failed_hosts: set = set()
        abort_reason: Optional[str] = None
        aborted_by: Optional[str] = None

        def record(node: TaskNode, result: ExecutionResult) -> None:
            results[node.id] = result
            if result.outcome is Outcome.SKIPPED:
                self.bus.emit(NodeSkipped(node=node.id, reason=result.error or "", **stamp(self.ctx)))

        def skip(node: TaskNode, reason: str, kind: Optional[ErrorKind] = None) -> None:
            log.info("[%s] skipped: %s", node.id, reason)
            record(node, self._result(node, Outcome.SKIPPED, error=reason, error_kind=kind))

        def dispatch_ready(pool: ThreadPoolExecutor) -> None:
            progress = True
            while progress:
                progress = False
                for host in hosts:
                    name = host.name
                    queue = queues[name]
                    while queue and name not in busy_hosts:
                        node = queue[0]
                        if name in failed_hosts:
                            queue.popleft()
                            skip(node, f"host {name} failed")
                            progress = True
                            continue
                        preds = [results.get(p) for p in graph.predecessors(node.id)]
                        if any(r is None for r in preds):
                            break  # a predecessor is still running or queued
                        blocker = next((r for r in preds if r.blocks_dependents), None)
                        if blocker is not None:
                            queue.popleft()
                            skip(node, f"dependency {blocker.node_id} {blocker.outcome.value}")
                            progress = True
                            continue
                        if len(in_flight) >= opts.concurrency_limit:
                            break
                        queue.popleft()
                        busy_hosts.add(name)
                        dispatched_hosts.add(name)
                        if host.status is HostStatus.PENDING:
                            host.status = HostStatus.IN_PROGRESS
                        log.info("[%s] dispatching", node.id)
                        self.bus.emit(NodeStarted(node=node.id, host=name, **stamp(self.ctx)))
                        fut = pool.submit(self._execute, node, executor, cancel)
                        in_flight[fut] = node
                        progress = True

        def complete(node: TaskNode, attempted: _Attempted) -> None:
            nonlocal abort_reason, aborted_by
            if attempted.error is None:
                outcome = Outcome.OK_CHANGED if attempted.changed else Outcome.OK_UNCHANGED
                result = self._result(node, outcome, attempted)
                record(node, result)
                self.bus.emit(NodeSucceeded(
                    node=node.id,
                    changed=attempted.changed,
                    attempts=attempted.attempts,
                    duration_ms=int((attempted.finished_at - attempted.started_at) * 1000),
                    **stamp(self.ctx),
                ))
                return

            result = self._result(node, Outcome.FAILED, attempted)
            record(node, result)
            self.bus.emit(NodeFailed(
                node=node.id,
                attempts=attempted.attempts,
                error=attempted.error,
                error_kind=attempted.error_kind.value if attempted.error_kind else ErrorKind.STEP_FAILED.value,
                **stamp(self.ctx),
            ))
            if not result.required:
                log.warning("[%s] failed, continuing (continue_on_error)", node.id)
                return

            log.error("[%s] failed after %d attempt(s): %s", node.id, attempted.attempts, attempted.error)
            failed_hosts.add(node.host.name)
            node.host.status = HostStatus.FAILED
            if node.step.cluster_fatal and abort_reason is None:
                abort_reason, aborted_by = REASON_CLUSTER_FATAL, node.id
                log.error("[%s] is cluster-fatal, aborting run", node.id)
                self.bus.emit(RunAborted(reason=abort_reason, node=node.id, **stamp(self.ctx)))

        log.info("run started: %d node(s) on %d host(s), concurrency=%d",
                 len(graph), len(hosts), opts.concurrency_limit)
        self.bus.emit(RunStarted(
            nodes=len(graph), hosts=len(hosts), concurrency=opts.concurrency_limit, **stamp(self.ctx),
        ))

        with ThreadPoolExecutor(max_workers=opts.concurrency_limit, thread_name_prefix="kubeweave") as pool:
            while True:
                if cancel.is_set() and abort_reason is None:
                    abort_reason = REASON_CANCELLED
                    log.warning("cancellation requested, waiting for %d in-flight node(s)", len(in_flight))
                    self.bus.emit(RunAborted(reason=abort_reason, **stamp(self.ctx)))

                if abort_reason is None:
                    dispatch_ready(pool)

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=opts.poll_interval_seconds, return_when=FIRST_COMPLETED)
                for fut in done:
                    node = in_flight.pop(fut)
                    busy_hosts.discard(node.host.name)
                    complete(node, fut.result())

        # whatever was never dispatched
        for host in hosts:
            for node in queues[host.name]:
                if node.id in results:
                    continue
                if abort_reason == REASON_CANCELLED:
                    skip(node, "run cancelled", ErrorKind.CANCELLED)
                elif abort_reason == REASON_CLUSTER_FATAL:
                    skip(node, f"run aborted: {aborted_by} failed")
                else:
                    skip(node, "not reachable")

        host_status = self._final_host_status(graph, results, dispatched_hosts)
        report = RunReport.build(
            (results[n.id] for n in graph),
            host_status,
            started_at=started_wall,
            finished_at=datetime.now(timezone.utc),
            reason=abort_reason,
            aborted_by=aborted_by,
            run_id=self.ctx.get("run_id"),
            dry_run=opts.dry_run,
        )
        c = report.counts()
        log.info("run finished: %s", report.summary())
        self.bus.emit(RunSummary(
            status=report.status.value,
            ok=c["ok-unchanged"],
            changed=c["ok-changed"],
            failed=c["failed"],
            skipped=c["skipped"],
            **stamp(self.ctx),
        ))
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _result(
        node: TaskNode,
        outcome: Outcome,
        attempted: Optional[_Attempted] = None,
        *,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            node_id=node.id,
            host=node.host.name,
            role=node.role.name,
            step=node.step.name,
            outcome=outcome,
            attempts=attempted.attempts if attempted else 0,
            started_at=attempted.started_at if attempted else None,
            finished_at=attempted.finished_at if attempted else None,
            error=attempted.error if attempted else error,
            error_kind=attempted.error_kind if attempted else error_kind,
            required=not node.step.continue_on_error,
        )

    @staticmethod
    def _final_host_status(graph: TaskGraph, results: Dict[str, ExecutionResult], dispatched: set) -> Dict[str, HostStatus]:
        out: Dict[str, HostStatus] = {}
        for host in graph.hosts():
            rs: List[ExecutionResult] = [results[n.id] for n in graph.nodes_for_host(host.name)]
            if all(not r.blocks_dependents for r in rs):
                host.status = HostStatus.CONVERGED
            elif host.name in dispatched or any(r.outcome is Outcome.FAILED for r in rs):
                host.status = HostStatus.FAILED
            else:
                host.status = HostStatus.PENDING
            out[host.name] = host.status
        return out


def run(
    graph: TaskGraph,
    executor: RemoteExecutor,
    concurrency_limit: int = 4,
    *,
    cancel_event: Optional[threading.Event] = None,
    bus: Optional[EventBus] = None,
    default_timeout_seconds: float = 600.0,
) -> RunReport:
    """Convenience wrapper around ConvergenceEngine."""
    engine = ConvergenceEngine(
        EngineOptions(
            concurrency_limit=concurrency_limit,
            default_timeout_seconds=default_timeout_seconds,
        ),
        bus=bus,
    )
    return engine.run(graph, executor, cancel_event=cancel_event)
