# src/kubeweave/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single run
    env: str          # dev/staging/prod
    context: Optional[str]  # kube-context

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": _now(),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Same run context with a fresh timestamp."""
    return {**ctx, "ts": _now()}


# ---------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class GraphBuilt(BaseEvent):
    nodes: int
    edges: int
    order: List[str]

@dataclass(frozen=True)
class GraphFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    nodes: int
    hosts: int
    concurrency: int

@dataclass(frozen=True)
class NodeStarted(BaseEvent):
    node: str
    host: str

@dataclass(frozen=True)
class NodeAttempt(BaseEvent):
    node: str
    attempt: int
    error: Optional[str] = None

@dataclass(frozen=True)
class NodeSucceeded(BaseEvent):
    node: str
    changed: bool
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class NodeFailed(BaseEvent):
    node: str
    attempts: int
    error: str
    error_kind: str

@dataclass(frozen=True)
class NodeSkipped(BaseEvent):
    node: str
    reason: str


# ---------------------------------------------------------------------
# Run outcome
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunAborted(BaseEvent):
    reason: str
    node: Optional[str] = None

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    status: str
    ok: int
    changed: int
    failed: int
    skipped: int
