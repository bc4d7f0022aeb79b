# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/executors/base.py
from __future__ import annotations

from dataclasses import dataclass
import shlex
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from ..config.models import ActionSpec
from ..inventory.models import Host


@dataclass(frozen=True)
class StepOutcome:
    changed: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteExecutor(Protocol):
    """
    Runs one idempotent action against one host. Raising is equivalent to
    returning an outcome with ``error`` set; TimeoutError / StepTimeout are
    recorded as timeouts.
    """

    def execute(self, host: Host, action: ActionSpec, timeout: float) -> StepOutcome: ...


class UnsupportedAction(ValueError):
    def __init__(self, executor: str, kind: str):
        super().__init__(f"{executor} does not support action kind '{kind}'")


def guard_reason(params: Mapping[str, Any], check: Callable[[str], int]) -> Optional[str]:
    """
    Evaluate the idempotence guards of a command action. Returns why the
    command can be skipped, or None if it has to run. ``check`` runs a
    shell command on the target and returns its exit code.
    """
    creates = params.get("creates")
    if creates and check(f"test -e {shlex.quote(str(creates))}") == 0:
        return f"{creates} exists"
    removes = params.get("removes")
    if removes and check(f"test -e {shlex.quote(str(removes))}") != 0:
        return f"{removes} does not exist"
    unless = params.get("unless")
    if unless and check(str(unless)) == 0:
        return "unless check succeeded"
    return None


def template_context(host: Host, params: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        **host.vars,
        **(params.get("vars") or {}),
        "inventory_hostname": host.name,
        "ansible_host": host.address,
        "host_roles": sorted(host.roles),
    }


def reports_change(params: Mapping[str, Any], stdout: str) -> bool:
    """``changed_when``: always (default), never, or output (any stdout)."""
    mode = params.get("changed_when", "always")
    if mode == "never":
        return False
    if mode == "output":
        return bool(stdout.strip())
    return True
