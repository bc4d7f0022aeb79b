# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import threading
from typing import List, Tuple

from ..config.models import ActionSpec
from ..inventory.models import Host
from .base import RemoteExecutor, StepOutcome

log = logging.getLogger("kubeweave")


class RoutingExecutor:
    """Sends ``connection: local`` hosts to one executor, the rest to another."""

    def __init__(self, remote: RemoteExecutor, local: RemoteExecutor):
        self.remote = remote
        self.local = local

    def execute(self, host: Host, action: ActionSpec, timeout: float) -> StepOutcome:
        target = self.local if host.connection == "local" else self.remote
        return target.execute(host, action, timeout)

    def close(self) -> None:
        for ex in (self.remote, self.local):
            close = getattr(ex, "close", None)
            if close:
                close()


class DryRunExecutor:
    """Records what would run and reports every node as ok-unchanged."""

    def __init__(self):
        self.planned: List[Tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def execute(self, host: Host, action: ActionSpec, timeout: float) -> StepOutcome:
        log.info("[dry-run] %s: %s %s", host.name, action.kind, action.params)
        with self._lock:
            self.planned.append((host.name, action.kind, dict(action.params)))
        return StepOutcome(changed=False)
