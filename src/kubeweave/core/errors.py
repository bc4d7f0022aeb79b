# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/core/errors.py
from __future__ import annotations

from enum import Enum
from typing import Iterable, List


class ErrorKind(str, Enum):
    """Kinds recorded on a failed or skipped ExecutionResult."""

    STEP_FAILED = "StepFailed"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


class KubeweaveError(RuntimeError):
    """Base class for kubeweave failures."""


class ConfigError(KubeweaveError):
    """Raised when a topology document cannot be read or validated."""


class InvalidInventory(KubeweaveError, ValueError):
    """Duplicate host, host without a role, or malformed connection data."""


class UnknownRoleReference(KubeweaveError, ValueError):
    def __init__(self, role: str, reference: str):
        self.role = role
        self.reference = reference
        super().__init__(f"Role '{role}' depends on unknown role '{reference}'")


class CyclicDependency(KubeweaveError, ValueError):
    def __init__(self, nodes: Iterable[str]):
        self.nodes: List[str] = sorted(nodes)
        preview = ", ".join(self.nodes[:10])
        if len(self.nodes) > 10:
            preview += f", ... ({len(self.nodes) - 10} more)"
        super().__init__(f"Cyclic dependency detected among: {preview}")


class StepFailed(KubeweaveError):
    """A step action reported failure on its host."""

    kind = ErrorKind.STEP_FAILED

    def __init__(self, message: str, *, rc: int | None = None, stderr: str = ""):
        self.rc = rc
        self.stderr = stderr
        super().__init__(message)


class StepTimeout(StepFailed):
    kind = ErrorKind.TIMEOUT


class Cancelled(KubeweaveError):
    kind = ErrorKind.CANCELLED
