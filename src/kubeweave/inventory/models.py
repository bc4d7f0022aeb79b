# src/kubeweave/inventory/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional


class HostStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(eq=False)
class Host:
    """
    A server the engine converges. Identity is the name; only the
    Convergence Engine touches ``status``.
    """
    name: str
    address: str                              # IP or DNS to connect
    roles: FrozenSet[str] = frozenset()       # role tags, e.g. {"master"}
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    pkey_path: Optional[Path] = None
    connection: str = "ssh"                   # "ssh" | "local"
    become: bool = True                       # run commands through sudo
    vars: Dict[str, Any] = field(default_factory=dict)
    status: HostStatus = HostStatus.PENDING

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Host) and other.name == self.name

    def has_role(self, role: str) -> bool:
        return role in self.roles
