# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/config/models.py

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_BACKOFF_EXPONENT = 32


def _no_slash(value: str, what: str) -> str:
    # node ids are host/role/step
    if "/" in value:
        raise ValueError(f"{what} name '{value}' must not contain '/'")
    return value


class RetryPolicy(BaseModel):
    """How often a step is attempted before its failure is recorded."""

    max_attempts: int = Field(default=1, ge=1)
    delay_seconds: float = Field(default=0.0, ge=0)
    backoff: Literal["fixed", "exponential"] = "fixed"
    max_delay_seconds: Optional[float] = Field(default=None, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        if self.backoff == "exponential":
            # exponent capped so long retry budgets stay within float range
            delay = self.delay_seconds * (2 ** min(attempt - 1, MAX_BACKOFF_EXPONENT))
        else:
            delay = self.delay_seconds
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        return delay


class ActionSpec(BaseModel):
    """
    Opaque action descriptor. The engine never looks inside; executors
    dispatch on ``kind`` (command, template, copy, ...).
    """

    kind: str
    params: Dict[str, Any] = Field(default_factory=dict)


class StepSpec(BaseModel):
    name: str
    action: ActionSpec
    tags: List[str] = Field(default_factory=list)
    retry: RetryPolicy = RetryPolicy()
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    cluster_fatal: bool = False       # failure aborts the whole run
    continue_on_error: bool = False   # failure recorded, dependents still run

    @model_validator(mode="before")
    @classmethod
    def _shorthand_action(cls, data: Any) -> Any:
        # `command: kubeadm init ...` is accepted in place of a full action block
        if isinstance(data, dict) and "action" not in data:
            for kind in ("command", "template", "copy"):
                if kind in data:
                    data = dict(data)
                    value = data.pop(kind)
                    params = value if isinstance(value, dict) else {"cmd": value}
                    data["action"] = {"kind": kind, "params": params}
                    break
        return data

    @field_validator("name")
    @classmethod
    def _step_name(cls, v: str) -> str:
        return _no_slash(v, "step")

    @model_validator(mode="after")
    def _failure_policy(self) -> "StepSpec":
        if self.cluster_fatal and self.continue_on_error:
            raise ValueError(f"step '{self.name}': cluster_fatal and continue_on_error are mutually exclusive")
        return self


class RoleSpec(BaseModel):
    name: str
    steps: List[StepSpec] = Field(default_factory=list)
    hosts: List[str] = Field(default_factory=list)        # role tags this role applies to
    depends_on: List[str] = Field(default_factory=list)   # roles that must converge cluster-wide first
    tags: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _role_name(cls, v: str) -> str:
        return _no_slash(v, "role")

    @model_validator(mode="after")
    def _default_hosts(self) -> "RoleSpec":
        if not self.hosts:
            self.hosts = [self.name]
        return self

    @field_validator("steps")
    @classmethod
    def _unique_step_names(cls, steps: List[StepSpec]) -> List[StepSpec]:
        seen = set()
        for s in steps:
            if s.name in seen:
                raise ValueError(f"duplicate step name '{s.name}'")
            seen.add(s.name)
        return steps


class HostSpec(BaseModel):
    name: str
    address: Optional[str] = None          # defaults to name
    roles: List[str] = Field(default_factory=list)
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    pkey_path: Optional[str] = None
    connection: Literal["ssh", "local"] = "ssh"
    become: bool = True
    vars: Dict[str, Any] = Field(default_factory=dict)


class TopologyConfig(BaseModel):
    name: str = "cluster"
    environment: Literal["dev", "staging", "prod"] = "dev"
    context: Optional[str] = None          # kube-context, informational
    vars: Dict[str, Any] = Field(default_factory=dict)
    hosts: List[HostSpec] = Field(default_factory=list)
    groups: Dict[str, List[str]] = Field(default_factory=dict)   # role tag -> host names
    inventory: Optional[str] = None        # path to an INI inventory
    templates_dir: Optional[str] = None
    roles: List[RoleSpec] = Field(default_factory=list)

    def by_name(self) -> Dict[str, RoleSpec]:
        return {r.name: r for r in self.roles}
