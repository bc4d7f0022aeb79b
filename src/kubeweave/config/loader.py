# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..core.errors import ConfigError
from ..executors.templates import expand_env_vars
from .models import TopologyConfig

log = logging.getLogger("kubeweave")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _merge_hosts(data: dict, secrets: dict) -> None:
    # host lists are merged by name so secrets.yaml can carry per-host passwords
    overrides = {h.get("name"): h for h in secrets.pop("hosts", []) or [] if isinstance(h, dict)}
    for host in data.get("hosts", []) or []:
        extra = overrides.get(host.get("name"))
        if extra:
            _deep_merge(host, {k: v for k, v in extra.items() if k != "name"})


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. KUBEWEAVE_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the topology file
    """
    env = os.environ.get("KUBEWEAVE_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("KUBEWEAVE_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file() and p.resolve() != config_path.resolve():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    # only braced references; bare $VAR belongs to the remote shell
    expanded = expand_env_vars(raw)
    try:
        data = yaml.safe_load(expanded) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def parse_topology(data: dict) -> TopologyConfig:
    try:
        return TopologyConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid topology: {e}") from e


def load_topology(path: str | Path) -> TopologyConfig:
    """
    Load and validate a topology document.

    A ``secrets.yaml`` overlay (``KUBEWEAVE_SECRETS_FILE`` or a file next to
    the topology) is deep-merged before validation. Hosts are matched by
    name so credentials can live outside the main document.

    Relative ``inventory`` and ``templates_dir`` paths are resolved against
    the topology file's directory.
    """
    path = Path(path)
    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        secrets = _load_yaml(secrets_path)
        _merge_hosts(data, secrets)
        _deep_merge(data, secrets)
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    for key in ("inventory", "templates_dir"):
        value = data.get(key)
        if value and not Path(value).is_absolute():
            data[key] = str(path.parent / value)

    return parse_topology(data)
