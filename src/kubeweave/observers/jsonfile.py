# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/observers/jsonfile.py
from __future__ import annotations

import json
from pathlib import Path

from ..utils.serialize import to_jsonable
from .events import BaseEvent


class JsonFileObserver:
    """Appends one JSON line per event to a run-scoped ``<run_id>.jsonl`` file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": type(event).__name__, **to_jsonable(event)})
        with self.path.open("a") as f:
            f.write(line + "\n")
