# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how step actions are executed
    """

    dry_run: bool = False
    templates_dir: Optional[Path] = None
