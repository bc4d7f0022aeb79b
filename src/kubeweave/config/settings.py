# src/kubeweave/config/settings.py


from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
import os

@dataclass(frozen=True)
class Settings:
    log_dir: Path
    concurrency: int
    timeout_seconds: float
    ssh_connect_retries: int
    ssh_connect_delay: float

def load_settings() -> Settings:
    # sensible defaults for dev; override via env
    return Settings(
        log_dir=Path(os.getenv("KUBEWEAVE_LOG_DIR", str(Path.home() / ".kubeweave" / "logs"))),
        concurrency=int(os.getenv("KUBEWEAVE_CONCURRENCY", "4")),
        timeout_seconds=float(os.getenv("KUBEWEAVE_TIMEOUT", "600")),
        ssh_connect_retries=int(os.getenv("KUBEWEAVE_SSH_CONNECT_RETRIES", "5")),
        ssh_connect_delay=float(os.getenv("KUBEWEAVE_SSH_CONNECT_DELAY", "5")),
    )
