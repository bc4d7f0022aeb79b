# src/kubeweave/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent, GraphFailed, NodeFailed, RunAborted

_LEVELS = {
    NodeFailed: logging.WARNING,
    GraphFailed: logging.ERROR,
    RunAborted: logging.ERROR,
}


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        etype = type(event).__name__
        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k != "ts")
        self.logger.log(_LEVELS.get(type(event), logging.DEBUG), "[EVENT] %s: %s", etype, fields)
