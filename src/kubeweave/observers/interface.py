# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Protocol

from .events import BaseEvent


class Observer(Protocol):
    """
    Anything the EventBus can fan out to. ``notify`` may be called from the
    engine's coordinating thread or from the graph builder; an exception
    raised here is logged by the bus and never reaches the run.
    """

    def notify(self, event: BaseEvent) -> None: ...
