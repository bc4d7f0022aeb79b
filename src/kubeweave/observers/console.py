# src/kubeweave/observers/console.py
import typer

from .events import BaseEvent, NodeFailed, NodeSkipped, NodeSucceeded, RunAborted

_COLORS = {
    NodeSucceeded: typer.colors.GREEN,
    NodeFailed: typer.colors.RED,
    NodeSkipped: typer.colors.YELLOW,
    RunAborted: typer.colors.RED,
}


class ConsoleObserver:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def notify(self, event: BaseEvent) -> None:
        color = _COLORS.get(type(event))
        if color is None and not self.verbose:
            return
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "env", "context", "order"))
        typer.secho(f"[{d['ts']}] {k} {data}", fg=color)
