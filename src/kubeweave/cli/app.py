# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/cli/app.py
from __future__ import annotations

import json
import signal
import threading
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from kubeweave.config.loader import load_topology
from kubeweave.config.models import TopologyConfig
from kubeweave.config.settings import load_settings
from kubeweave.core.errors import KubeweaveError
from kubeweave.engine.convergence import ConvergenceEngine, EngineOptions
from kubeweave.engine.report import RunReport, RunStatus
from kubeweave.executors.local import LocalExecutor
from kubeweave.executors.router import DryRunExecutor, RoutingExecutor
from kubeweave.executors.ssh import SshExecutor
from kubeweave.graph.builder import TaskGraph, build_graph
from kubeweave.inventory.inventory import Inventory, inventory_from_topology
from kubeweave.logging.log import init_logging
from kubeweave.observers.console import ConsoleObserver
from kubeweave.observers.dispatcher import EventBus
from kubeweave.observers.events import new_ctx
from kubeweave.observers.jsonfile import JsonFileObserver
from kubeweave.observers.logger import LoggerObserver
from kubeweave.utils.execution import ExecutionContext
from kubeweave.utils.serialize import to_jsonable

app = typer.Typer(help="kubeweave cluster bootstrap CLI")

EXIT_CONFIG_ERROR = 1


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _split_tags(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def _fail(message: str) -> None:
    typer.secho(f"ERROR: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(EXIT_CONFIG_ERROR)


def _load(topology: Path, inventory: Optional[Path]) -> Tuple[TopologyConfig, Inventory]:
    cfg = load_topology(topology)
    if inventory is not None:
        cfg = cfg.model_copy(update={"inventory": str(inventory.resolve())})
    return cfg, inventory_from_topology(cfg)


def _load_graph(
    topology: Path,
    inventory: Optional[Path],
    tags: Optional[str],
    skip_tags: Optional[str],
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> Tuple[TopologyConfig, TaskGraph]:
    cfg, inv = _load(topology, inventory)
    graph = build_graph(
        inv,
        cfg.roles,
        include_tags=_split_tags(tags),
        exclude_tags=_split_tags(skip_tags),
        bus=bus,
        run_ctx=run_ctx,
    )
    return cfg, graph


def _print_report(report: RunReport) -> None:
    colors = {
        RunStatus.SUCCESS: typer.colors.GREEN,
        RunStatus.PARTIAL: typer.colors.YELLOW,
        RunStatus.FAILED: typer.colors.RED,
    }
    typer.echo("")
    for host, status in report.host_status.items():
        typer.echo(f"  {host:<24} {status.value}")
    for r in report.failed_results():
        typer.secho(f"  ✖ {r.node_id}: {r.error}", fg=typer.colors.RED)
    if report.reason:
        typer.echo(f"  reason   : {report.reason}" + (f" ({report.aborted_by})" if report.aborted_by else ""))
    typer.secho(report.summary(), fg=colors[report.status], bold=True)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def run(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="INI inventory (overrides the topology's)"),
    tags: Optional[str] = typer.Option(None, "--tags", help="Only run nodes carrying one of these tags"),
    skip_tags: Optional[str] = typer.Option(None, "--skip-tags", help="Never run nodes carrying these tags"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Default per-step timeout in seconds"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
    report_json: Optional[Path] = typer.Option(None, "--report-json", help="Write the run report as JSON"),
):
    """Converge the cluster described by TOPOLOGY."""
    settings = load_settings()
    logger, run_id, log_path = init_logging(base_dir=settings.log_dir, verbose=debug)

    typer.echo("")
    typer.secho("kubeweave run started", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Log file : {log_path}")

    try:
        cfg = load_topology(topology)
    except KubeweaveError as e:
        _fail(str(e))

    observers = [
        ConsoleObserver(verbose=debug),
        LoggerObserver(logger),
        JsonFileObserver(settings.log_dir / f"{run_id}.jsonl"),
    ]
    bus = EventBus(observers=observers)
    run_ctx = new_ctx(env=cfg.environment, context=cfg.context, run_id=run_id)

    try:
        cfg, graph = _load_graph(topology, inventory, tags, skip_tags, bus=bus, run_ctx=run_ctx)
    except KubeweaveError as e:
        _fail(str(e))

    if dry_run:
        executor = DryRunExecutor()
    else:
        ctx = ExecutionContext(dry_run=False, templates_dir=Path(cfg.templates_dir) if cfg.templates_dir else None)
        executor = RoutingExecutor(
            remote=SshExecutor(
                ctx,
                connect_retries=settings.ssh_connect_retries,
                connect_delay=settings.ssh_connect_delay,
            ),
            local=LocalExecutor(ctx),
        )

    engine = ConvergenceEngine(
        EngineOptions(
            concurrency_limit=concurrency or settings.concurrency,
            default_timeout_seconds=timeout or settings.timeout_seconds,
            dry_run=dry_run,
        ),
        bus=bus,
        run_ctx=run_ctx,
    )

    cancel = threading.Event()
    installed, previous = False, None
    if threading.current_thread() is threading.main_thread():
        def _on_sigint(signum, frame):
            logger.warning("interrupt received, cancelling run (in-flight steps will finish)")
            cancel.set()

        previous = signal.signal(signal.SIGINT, _on_sigint)
        installed = True

    try:
        report = engine.run(graph, executor, cancel_event=cancel)
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous or signal.default_int_handler)
        close = getattr(executor, "close", None)
        if close:
            close()

    _print_report(report)
    if report_json:
        report_json.parent.mkdir(parents=True, exist_ok=True)
        report_json.write_text(json.dumps(to_jsonable(report.to_dict()), indent=2))
        typer.echo(f"  Report   : {report_json}")

    raise typer.Exit(report.exit_code())


@app.command()
def plan(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i"),
    tags: Optional[str] = typer.Option(None, "--tags"),
    skip_tags: Optional[str] = typer.Option(None, "--skip-tags"),
):
    """Print the execution order without running anything."""
    try:
        _, graph = _load_graph(topology, inventory, tags, skip_tags)
    except KubeweaveError as e:
        _fail(str(e))

    typer.secho(f"{len(graph)} node(s), {graph.edge_count} edge(s)", bold=True)
    for i, node in enumerate(graph, 1):
        after = sorted(graph.predecessors(node.id))
        line = f"{i:>4}. {node.id}"
        if after:
            line += f"  <- {', '.join(after)}"
        typer.echo(line)


@app.command("inventory")
def show_inventory(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i"),
):
    """List hosts with their addresses and role tags."""
    try:
        _, inv = _load(topology, inventory)
    except KubeweaveError as e:
        _fail(str(e))

    for host in inv:
        typer.echo(f"{host.name:<24} {host.address:<20} {','.join(sorted(host.roles))}")


if __name__ == "__main__":
    app()
