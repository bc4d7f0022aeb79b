import json
import logging
from pathlib import Path

from kubeweave.logging.log import init_logging
from kubeweave.observers.console import ConsoleObserver
from kubeweave.observers.dispatcher import EventBus
from kubeweave.observers.events import NodeFailed, NodeStarted, RunSummary, new_ctx, stamp
from kubeweave.observers.jsonfile import JsonFileObserver
from kubeweave.observers.logger import LoggerObserver


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


class Broken:
    def notify(self, ev): raise RuntimeError("observer bug")


CTX = new_ctx(env="dev", context="kind-lab", run_id="run-1")


def test_bus_fans_out_and_survives_broken_observers():
    cap = Capture()
    bus = EventBus([Broken(), cap])
    bus.emit(NodeStarted(node="m1/r/s", host="m1", **stamp(CTX)))
    assert len(cap.events) == 1
    assert cap.events[0].run_id == "run-1"


def test_json_file_observer_appends_lines(tmp_path: Path):
    path = tmp_path / "logs" / "run-1.jsonl"
    ob = JsonFileObserver(path)
    ob.notify(NodeStarted(node="m1/r/s", host="m1", **stamp(CTX)))
    ob.notify(RunSummary(status="success", ok=1, changed=0, failed=0, skipped=0, **stamp(CTX)))
    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["type"] for line in lines] == ["NodeStarted", "RunSummary"]
    assert lines[0]["node"] == "m1/r/s" and lines[0]["context"] == "kind-lab"


def test_console_observer_quiet_by_default(capsys):
    ConsoleObserver().notify(NodeStarted(node="m1/r/s", host="m1", **stamp(CTX)))
    assert capsys.readouterr().out == ""
    ConsoleObserver().notify(NodeFailed(node="m1/r/s", attempts=2, error="boom", error_kind="StepFailed", **stamp(CTX)))
    out = capsys.readouterr().out
    assert "NodeFailed" in out and "error=boom" in out


def test_console_observer_verbose_shows_everything(capsys):
    ConsoleObserver(verbose=True).notify(NodeStarted(node="m1/r/s", host="m1", **stamp(CTX)))
    assert "NodeStarted" in capsys.readouterr().out


def test_logger_observer_and_init_logging(tmp_path: Path):
    logger, run_id, log_path = init_logging(base_dir=tmp_path, name="kubeweave-test", run_id="fixed-id")
    assert run_id == "fixed-id"
    assert log_path.parent == tmp_path and "fixed-id" in log_path.name

    LoggerObserver(logger).notify(NodeStarted(node="m1/r/s", host="m1", **stamp(CTX)))
    for h in logger.handlers:
        h.flush()
    text = log_path.read_text()
    assert "run_id=fixed-id" in text
    assert "NodeStarted" in text and "m1/r/s" in text

    # a second init replaces handlers instead of stacking them
    init_logging(base_dir=tmp_path, name="kubeweave-test")
    assert len(logging.getLogger("kubeweave-test").handlers) == 2


def test_logger_observer_logs_failures_above_debug(caplog):
    logger = logging.getLogger("kubeweave-levels")
    caplog.set_level(logging.DEBUG, logger="kubeweave-levels")
    ob = LoggerObserver(logger)
    ob.notify(NodeStarted(node="m1/r/s", host="m1", **stamp(CTX)))
    ob.notify(NodeFailed(node="m1/r/s", attempts=1, error="boom", error_kind="StepFailed", **stamp(CTX)))
    assert [r.levelno for r in caplog.records] == [logging.DEBUG, logging.WARNING]
    assert "error=boom" in caplog.records[1].getMessage()
