import subprocess
import threading
from pathlib import Path

import pytest

from kubeweave.config.models import ActionSpec
from kubeweave.core.errors import StepFailed, StepTimeout
from kubeweave.executors import local as local_mod
from kubeweave.executors.base import StepOutcome
from kubeweave.executors.local import LocalExecutor
from kubeweave.executors.router import DryRunExecutor, RoutingExecutor
from kubeweave.inventory.models import Host
from kubeweave.utils.execution import ExecutionContext


def _host(**kw):
    base = dict(name="controller", address="127.0.0.1", roles=frozenset({"local"}), connection="local")
    base.update(kw)
    return Host(**base)


class FakeRun:
    def __init__(self, rc=0, stdout="", stderr="", raises=None):
        self.rc, self.stdout, self.stderr, self.raises = rc, stdout, stderr, raises
        self.calls = []

    def __call__(self, argv, **kw):
        self.calls.append((argv, kw))
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(argv, self.rc, self.stdout, self.stderr)


def test_command_runs_through_bash(monkeypatch):
    fake = FakeRun(stdout="ok\n")
    monkeypatch.setattr(local_mod.subprocess, "run", fake)
    out = LocalExecutor().execute(_host(), ActionSpec(kind="command", params={"cmd": "kubectl config use-context lab"}), 30)
    assert out.changed
    argv, kw = fake.calls[0]
    assert argv == ["bash", "-lc", "kubectl config use-context lab"]
    assert kw["timeout"] == 30


def test_command_failure(monkeypatch):
    monkeypatch.setattr(local_mod.subprocess, "run", FakeRun(rc=1, stderr="context not found"))
    with pytest.raises(StepFailed, match="context not found") as exc:
        LocalExecutor().execute(_host(), ActionSpec(kind="command", params={"cmd": "false"}), 30)
    assert exc.value.rc == 1


def test_command_timeout_maps_to_step_timeout(monkeypatch):
    monkeypatch.setattr(
        local_mod.subprocess, "run",
        FakeRun(raises=subprocess.TimeoutExpired(cmd="sleep 99", timeout=1)),
    )
    with pytest.raises(StepTimeout):
        LocalExecutor().execute(_host(), ActionSpec(kind="command", params={"cmd": "sleep 99"}), 1)


def test_unless_guard_skips(monkeypatch):
    fake = FakeRun(rc=0)
    monkeypatch.setattr(local_mod.subprocess, "run", fake)
    out = LocalExecutor().execute(
        _host(),
        ActionSpec(kind="command", params={"cmd": "kubectl apply -f x", "unless": "kubectl get ns metallb-system"}),
        30,
    )
    assert not out.changed
    assert [c[0][2] for c in fake.calls] == ["kubectl get ns metallb-system"]


def test_env_is_merged_into_process_env(monkeypatch):
    fake = FakeRun()
    monkeypatch.setattr(local_mod.subprocess, "run", fake)
    LocalExecutor().execute(_host(), ActionSpec(kind="command", params={"cmd": "env", "env": {"KUBECONFIG": "/tmp/kc"}}), 30)
    env = fake.calls[0][1]["env"]
    assert env["KUBECONFIG"] == "/tmp/kc"
    assert "PATH" in env


def test_copy_writes_once(tmp_path: Path):
    dest = tmp_path / "kube" / "lab.conf"
    ex = LocalExecutor()
    action = ActionSpec(kind="copy", params={"content": "apiVersion: v1\n", "dest": str(dest), "mode": "0600"})
    assert ex.execute(_host(), action, 30).changed
    assert dest.read_text() == "apiVersion: v1\n"
    assert dest.stat().st_mode & 0o777 == 0o600
    assert not ex.execute(_host(), action, 30).changed


def test_template_renders_inline_content(tmp_path: Path):
    dest = tmp_path / "pool.yaml"
    ex = LocalExecutor(ExecutionContext(templates_dir=tmp_path))
    action = ActionSpec(kind="template", params={"content": "range: {{ metallb_range }}\n", "dest": str(dest)})
    ex.execute(_host(vars={"metallb_range": "10.0.0.200-10.0.0.220"}), action, 30)
    assert dest.read_text() == "range: 10.0.0.200-10.0.0.220\n"


def test_template_from_file_requires_templates_dir():
    with pytest.raises(StepFailed, match="no templates_dir"):
        LocalExecutor().execute(_host(), ActionSpec(kind="template", params={"src": "a.j2", "dest": "/tmp/a"}), 30)


# ----------------- routing / dry-run -----------------

class Recorder:
    def __init__(self):
        self.hosts = []
        self.closed = False
    def execute(self, host, action, timeout):
        self.hosts.append(host.name)
        return StepOutcome(changed=True)
    def close(self):
        self.closed = True


def test_router_picks_executor_by_connection():
    remote, local = Recorder(), Recorder()
    router = RoutingExecutor(remote=remote, local=local)
    action = ActionSpec(kind="command", params={"cmd": "true"})
    router.execute(_host(), action, 30)
    router.execute(_host(name="cp-1", address="10.0.0.10", connection="ssh"), action, 30)
    assert local.hosts == ["controller"]
    assert remote.hosts == ["cp-1"]
    router.close()
    assert remote.closed and local.closed


def test_dry_run_records_plan_without_changes():
    ex = DryRunExecutor()
    action = ActionSpec(kind="command", params={"cmd": "kubeadm reset -f"})
    threads = [threading.Thread(target=ex.execute, args=(_host(name=f"n{i}"), action, 30)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(ex.planned) == 4
    assert {p[0] for p in ex.planned} == {"n0", "n1", "n2", "n3"}
    assert ex.execute(_host(), action, 30).changed is False


@pytest.mark.parametrize("stdout, changed", [("", False), ("configured\n", True)])
def test_changed_when_output(monkeypatch, stdout, changed):
    monkeypatch.setattr(local_mod.subprocess, "run", FakeRun(stdout=stdout))
    action = ActionSpec(kind="command", params={"cmd": "kubectl apply -f pool.yaml", "changed_when": "output"})
    assert LocalExecutor().execute(_host(), action, 30).changed is changed
