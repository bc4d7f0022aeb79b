import json
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from kubeweave.cli.app import app

runner = CliRunner()

TOPOLOGY = """
    name: lab
    environment: dev
    hosts:
      - name: cp-1
        address: 10.0.0.10
        roles: [master]
    inventory: hosts.ini
    roles:
      - name: master-setup
        hosts: [master]
        steps:
          - name: init
            command: kubeadm init
      - name: network
        hosts: [master]
        depends_on: [master-setup]
        tags: [cni]
        steps:
          - name: calico
            command: kubectl apply -f calico.yaml
      - name: worker-setup
        hosts: [worker]
        depends_on: [network]
        steps:
          - name: join
            command: bash /root/join.sh
"""

INI = """
[worker]
wk-1 ansible_host=10.0.0.11
wk-2 ansible_host=10.0.0.12
"""


@pytest.fixture
def topology(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("KUBEWEAVE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.delenv("KUBEWEAVE_SECRETS_FILE", raising=False)
    (tmp_path / "hosts.ini").write_text(textwrap.dedent(INI))
    f = tmp_path / "cluster.yaml"
    f.write_text(textwrap.dedent(TOPOLOGY))
    return f


def test_inventory_lists_hosts(topology: Path):
    result = runner.invoke(app, ["inventory", str(topology)])
    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert [line.split()[0] for line in lines] == ["cp-1", "wk-1", "wk-2"]
    assert "10.0.0.11" in lines[1] and "worker" in lines[1]


def test_plan_prints_order_and_predecessors(topology: Path):
    result = runner.invoke(app, ["plan", str(topology)])
    assert result.exit_code == 0, result.output
    assert "4 node(s)" in result.output
    lines = [line.strip() for line in result.output.splitlines()[1:]]
    assert lines[0] == "1. cp-1/master-setup/init"
    assert lines[1] == "2. cp-1/network/calico  <- cp-1/master-setup/init"
    assert "wk-1/worker-setup/join  <- cp-1/network/calico" in lines[2]


def test_plan_with_skip_tags(topology: Path):
    result = runner.invoke(app, ["plan", str(topology), "--skip-tags", "cni"])
    assert result.exit_code == 0, result.output
    assert "network" not in result.output
    assert "wk-2/worker-setup/join  <- cp-1/master-setup/init" in result.output


def test_inventory_override_flag(topology: Path, tmp_path: Path):
    other = tmp_path / "other.ini"
    other.write_text("[worker]\nwk-9 ansible_host=10.0.0.99\n")
    result = runner.invoke(app, ["inventory", str(topology), "--inventory", str(other)])
    assert result.exit_code == 0, result.output
    assert "wk-9" in result.output and "wk-1" not in result.output


def test_dry_run_succeeds_and_writes_report(topology: Path, tmp_path: Path):
    report_path = tmp_path / "out" / "report.json"
    result = runner.invoke(app, ["run", str(topology), "--dry-run", "--report-json", str(report_path)])
    assert result.exit_code == 0, result.output
    assert "status=success" in result.output

    report = json.loads(report_path.read_text())
    assert report["status"] == "success"
    assert report["dry_run"] is True
    assert set(report["hosts"]) == {"cp-1", "wk-1", "wk-2"}
    assert report["counts"]["ok-unchanged"] == 4

    logs = tmp_path / "logs"
    assert list(logs.glob("*.jsonl"))
    assert list(logs.glob("kubeweave-*.log"))


def test_unknown_role_reference_exits_1(topology: Path):
    topology.write_text(topology.read_text().replace("depends_on: [network]", "depends_on: [calico]"))
    result = runner.invoke(app, ["run", str(topology), "--dry-run"])
    assert result.exit_code == 1
    assert "unknown role 'calico'" in result.output


def test_missing_topology_exits_1(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("KUBEWEAVE_LOG_DIR", str(tmp_path / "logs"))
    result = runner.invoke(app, ["plan", str(tmp_path / "missing.yaml")])
    assert result.exit_code == 1
    assert "Cannot read" in result.output
