from __future__ import annotations

import hashlib
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Any, Mapping, Optional

from ..config.models import ActionSpec
from ..core.errors import StepFailed, StepTimeout
from ..inventory.models import Host
from ..utils.execution import ExecutionContext
from .base import StepOutcome, UnsupportedAction, guard_reason, reports_change, template_context
from .templates import TemplateRenderer

log = logging.getLogger("kubeweave")


class LocalExecutor:
    """
    Runs actions on the controller itself, for hosts with
    ``connection: local`` (kubectl context stitching, kubeconfig merges).
    """

    def __init__(self, ctx: Optional[ExecutionContext] = None):
        self.ctx = ctx or ExecutionContext()
        self.renderer = TemplateRenderer(self.ctx.templates_dir)

    def _run(self, cmd: str, *, timeout: float, env: Optional[dict] = None, cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        log.debug("[local] $ %s", cmd)
        start = time.time()
        try:
            result = subprocess.run(
                ["bash", "-lc", cmd],
                capture_output=True,
                text=True,
                timeout=timeout,
                env={**os.environ, **env} if env else None,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired as e:
            raise StepTimeout(f"local command timed out after {timeout:g}s") from e

        duration = time.time() - start
        if result.stdout:
            log.debug("[local][stdout]\n%s", result.stdout.rstrip())
        if result.stderr:
            log.debug("[local][stderr]\n%s", result.stderr.rstrip())
        log.debug("[local][exit %d] (%.2fs)", result.returncode, duration)
        return result

    def _command(self, host: Host, params: Mapping[str, Any], timeout: float) -> StepOutcome:
        cmd = params.get("cmd")
        if not cmd:
            raise StepFailed("command action requires 'cmd'")
        cwd = str(params["chdir"]) if params.get("chdir") else None

        reason = guard_reason(params, lambda c: self._run(c, timeout=timeout, cwd=cwd).returncode)
        if reason:
            log.info("[%s] command skipped, %s", host.name, reason)
            return StepOutcome(changed=False)

        env = {k: str(v) for k, v in (params.get("env") or {}).items()}
        result = self._run(str(cmd), timeout=timeout, env=env, cwd=cwd)
        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip()[-500:]
            raise StepFailed(f"command exited {result.returncode}: {tail}", rc=result.returncode, stderr=result.stderr)
        return StepOutcome(changed=reports_change(params, result.stdout or ""))

    def _write_if_changed(self, host: Host, content: str, params: Mapping[str, Any]) -> StepOutcome:
        dest = params.get("dest")
        if not dest:
            raise StepFailed("file actions require 'dest'")
        path = Path(str(dest)).expanduser()
        want = hashlib.sha256(content.encode("utf-8")).hexdigest()
        if path.is_file() and hashlib.sha256(path.read_bytes()).hexdigest() == want:
            return StepOutcome(changed=False)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        path.chmod(int(str(params.get("mode", "0644")), 8))
        log.info("[%s] wrote %s", host.name, path)
        return StepOutcome(changed=True)

    def execute(self, host: Host, action: ActionSpec, timeout: float) -> StepOutcome:
        params = action.params
        if action.kind == "command":
            return self._command(host, params, timeout)
        if action.kind == "template":
            context = template_context(host, params)
            if params.get("src"):
                content = self.renderer.render(str(params["src"]), context)
            elif params.get("content") is not None:
                content = self.renderer.render_string(str(params["content"]), context)
            else:
                raise StepFailed("template action requires 'src' or 'content'")
            return self._write_if_changed(host, content, params)
        if action.kind == "copy":
            if params.get("content") is None:
                raise StepFailed("copy action requires 'content'")
            return self._write_if_changed(host, str(params["content"]), params)
        raise UnsupportedAction("local", action.kind)
