# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeweave/executors/ssh.py
from __future__ import annotations

import hashlib
import itertools
import logging
import os
import shlex
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import paramiko

from ..config.models import ActionSpec
from ..core.errors import StepFailed, StepTimeout
from ..inventory.models import Host
from ..utils.execution import ExecutionContext
from ..utils.retry import retry
from .base import StepOutcome, UnsupportedAction, guard_reason, reports_change, template_context
from .templates import TemplateRenderer

log = logging.getLogger("kubeweave")

# simple counter for unique temp names
_counter = itertools.count(1)
_CHUNK = 32768


class SshExecutor:
    """
    Runs step actions over SSH with paramiko. One connection per host is
    cached for the whole run; the engine never runs two nodes of the same
    host at once, so a connection is never shared between threads.

    Action kinds:
      - command   cmd, sudo, env, chdir, creates/removes/unless guards, changed_when
      - template  src (under templates_dir) or content, dest, mode, owner, vars
      - copy      content, dest, mode, owner
    """

    def __init__(
        self,
        ctx: Optional[ExecutionContext] = None,
        *,
        connect_timeout: float = 15.0,
        connect_retries: int = 5,
        connect_delay: float = 5.0,
        poll_interval: float = 0.05,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.ctx = ctx or ExecutionContext()
        self.connect_timeout = connect_timeout
        self.connect_retries = connect_retries
        self.connect_delay = connect_delay
        self.poll_interval = poll_interval
        self.client_factory = client_factory
        self.renderer = TemplateRenderer(self.ctx.templates_dir)
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._lock = threading.Lock()

    # ------------------ connection & utils ------------------

    @staticmethod
    def _load_pkey(path: str) -> Optional[paramiko.PKey]:
        for key_cls in (
            paramiko.Ed25519Key,
            paramiko.RSAKey,
            paramiko.ECDSAKey,
        ):
            try:
                return key_cls.from_private_key_file(path)
            except paramiko.SSHException:
                continue
        raise StepFailed(f"Unsupported private key format for {path}")

    @retry(
        retries=lambda self, host: self.connect_retries,
        delay=lambda self, host: self.connect_delay,
        retry_on=(paramiko.SSHException, OSError),
        on_retry=lambda attempt, exc: log.info("SSH not ready (attempt %d): %s", attempt, exc),
    )
    def _connect(self, host: Host) -> paramiko.SSHClient:
        client = self.client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = self._load_pkey(str(host.pkey_path)) if host.pkey_path else None
        client.connect(
            hostname=host.address,
            port=host.port,
            username=host.username,
            password=host.password if not pkey else None,
            pkey=pkey,
            timeout=self.connect_timeout,
            allow_agent=pkey is None,
            look_for_keys=pkey is None,
        )
        log.debug("[%s] connected to %s:%d", host.name, host.address, host.port)
        return client

    def _client(self, host: Host) -> paramiko.SSHClient:
        with self._lock:
            client = self._clients.get(host.name)
        if client is not None:
            return client
        client = self._connect(host)
        with self._lock:
            self._clients[host.name] = client
        return client

    def _evict(self, host: Host) -> None:
        with self._lock:
            client = self._clients.pop(host.name, None)
        if client is not None:
            client.close()

    def close(self) -> None:
        with self._lock:
            clients, self._clients = list(self._clients.values()), {}
        for c in clients:
            c.close()

    def _q(self, s: str) -> str:
        """
        Quote for bash -lc.
        """
        return "'" + s.replace("'", "'\"'\"'") + "'"

    def _run(
        self,
        client: paramiko.SSHClient,
        host: Host,
        cmd: str,
        *,
        sudo: bool,
        timeout: float,
    ) -> Tuple[int, str, str]:
        """
        Run a shell command. With sudo, the host password (if any) is fed
        to sudo -S.
        """
        if sudo:
            wrapped = f"sudo -S -p '' bash -lc {self._q(cmd)}"
        else:
            wrapped = f"bash -lc {self._q(cmd)}"

        log.debug("[%s] $ %s", host.name, cmd)
        stdin, stdout, _ = client.exec_command(wrapped, timeout=timeout)
        if sudo and host.password:
            stdin.write(host.password + "\n")
            stdin.flush()
        out, err = self._drain(stdout.channel, host, timeout)
        rc = stdout.channel.recv_exit_status()
        log.debug("[%s] exit %d", host.name, rc)
        return rc, out, err

    def _drain(self, channel: paramiko.Channel, host: Host, timeout: float) -> Tuple[str, str]:
        """
        Read stdout and stderr together until the command exits, so neither
        stream fills the window while the other is read. The timeout is a
        deadline for the whole command, not per read.
        """
        out: list = []
        err: list = []
        deadline = time.monotonic() + timeout
        while not channel.exit_status_ready():
            got = self._read_ready(channel, out, err)
            if time.monotonic() > deadline:
                channel.close()
                raise StepTimeout(f"[{host.name}] command timed out after {timeout:g}s")
            if not got:
                time.sleep(self.poll_interval)
        # exit status arrives after the data, so whatever is left is buffered
        self._read_ready(channel, out, err)
        return (
            b"".join(out).decode("utf-8", errors="replace"),
            b"".join(err).decode("utf-8", errors="replace"),
        )

    @staticmethod
    def _read_ready(channel: paramiko.Channel, out: list, err: list) -> bool:
        got = False
        while channel.recv_ready():
            out.append(channel.recv(_CHUNK))
            got = True
        while channel.recv_stderr_ready():
            err.append(channel.recv_stderr(_CHUNK))
            got = True
        return got

    # ------------------ actions ------------------

    def _command(self, client, host: Host, params: Mapping[str, Any], timeout: float) -> StepOutcome:
        cmd = params.get("cmd")
        if not cmd:
            raise StepFailed("command action requires 'cmd'")
        sudo = bool(params.get("sudo", host.become))

        def check(c: str) -> int:
            return self._run(client, host, c, sudo=sudo, timeout=timeout)[0]

        reason = guard_reason(params, check)
        if reason:
            log.info("[%s] command skipped, %s", host.name, reason)
            return StepOutcome(changed=False)

        if params.get("chdir"):
            cmd = f"cd {shlex.quote(str(params['chdir']))} && {cmd}"
        env = params.get("env") or {}
        if env:
            exports = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in env.items())
            cmd = f"export {exports}; {cmd}"

        rc, out, err = self._run(client, host, cmd, sudo=sudo, timeout=timeout)
        if rc != 0:
            tail = (err or out).strip()[-500:]
            raise StepFailed(f"command exited {rc}: {tail}", rc=rc, stderr=err)
        return StepOutcome(changed=reports_change(params, out))

    def _put_if_changed(
        self,
        client,
        host: Host,
        content: str,
        params: Mapping[str, Any],
        timeout: float,
    ) -> StepOutcome:
        dest = params.get("dest")
        if not dest:
            raise StepFailed("file actions require 'dest'")
        mode = str(params.get("mode", "0644"))
        owner = params.get("owner")
        sudo = bool(params.get("sudo", host.become))
        qdest = shlex.quote(str(dest))

        want = hashlib.sha256(content.encode("utf-8")).hexdigest()
        _, have, _ = self._run(
            client, host, f"sha256sum {qdest} 2>/dev/null | cut -d' ' -f1", sudo=sudo, timeout=timeout,
        )
        if have.strip() == want:
            return StepOutcome(changed=False)

        tmp_remote = f"/tmp/.kubeweave_tmp_{os.getpid()}_{next(_counter)}"
        sftp = client.open_sftp()
        try:
            with sftp.file(tmp_remote, "w") as f:
                f.write(content)
        finally:
            sftp.close()

        chown = f" && chown {shlex.quote(str(owner))} {qdest}" if owner else ""
        cmd = (
            f"install -D -m {mode} {tmp_remote} {qdest}{chown}; "
            f"rc=$?; rm -f {tmp_remote}; exit $rc"
        )
        rc, out, err = self._run(client, host, cmd, sudo=sudo, timeout=timeout)
        if rc != 0:
            raise StepFailed(f"install {dest} exited {rc}: {(err or out).strip()[-500:]}", rc=rc, stderr=err)
        log.info("[%s] wrote %s", host.name, dest)
        return StepOutcome(changed=True)

    def _template(self, client, host: Host, params: Mapping[str, Any], timeout: float) -> StepOutcome:
        context = template_context(host, params)
        if params.get("src"):
            content = self.renderer.render(str(params["src"]), context)
        elif params.get("content") is not None:
            content = self.renderer.render_string(str(params["content"]), context)
        else:
            raise StepFailed("template action requires 'src' or 'content'")
        return self._put_if_changed(client, host, content, params, timeout)

    def _copy(self, client, host: Host, params: Mapping[str, Any], timeout: float) -> StepOutcome:
        if params.get("content") is None:
            raise StepFailed("copy action requires 'content'")
        return self._put_if_changed(client, host, str(params["content"]), params, timeout)

    # ------------------ public API ------------------

    def execute(self, host: Host, action: ActionSpec, timeout: float) -> StepOutcome:
        handlers = {
            "command": self._command,
            "template": self._template,
            "copy": self._copy,
        }
        handler = handlers.get(action.kind)
        if handler is None:
            raise UnsupportedAction("ssh", action.kind)

        client = self._client(host)
        try:
            return handler(client, host, action.params, timeout)
        except (paramiko.SSHException, OSError):
            # broken transport; reconnect on the next node for this host
            self._evict(host)
            raise
