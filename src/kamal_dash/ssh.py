from __future__ import annotations

import getpass
import logging
import os
import re
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .commands import DEFAULT_TIMEOUT, CommandResult, LineHandler, run_command, stream_command
from .errors import TransportError

logger = logging.getLogger(__name__)

_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class RemoteHost:
    """A remote shell reached through the ssh client binary.

    Every call is one ``ssh ... target <command>`` process; connections to the
    same host are multiplexed through a ControlMaster socket.
    """

    host: str
    user: str = ""
    port: str = "22"
    ssh_bin: str = "ssh"
    timeout: float = DEFAULT_TIMEOUT
    control_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    @classmethod
    def parse(cls, spec: str, **kwargs) -> "RemoteHost":
        """Build from ``[user@]host[:port]``."""
        user = ""
        host = spec.strip()
        if not host:
            raise ValueError("empty host")
        if "@" in host:
            user, host = host.split("@", 1)
        port = "22"
        if ":" in host:
            host, port = host.split(":", 1)
            if not port.isdigit():
                raise ValueError(f"invalid port in {spec!r}")
        return cls(host=host, user=user, port=port, **kwargs)

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def display(self) -> str:
        return self.target

    def control_path(self) -> Path:
        return self.control_dir / f"kdash-ssh-{_SAFE_RE.sub('_', self.host)}"

    def ssh_args(self) -> list[str]:
        args = [
            self.ssh_bin,
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", "ConnectTimeout=10",
            "-o", "ControlMaster=auto",
            "-o", f"ControlPath={self.control_path()}",
            "-o", "ControlPersist=60",
        ]
        if self.port != "22":
            args += ["-p", self.port]
        args.append(self.target)
        return args

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        """Run one remote command to completion; exit 255 means ssh itself failed."""
        res = run_command(self.ssh_args() + [command], timeout=timeout or self.timeout)
        if res.exit_code == 255:
            detail = res.stderr.strip().splitlines()
            raise TransportError(f"ssh {self.target} failed: {detail[-1] if detail else 'exit 255'}")
        return res

    def stream(self, command: str, on_line: LineHandler, cancel: threading.Event) -> int | None:
        return stream_command(self.ssh_args() + [command], on_line, cancel)

    def test_connection(self) -> None:
        res = self.run("echo ok")
        if not res.ok or "ok" not in res.stdout:
            raise TransportError(f"ssh {self.target}: unexpected reply (exit {res.exit_code})")


def detect_user(host: str, ssh_bin: str = "ssh") -> str:
    """User ssh would log in as: ssh -G config, then $USER, then root."""
    try:
        out = subprocess.run(
            [ssh_bin, "-G", host], capture_output=True, text=True, timeout=5, check=False
        ).stdout
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("ssh -G %s failed: %s", host, e)
        out = ""
    for line in out.splitlines():
        if line.startswith("user "):
            return line[len("user "):].strip()
    user = os.environ.get("USER")
    if user:
        return user
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "root"
