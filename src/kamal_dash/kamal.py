from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Sequence

from .commands import CommandResult, LineHandler, run_command, stream_command
from .config import DEFAULT_DESTINATION, SessionDestination


@dataclass(frozen=True, slots=True)
class RunOptions:
    """Global options passed before every deploy CLI subcommand."""

    cwd: Path
    config_file: str = ""
    destination: str = ""
    primary: bool = False
    hosts: str = ""
    roles: str = ""
    version: str = ""
    skip_hooks: bool = False
    verbose: bool = False
    quiet: bool = False

    @classmethod
    def for_destination(cls, cwd: Path | str, dest: SessionDestination | None) -> "RunOptions":
        opts = cls(cwd=Path(cwd))
        if dest is not None:
            opts = replace(opts, config_file=str(dest.config_path))
            if dest.name and dest.name != DEFAULT_DESTINATION:
                opts = replace(opts, destination=dest.name)
        return opts


def global_args(opts: RunOptions) -> list[str]:
    args: list[str] = []
    if opts.config_file:
        args += ["--config-file", opts.config_file]
    if opts.destination and opts.destination != DEFAULT_DESTINATION:
        args += ["--destination", opts.destination]
    if opts.primary:
        args.append("--primary")
    if opts.hosts:
        args += ["--hosts", opts.hosts]
    if opts.roles:
        args += ["--roles", opts.roles]
    if opts.version:
        args += ["--version", opts.version]
    if opts.skip_hooks:
        args.append("--skip-hooks")
    if opts.verbose:
        args.append("--verbose")
    if opts.quiet:
        args.append("--quiet")
    return args


@dataclass(slots=True)
class KamalRunner:
    """Runs the local deploy CLI for one destination.

    Deploys routinely outlast any fixed bound, so ``timeout`` is None unless
    configured.
    """

    opts: RunOptions
    kamal_bin: str = "kamal"
    timeout: float | None = None

    def argv(self, subcommand: Sequence[str]) -> list[str]:
        return [self.kamal_bin, *global_args(self.opts), *subcommand]

    def run(self, *subcommand: str) -> CommandResult:
        return run_command(self.argv(subcommand), cwd=self.opts.cwd, timeout=self.timeout)

    def stream(self, subcommand: Sequence[str], on_line: LineHandler, cancel: threading.Event) -> int | None:
        return stream_command(self.argv(subcommand), on_line, cancel, cwd=self.opts.cwd)
