from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from subprocess import PIPE
from typing import IO, Callable, Sequence

from .errors import CommandTimeout, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
# Grace period between SIGTERM and SIGKILL to the process group when a stream is cancelled.
TERMINATE_GRACE = 2.0
_POLL_INTERVAL = 0.05

LineHandler = Callable[[str], None]


@dataclass(slots=True)
class CommandResult:
    """Captured output of one finished command.

    A non-zero ``exit_code`` is not an error; callers render it.
    """

    stdout: str
    stderr: str
    exit_code: int
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def combined(self) -> str:
        if self.stderr:
            return self.stdout + "\n" + self.stderr
        return self.stdout

    def lines(self) -> list[str]:
        text = self.combined()
        if not text:
            return []
        return text.rstrip("\n").split("\n")


def run_command(
    argv: Sequence[str],
    cwd: Path | str | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
) -> CommandResult:
    """Run argv to completion and capture both streams as text.

    Raises CommandTimeout when the process outlives ``timeout`` (it is killed
    first) and TransportError when it cannot be launched at all.
    """
    argv = [str(a) for a in argv]
    logger.debug("run %s (cwd=%s, timeout=%s)", argv, cwd, timeout)
    start = time.monotonic()
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=PIPE,
            stderr=PIPE,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("timeout after %.1fs: %s", e.timeout, argv[0])
        raise CommandTimeout(argv, float(e.timeout)) from e
    except OSError as e:
        logger.warning("cannot launch %s: %s", argv[0], e)
        raise TransportError(f"cannot launch {argv[0]}: {e}") from e
    return CommandResult(
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
        exit_code=proc.returncode,
        duration=time.monotonic() - start,
    )


def _pump(stream: IO[str], on_line: LineHandler, cancel: threading.Event) -> None:
    # One reader per pipe keeps per-stream order; lines from stdout and stderr interleave.
    for raw in iter(stream.readline, ""):
        if cancel.is_set():
            break
        line = raw.rstrip("\r\n")
        try:
            on_line(line)
        except Exception:
            logger.exception("line handler failed")
    stream.close()


def stream_command(
    argv: Sequence[str],
    on_line: LineHandler,
    cancel: threading.Event,
    cwd: Path | str | None = None,
) -> int | None:
    """Run argv and feed every output line to ``on_line`` until exit or cancel.

    Returns the exit code, or None when the stream was cancelled. The command
    runs in its own process group; on cancel the whole group is terminated
    (then killed after a grace period) so helpers it spawned such as ssh or
    backgrounded jobs cannot hold the pipes open, and both reader threads are
    joined before returning.
    """
    argv = [str(a) for a in argv]
    logger.debug("stream %s (cwd=%s)", argv, cwd)
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=PIPE,
            stderr=PIPE,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning("cannot launch %s: %s", argv[0], e)
        raise TransportError(f"cannot launch {argv[0]}: {e}") from e

    readers = [
        threading.Thread(target=_pump, args=(pipe, on_line, cancel), daemon=True)
        for pipe in (proc.stdout, proc.stderr)
    ]
    for t in readers:
        t.start()

    cancelled = False
    while proc.poll() is None:
        if cancel.wait(_POLL_INTERVAL):
            cancelled = True
            _terminate(proc)
            break

    proc.wait()
    if cancelled:
        _join_or_kill(proc, readers)
        logger.debug("stream cancelled: %s", argv[0])
        return None
    for t in readers:
        t.join()
    return proc.returncode


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _terminate(proc: subprocess.Popen) -> None:
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        logger.warning("process %s ignored SIGTERM, killing its group", proc.pid)
        _signal_group(proc, signal.SIGKILL)


def _join_or_kill(proc: subprocess.Popen, readers: list[threading.Thread]) -> None:
    # Leftover group members still holding the pipes are killed outright.
    for t in readers:
        t.join(TERMINATE_GRACE)
    if any(t.is_alive() for t in readers):
        logger.warning("stream %s left children behind, killing its group", proc.pid)
        _signal_group(proc, signal.SIGKILL)
        for t in readers:
            t.join(TERMINATE_GRACE)
