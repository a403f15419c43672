from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from ..commands import CommandResult, LineHandler
from ..errors import CommandTimeout, KamalDashError
from ..util import Status, format_duration, status_line
from .logbuffer import LogBuffer

logger = logging.getLogger(__name__)

REFRESH_INTERVAL = 0.08

Operation = Callable[[], "CommandResult | None"]
StreamOperation = Callable[[LineHandler, threading.Event], "int | None"]


class Throttle:
    """Call ``callback`` at most once per ``interval`` seconds; extra calls are dropped."""

    def __init__(self, callback: Callable[[], None], interval: float = REFRESH_INTERVAL,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._callback = callback
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last: float | None = None

    def __call__(self) -> bool:
        now = self._clock()
        with self._lock:
            if self._last is not None and now - self._last < self.interval:
                return False
            self._last = now
        self._callback()
        return True


@dataclass(frozen=True, slots=True)
class SupervisorStatus:
    running: bool
    streaming: bool
    label: str
    started_at: float | None
    elapsed: float

    @property
    def busy(self) -> bool:
        return self.running or self.streaming


class Supervisor:
    """Runs operations on short-lived worker threads and tracks what is active.

    Blocking operations go through :meth:`run_operation`; live streams through
    :meth:`run_streaming`. Only the latest label is displayed; older workers
    still run to completion but never clear state that a newer one owns.
    """

    def __init__(self, log: LogBuffer, refresh: Callable[[], None] | None = None,
                 clock: Callable[[], float] = time.monotonic,
                 refresh_interval: float = REFRESH_INTERVAL) -> None:
        self.log = log
        self._clock = clock
        self._refresh_interval = refresh_interval
        self.set_refresh(refresh)
        self._lock = threading.Lock()
        self._running = False
        self._streaming = False
        self._label = ""
        self._started_at: float | None = None
        self._cancel: threading.Event | None = None
        self._run_gen = 0
        self._stream_gen = 0
        self._workers: list[threading.Thread] = []

    def set_refresh(self, refresh: Callable[[], None] | None) -> None:
        self._refresh = refresh or (lambda: None)
        self._throttled_refresh = Throttle(self._refresh, self._refresh_interval, self._clock)

    def status(self) -> SupervisorStatus:
        with self._lock:
            started = self._started_at
            elapsed = self._clock() - started if started is not None else 0.0
            return SupervisorStatus(self._running, self._streaming, self._label, started, elapsed)

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def streaming(self) -> bool:
        with self._lock:
            return self._streaming

    def log_line(self, status: Status, message: str) -> None:
        self.log.append([status_line(status, message)])

    def log_success(self, message: str) -> None:
        self.log_line("success", message)

    def log_error(self, message: str) -> None:
        self.log_line("error", message)

    def log_info(self, message: str) -> None:
        self.log_line("info", message)

    def log_warning(self, message: str) -> None:
        self.log_line("warning", message)

    def _spawn(self, target: Callable[..., None], name: str, *args) -> threading.Thread:
        t = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(t)
        t.start()
        return t

    def run_operation(self, label: str, fn: Operation) -> threading.Thread:
        with self._lock:
            self._run_gen += 1
            gen = self._run_gen
            self._running = True
            self._label = label
            self._started_at = self._clock()
            started = self._started_at
        logger.info("operation start: %s", label)
        self.log_info(f"Running: {label}")
        self._refresh()
        return self._spawn(self._operation_worker, f"op-{gen}", label, fn, gen, started)

    def _operation_worker(self, label: str, fn: Operation, gen: int, started: float) -> None:
        try:
            result = fn()
            duration = self._clock() - started
            if isinstance(result, CommandResult):
                self.log.append(result.lines())
                if result.ok:
                    self.log_success(f"{label} completed in {format_duration(duration)}")
                else:
                    self.log_error(f"{label} failed (exit {result.exit_code}) in {format_duration(duration)}")
            else:
                self.log_success(f"{label} completed in {format_duration(duration)}")
        except CommandTimeout as e:
            logger.warning("operation timed out: %s", label)
            self.log_error(f"{label} timed out after {format_duration(e.timeout)} (no response)")
        except KamalDashError as e:
            logger.warning("operation failed: %s: %s", label, e)
            self.log_error(f"{label} failed: {e}")
        except Exception as e:
            logger.exception("operation crashed: %s", label)
            self.log_error(f"{label} failed: {e}")
        finally:
            with self._lock:
                if self._run_gen == gen:
                    self._running = False
                    if not self._streaming:
                        self._label = ""
                        self._started_at = None
            logger.info("operation finished: %s", label)
            self._refresh()

    def run_streaming(self, label: str, stream_fn: StreamOperation,
                      cancel: threading.Event | None = None) -> threading.Thread:
        """Start a live stream, replacing (and cancelling) any stream already active."""
        self.cancel(quiet=True)
        cancel = cancel or threading.Event()
        with self._lock:
            self._stream_gen += 1
            gen = self._stream_gen
            self._streaming = True
            self._cancel = cancel
            self._label = label
            self._started_at = self._clock()
        logger.info("stream start: %s", label)
        self.log_info(f"Streaming: {label} (Esc to stop)")
        self._refresh()
        return self._spawn(self._stream_worker, f"stream-{gen}", label, stream_fn, cancel, gen)

    def _on_line(self, line: str) -> None:
        self.log.append([line])
        self._throttled_refresh()

    def _stream_worker(self, label: str, stream_fn: StreamOperation,
                       cancel: threading.Event, gen: int) -> None:
        try:
            rc = stream_fn(self._on_line, cancel)
            if rc is None or cancel.is_set():
                self.log_info(f"{label} stopped")
            elif rc == 0:
                self.log_info(f"{label} ended")
            else:
                self.log_error(f"{label} ended (exit {rc})")
        except KamalDashError as e:
            logger.warning("stream failed: %s: %s", label, e)
            self.log_error(f"{label} ended: {e}")
        except Exception as e:
            logger.exception("stream crashed: %s", label)
            self.log_error(f"{label} ended: {e}")
        finally:
            with self._lock:
                if self._stream_gen == gen:
                    self._streaming = False
                    self._cancel = None
                    if not self._running:
                        self._label = ""
                        self._started_at = None
            logger.info("stream finished: %s", label)
            self._refresh()

    def cancel(self, quiet: bool = False) -> bool:
        """Signal the active stream to stop. Returns False when nothing was streaming."""
        with self._lock:
            ev = self._cancel
            if not self._streaming or ev is None:
                return False
            self._cancel = None
            self._streaming = False
            self._stream_gen += 1
            if not self._running:
                self._label = ""
                self._started_at = None
        ev.set()
        logger.info("stream cancel requested")
        if not quiet:
            self.log_info("Stopping live stream...")
        self._refresh()
        return True

    def join(self, timeout: float | None = None) -> None:
        """Wait for every worker started so far (shutdown and tests)."""
        with self._lock:
            workers = list(self._workers)
        deadline = None if timeout is None else self._clock() + timeout
        for w in workers:
            remaining = None if deadline is None else max(0.0, deadline - self._clock())
            w.join(remaining)
