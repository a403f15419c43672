"""Screen/selection state machine driven by key names.

A session never touches the terminal. The Textual app feeds it key names,
reads its display helpers on every poll and calls :meth:`Session.tick` so
results prepared by background threads are applied on the event loop.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from ..config import SessionDestination, Settings, find_deploy_configs, secrets_path
from ..discovery import Application, ContainerEntry, app_version, container_entries, count_running, discover_apps
from ..editor import ensure_secrets_file
from ..errors import KamalDashError, UnsafePathError
from ..kamal import KamalRunner, RunOptions
from ..security import validate_path
from ..ssh import RemoteHost
from ..util import format_duration, tail_lines, truncate
from .actions import (
    CONTAINER_ACTIONS,
    PROJECT_MENUS,
    SERVER_MENUS,
    Action,
    ActionKind,
    Menu,
    ServerContext,
)
from .logbuffer import LogBuffer
from .models import ConfirmOverlay, Screen, ScreenState, clamp
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

SCROLL_STEP = 5
STATUS_POLL_INTERVAL = 4.0

QUIT_KEYS = ("q", "ctrl+c")
BACK_KEYS = ("escape", "b")

HELP_LINES = [
    "Navigation",
    "  up/down     move selection",
    "  enter       open / run",
    "  esc, b      back (stops a live stream)",
    "",
    "Log",
    "  j / k       scroll down / up",
    "  c           clear",
    "",
    "  r           refresh",
    "  ?           toggle this help",
    "  q, ctrl+c   quit",
]


@dataclass(frozen=True, slots=True)
class MenuLine:
    text: str
    selected: bool = False
    destructive: bool = False
    # True/False render a running/stopped dot; None renders nothing.
    ok: bool | None = None
    hint: str = ""


class Session(ABC):
    """Shared key handling, scrolling, confirmation and dispatch."""

    root: Screen

    def __init__(self, settings: Settings | None = None, refresh: Callable[[], None] | None = None) -> None:
        self.settings = settings or Settings()
        self._notify = refresh or (lambda: None)
        self.log = LogBuffer(self.settings.log_cap)
        self.supervisor = Supervisor(self.log, self._notify)
        self.state = ScreenState(self.root)
        self.confirm: ConfirmOverlay | None = None
        self.help = False
        self.quit_requested = False
        # Rows in the log pane; the app keeps it current.
        self.log_height = 20
        self.pending_edit: Path | None = None

    def set_refresh(self, refresh: Callable[[], None]) -> None:
        self._notify = refresh
        self.supervisor.set_refresh(refresh)

    # --- keys ---------------------------------------------------------------

    def handle_key(self, key: str) -> None:
        if self.confirm is not None:
            self._confirm_key(key)
            return
        if self.help:
            if key in QUIT_KEYS:
                self.quit()
            elif key in ("?", "enter") or key in BACK_KEYS:
                self.help = False
            return
        if key in QUIT_KEYS:
            self.quit()
        elif self._extra_key(key):
            pass
        elif key == "?":
            self.help = True
        elif key == "up":
            self.move(-1)
        elif key == "down":
            self.move(1)
        elif key == "enter":
            self.enter()
        elif key in BACK_KEYS:
            self.back()
        elif key == "j":
            self.scroll(SCROLL_STEP)
        elif key == "k":
            self.scroll(-SCROLL_STEP)
        elif key == "c":
            self.log.clear()
        elif key == "r":
            self.refresh()

    def _confirm_key(self, key: str) -> None:
        overlay = self.confirm
        assert overlay is not None
        if key in ("left", "h"):
            overlay.left()
            return
        if key in ("right", "l"):
            overlay.right()
            return
        if key == "tab":
            overlay.toggle()
            return
        if key not in ("y", "n", "enter", "escape", "q"):
            return
        self.confirm = None
        if key == "y":
            overlay.accept()
        elif key == "enter":
            overlay.submit()
        else:
            overlay.cancel()

    def _extra_key(self, key: str) -> bool:
        return False

    # --- navigation ---------------------------------------------------------

    def item_count(self) -> int:
        menu = self.current_menu()
        return len(menu) if menu is not None else 0

    def current_menu(self) -> Menu | None:
        return None

    def _index(self) -> int:
        if self.state.screen is self.root:
            return self.state.selected
        if self.state.screen is Screen.CONTAINERS:
            return self.state.container
        return self.state.submenu

    def _set_index(self, value: int) -> None:
        if self.state.screen is self.root:
            self.state.selected = value
        elif self.state.screen is Screen.CONTAINERS:
            self.state.container = value
        else:
            self.state.submenu = value

    def move(self, delta: int) -> None:
        self._set_index(clamp(self._index() + delta, self.item_count()))

    def open(self, screen: Screen) -> None:
        # A live stream belongs to the screen that started it.
        self.supervisor.cancel()
        self.state.push(screen)

    def back(self) -> None:
        self.supervisor.cancel()
        self.state.pop()

    def enter(self) -> None:
        if self.state.screen is self.root:
            self._enter_root()
            return
        menu = self.current_menu()
        if menu is None:
            self._enter_other()
            return
        action = menu.get(self.state.submenu)
        if action is not None:
            self.activate(action, menu.operation_label(action))

    @abstractmethod
    def _enter_root(self) -> None:
        ...

    def _enter_other(self) -> None:
        pass

    def activate(self, action: Action, label: str) -> None:
        if action.kind is ActionKind.BACK:
            self.back()
        elif action.kind is ActionKind.NAV:
            assert isinstance(action.target, Screen)
            self.open(action.target)
        elif action.kind is ActionKind.EDIT:
            self._edit(action)
        else:
            self.dispatch(label, action, self._context())

    @abstractmethod
    def _context(self) -> Any:
        ...

    def _edit(self, action: Action) -> None:
        pass

    # --- dispatch -----------------------------------------------------------

    def _reject_if_running(self, label: str) -> bool:
        if self.supervisor.running:
            logger.info("ignored %s: an operation is already running", label)
            return True
        return False

    def dispatch(self, label: str, action: Action, ctx: Any) -> bool:
        """Run ``action`` now, or open a confirmation first when it is destructive."""
        if action.kind is ActionKind.RUN and self._reject_if_running(label):
            return False
        if action.destructive:
            self.confirm = ConfirmOverlay(
                title=f"Confirm {label}",
                message=action.confirm_text,
                on_accept=lambda: self._submit(label, action, ctx),
                on_decline=lambda: self.supervisor.log_info(f"{label} cancelled"),
            )
            return True
        return self._submit(label, action, ctx)

    def _submit(self, label: str, action: Action, ctx: Any) -> bool:
        if action.kind is ActionKind.RUN and self._reject_if_running(label):
            return False
        assert action.build is not None
        try:
            op = action.build(ctx)
        except (KamalDashError, ValueError) as e:
            self.supervisor.log_error(f"{label}: {e}")
            return False
        if action.kind is ActionKind.STREAM:
            self.supervisor.run_streaming(label, op)
        else:
            self.supervisor.run_operation(label, op)
        return True

    # --- log ----------------------------------------------------------------

    def scroll(self, delta: int) -> None:
        """Move the log view; reaching the bottom re-enables follow mode."""
        total = len(self.log)
        bottom = max(0, total - self.log_height)
        top = min(self.log.scroll, bottom)
        new = top + delta
        if new >= bottom:
            self.log.follow = True
            self.log.set_scroll(total)
        else:
            self.log.follow = False
            self.log.set_scroll(max(0, new))

    # --- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Start background helpers once the UI is up."""

    def refresh(self) -> None:
        pass

    def tick(self) -> None:
        """Apply results prepared by background threads (event loop only)."""

    def quit(self) -> None:
        self.quit_requested = True
        self.close()

    def close(self) -> None:
        self.supervisor.cancel(quiet=True)

    def take_edit(self) -> Path | None:
        path, self.pending_edit = self.pending_edit, None
        return path

    def edit_finished(self, path: Path, exit_code: int) -> None:
        if exit_code == 0:
            self.supervisor.log_success(f"Edited {path}")
            self.supervisor.log_info("Use Redeploy or App restart to apply the change.")
        else:
            self.supervisor.log_error(f"Editor exited with status {exit_code}: {path}")

    def edit_unavailable(self, path: Path, reason: str) -> None:
        self.supervisor.log_warning(reason)
        self.log.append(["Edit the file elsewhere, then use Redeploy or App restart:", f"  {path}"])

    # --- display ------------------------------------------------------------

    def title(self) -> str:
        return "kdash"

    def activity(self) -> str:
        st = self.supervisor.status()
        if not st.busy:
            return ""
        verb = "Running" if st.running else "Streaming"
        return f"{verb}: {st.label} ({format_duration(st.elapsed)})"

    def _crumb(self, screen: Screen) -> str:
        return screen.value.replace("_", " ").title()

    def breadcrumb(self) -> str:
        return " > ".join(self._crumb(s) for s in self.state.trail)

    def menu_title(self) -> str:
        return self._crumb(self.state.screen)

    def menu_lines(self) -> list[MenuLine]:
        menu = self.current_menu()
        if menu is None:
            return []
        return [
            MenuLine(a.label, i == self.state.submenu, a.destructive)
            for i, a in enumerate(menu.actions)
        ]

    def status_lines(self) -> list[str]:
        return []

    def help_lines(self) -> list[str]:
        return list(HELP_LINES)


class ServerSession(Session):
    """Operates the containers found on one host over ssh."""

    root = Screen.APPS

    def __init__(
        self,
        remote: RemoteHost,
        settings: Settings | None = None,
        refresh: Callable[[], None] | None = None,
        apps: Iterable[Application] | None = None,
    ) -> None:
        super().__init__(settings, refresh)
        self.remote = remote
        self.apps: list[Application] = list(apps or [])
        self._pending: list[Application] | None = None
        self._pending_lock = threading.Lock()
        self._refresh_thread: threading.Thread | None = None

    def discover(self) -> None:
        """Synchronous discovery, used before the UI starts."""
        self.apply_apps(discover_apps(self.remote))

    def app(self) -> Application | None:
        if 0 <= self.state.selected < len(self.apps):
            return self.apps[self.state.selected]
        return None

    def item_count(self) -> int:
        if self.state.screen is Screen.APPS:
            return len(self.apps)
        if self.state.screen is Screen.CONTAINERS:
            return len(self.state.containers)
        return super().item_count()

    def current_menu(self) -> Menu | None:
        return SERVER_MENUS.get(self.state.screen)

    def _enter_root(self) -> None:
        if self.apps:
            self.open(Screen.APP_MENU)

    def _enter_other(self) -> None:
        if self.state.screen is Screen.CONTAINERS:
            self.container_action("l")

    def open(self, screen: Screen) -> None:
        super().open(screen)
        if screen is Screen.CONTAINERS:
            self.rebuild_containers()

    def _context(self, entry: ContainerEntry | None = None) -> ServerContext:
        app = self.app()
        assert app is not None
        return ServerContext(self.remote, app, self.supervisor, entry)

    def rebuild_containers(self) -> None:
        self.state.containers = container_entries(self.app())
        self.state.container = clamp(self.state.container, len(self.state.containers))

    def selected_entry(self) -> ContainerEntry | None:
        if 0 <= self.state.container < len(self.state.containers):
            return self.state.containers[self.state.container]
        return None

    def _extra_key(self, key: str) -> bool:
        if self.state.screen is Screen.CONTAINERS and key in CONTAINER_ACTIONS:
            self.container_action(key)
            return True
        return False

    def container_action(self, key: str) -> None:
        entry = self.selected_entry()
        if entry is None:
            return
        action = CONTAINER_ACTIONS[key]
        self.dispatch(f"{action.label} {entry.record.name}", action, self._context(entry))

    def refresh(self) -> None:
        """Re-run discovery on a background thread; :meth:`tick` applies the result."""
        if self._refresh_thread is not None and self._refresh_thread.is_alive():
            logger.info("refresh already in progress")
            return
        self.supervisor.log_info("Refreshing apps...")
        self._refresh_thread = threading.Thread(target=self._refresh_worker, name="refresh", daemon=True)
        self._refresh_thread.start()

    def _refresh_worker(self) -> None:
        try:
            apps = discover_apps(self.remote)
        except KamalDashError as e:
            self.supervisor.log_error(f"Failed to refresh: {e}")
        except Exception as e:
            logger.exception("refresh crashed")
            self.supervisor.log_error(f"Failed to refresh: {e}")
        else:
            with self._pending_lock:
                self._pending = apps
            self.supervisor.log_success(f"Found {len(apps)} app(s)")
        finally:
            self._notify()

    def tick(self) -> None:
        with self._pending_lock:
            pending, self._pending = self._pending, None
        if pending is not None:
            self.apply_apps(pending)

    def apply_apps(self, apps: list[Application]) -> None:
        self.apps = apps
        self.state.selected = clamp(self.state.selected, len(apps))
        if not apps and self.state.screen is not Screen.APPS:
            self.supervisor.cancel()
            self.state.reset(Screen.APPS)
        elif self.state.screen is Screen.CONTAINERS:
            self.rebuild_containers()

    # --- display ------------------------------------------------------------

    def title(self) -> str:
        return f"kdash  {self.remote.display()}"

    def _crumb(self, screen: Screen) -> str:
        if screen is Screen.APPS:
            return "Apps"
        if screen is Screen.APP_MENU:
            app = self.app()
            return app.label if app else "App"
        if screen is Screen.APP_ACTIONS:
            return "Actions"
        if screen is Screen.PROXY_MENU:
            return "Proxy"
        return super()._crumb(screen)

    def menu_title(self) -> str:
        app = self.app()
        if self.state.screen is Screen.CONTAINERS and app is not None:
            return f"{app.service} - Select Container"
        return self._crumb(self.state.screen)

    def menu_lines(self) -> list[MenuLine]:
        if self.state.screen is Screen.APPS:
            return [
                MenuLine(
                    app.label,
                    i == self.state.selected,
                    ok=count_running(app.records) > 0,
                    hint=f"{count_running(app.records)}/{len(app.records)}",
                )
                for i, app in enumerate(self.apps)
            ]
        if self.state.screen is Screen.CONTAINERS:
            return [
                MenuLine(truncate(e.record.name, 25), i == self.state.container,
                         ok=e.record.running, hint=f"[{e.role}]")
                for i, e in enumerate(self.state.containers)
            ]
        return super().menu_lines()

    def status_lines(self) -> list[str]:
        app = self.app()
        if app is None:
            return ["No Kamal apps found on this host." if not self.apps else "Select an app to view details"]
        running = count_running(app.records)
        lines = [
            f"Service: {app.service}",
            f"Destination: {app.destination}",
            f"Version: {app_version(app.records)}",
            f"Proxy: {app.proxy_status or 'unknown'}",
            "",
            f"Containers: {running}/{len(app.records)} running",
        ]
        for rec in app.records:
            lines.append(f"  {'●' if rec.running else '○'} {truncate(rec.name, 30)} ({rec.state})")
        if app.accessories:
            lines += ["", "Accessories:"]
            for acc in app.accessories:
                dot = "●" if count_running(acc.records) else "○"
                lines.append(f"  {dot} {acc.name} ({len(acc.records)} container(s))")
        return lines

    def help_lines(self) -> list[str]:
        return super().help_lines() + [
            "",
            "Container list",
            "  enter, l    stream logs",
            "  r           restart",
            "  s / S       stop / start",
        ]


class ProjectSession(Session):
    """Runs the deploy CLI locally against the destinations of one project."""

    root = Screen.DESTINATIONS

    def __init__(
        self,
        project_dir: Path | str,
        settings: Settings | None = None,
        refresh: Callable[[], None] | None = None,
        destinations: Iterable[SessionDestination] | None = None,
        poll_interval: float = STATUS_POLL_INTERVAL,
    ) -> None:
        super().__init__(settings, refresh)
        self.project_dir = Path(project_dir)
        if destinations is None:
            destinations = find_deploy_configs(self.project_dir)
        self.destinations: list[SessionDestination] = list(destinations)
        self.poll_interval = poll_interval
        self._status_lock = threading.Lock()
        self._status: list[str] = ["Loading status..."]
        self._status_target: SessionDestination | None = self.destination()
        self._poll_stop = threading.Event()
        self._poll_wake = threading.Event()
        self._poller: threading.Thread | None = None

    def destination(self) -> SessionDestination | None:
        if 0 <= self.state.selected < len(self.destinations):
            return self.destinations[self.state.selected]
        return None

    def runner(self, dest: SessionDestination | None = None, timeout: float | None = None) -> KamalRunner:
        dest = dest if dest is not None else self.destination()
        return KamalRunner(RunOptions.for_destination(self.project_dir, dest), self.settings.kamal_bin, timeout)

    def item_count(self) -> int:
        if self.state.screen is Screen.DESTINATIONS:
            return len(self.destinations)
        return super().item_count()

    def current_menu(self) -> Menu | None:
        return PROJECT_MENUS.get(self.state.screen)

    def _enter_root(self) -> None:
        # Without any deploy config the CLI still runs with its own defaults.
        self.open(Screen.MAIN_MENU)

    def _context(self) -> KamalRunner:
        return self.runner()

    def _extra_key(self, key: str) -> bool:
        if key == "m" and self.state.screen is not Screen.DESTINATIONS:
            self.supervisor.cancel()
            self.state.reset(Screen.DESTINATIONS)
            self.open(Screen.MAIN_MENU)
            return True
        return False

    def _edit(self, action: Action) -> None:
        if self._reject_if_running(action.label):
            return
        dest = self.destination()
        try:
            if action.target == "secrets":
                path = ensure_secrets_file(self.project_dir, secrets_path(self.project_dir, dest))
            else:
                target = dest.config_path if dest else self.project_dir / "config" / "deploy.yml"
                path = validate_path(self.project_dir, target)
                if not path.is_file():
                    self.supervisor.log_error(f"Config not found: {path}")
                    return
        except UnsafePathError as e:
            self.supervisor.log_error(f"Security: {e}")
            return
        except OSError as e:
            self.supervisor.log_error(f"Could not prepare file for editing: {e}")
            return
        self.pending_edit = path

    def refresh(self) -> None:
        self.destinations = find_deploy_configs(self.project_dir)
        self.state.selected = clamp(self.state.selected, len(self.destinations))
        self.supervisor.log_info("Refreshed destinations and status.")
        self.tick()
        self._poll_wake.set()

    def tick(self) -> None:
        dest = self.destination()
        with self._status_lock:
            changed = dest is not self._status_target
            self._status_target = dest
        if changed:
            self._poll_wake.set()

    # --- live status --------------------------------------------------------

    def start(self) -> None:
        if self._poller is not None:
            return
        self._poller = threading.Thread(target=self._poll_loop, name="status-poll", daemon=True)
        self._poller.start()

    def _poll_loop(self) -> None:
        while not self._poll_stop.is_set():
            try:
                self.poll_status()
            except Exception:
                logger.exception("status poll failed")
            self._poll_wake.wait(self.poll_interval)
            self._poll_wake.clear()

    def poll_status(self) -> None:
        with self._status_lock:
            dest = self._status_target
        lines = self.build_status(dest)
        with self._status_lock:
            if dest is self._status_target:
                self._status = lines
        self._notify()

    def build_status(self, dest: SessionDestination | None) -> list[str]:
        if dest is None:
            return ["No app selected.", "Select a destination for live status."]
        runner = self.runner(dest, timeout=self.settings.timeout)
        lines = [f"App: {dest.label}", ""]
        try:
            lines += ["Version:", *tail_lines(runner.run("app", "version").combined(), 2), ""]
        except KamalDashError as e:
            logger.debug("status version failed: %s", e)
            lines += ["Version: (error)", ""]
        try:
            lines += ["Containers:", *tail_lines(runner.run("app", "containers").combined(), 8)]
        except KamalDashError as e:
            logger.debug("status containers failed: %s", e)
            lines.append("Containers: (error)")
        return lines

    def close(self) -> None:
        super().close()
        self._poll_stop.set()
        self._poll_wake.set()
        if self._poller is not None:
            self._poller.join(timeout=1.0)

    # --- display ------------------------------------------------------------

    def title(self) -> str:
        return f"kdash  {self.project_dir}"

    def _crumb(self, screen: Screen) -> str:
        if screen is Screen.DESTINATIONS:
            return "Apps"
        if screen is Screen.MAIN_MENU:
            dest = self.destination()
            return dest.label if dest else "Menu"
        menu = PROJECT_MENUS.get(screen)
        return menu.title if menu else super()._crumb(screen)

    def menu_lines(self) -> list[MenuLine]:
        if self.state.screen is Screen.DESTINATIONS:
            return [
                MenuLine(d.label, i == self.state.selected, hint=d.config_path.name)
                for i, d in enumerate(self.destinations)
            ]
        return super().menu_lines()

    def status_lines(self) -> list[str]:
        if not self.destinations and self.state.screen is Screen.DESTINATIONS:
            return [f"No config/deploy*.yml under {self.project_dir}", "Enter opens the menu with CLI defaults."]
        with self._status_lock:
            return list(self._status)

    def help_lines(self) -> list[str]:
        return super().help_lines() + ["  m           jump to main menu"]
