from __future__ import annotations

import logging
import subprocess
import threading
from pathlib import Path

from rich.text import Text
from textual.app import App, ComposeResult, SuspendNotSupported
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.widgets import Footer, Label, Static

from ..editor import find_editor
from .models import YES
from .session import MenuLine, Session

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
SPINNER = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


def _menu_text(lines: list[MenuLine]) -> Text:
    out = Text()
    for ln in lines:
        out.append("▶ " if ln.selected else "  ", style="bold cyan")
        if ln.ok is not None:
            out.append("● ", style="green" if ln.ok else "red")
        style = "red" if ln.destructive else ""
        if ln.selected:
            style = f"{style} bold".strip()
        out.append(ln.text, style=style)
        if ln.hint:
            out.append(f" {ln.hint}", style="dim")
        out.append("\n")
    return out


def _log_text(lines: list[str]) -> Text:
    out = Text()
    for ln in lines:
        # "HH:MM:SS <icon> message"; color by status icon.
        body = ln[9:] if len(ln) > 9 and ln[2] == ":" else ln
        style = ""
        if body.startswith("✓"):
            style = "green"
        elif body.startswith("✗"):
            style = "red"
        elif body.startswith("⚠"):
            style = "yellow"
        elif body.startswith("ℹ"):
            style = "cyan"
        out.append(ln + "\n", style=style)
    return out


class KamalDashApp(App):
    CSS_PATH = Path(__file__).with_name("app.tcss")
    TITLE = "kdash"
    BINDINGS = [
        Binding("up", "press('up')", "Up", show=False),
        Binding("down", "press('down')", "Down", show=False),
        Binding("left", "press('left')", show=False),
        Binding("right", "press('right')", show=False),
        Binding("tab", "press('tab')", show=False, priority=True),
        Binding("enter", "press('enter')", "Select"),
        Binding("escape", "press('escape')", "Back"),
        Binding("b", "press('b')", show=False),
        Binding("h", "press('h')", show=False),
        Binding("l", "press('l')", show=False),
        Binding("s", "press('s')", show=False),
        Binding("S", "press('S')", show=False),
        Binding("y", "press('y')", show=False),
        Binding("n", "press('n')", show=False),
        Binding("m", "press('m')", show=False),
        Binding("j", "press('j')", "Scroll down"),
        Binding("k", "press('k')", "Scroll up"),
        Binding("c", "press('c')", "Clear"),
        Binding("r", "press('r')", "Refresh"),
        Binding("question_mark", "press('?')", "Help"),
        Binding("q", "press('q')", "Quit"),
        Binding("ctrl+c", "press('ctrl+c')", "Quit", show=False, priority=True),
    ]

    def __init__(self, session: Session) -> None:
        super().__init__()
        self.session = session
        self._ui_thread: int | None = None
        self._frame = 0

    def compose(self) -> ComposeResult:
        with Container(id="header"):
            with Horizontal():
                yield Label("kdash", id="title")
                yield Label("", id="activity")
            yield Label("", id="breadcrumb")
        with Horizontal(id="body"):
            with Container(id="content-left"):
                yield Static("", id="menu")
            with Container(id="content-right"):
                yield Static("", id="status")
                yield Static("", id="log")
        with Container(id="overlay-wrap"):
            yield Static("", id="overlay")
        yield Footer()

    def on_mount(self) -> None:
        self._ui_thread = threading.get_ident()
        self.query_one("#overlay-wrap").display = False
        self.session.start()
        self.set_interval(POLL_INTERVAL, self._tick)
        self._render()

    def on_unmount(self) -> None:
        self.session.close()

    def nudge(self) -> None:
        """Redraw request; safe from worker threads."""
        if self._ui_thread is None:
            return
        if threading.get_ident() == self._ui_thread:
            self._render()
            return
        try:
            self.call_from_thread(self._render)
        except RuntimeError:
            # App already shutting down.
            pass

    def action_press(self, key: str) -> None:
        self.session.handle_key(key)
        if self.session.quit_requested:
            self.exit()
            return
        path = self.session.take_edit()
        if path is not None:
            self._open_editor(path)
        self._render()

    def _tick(self) -> None:
        self._frame += 1
        self.session.tick()
        if self.session.quit_requested:
            self.exit()
            return
        self._render()

    def _open_editor(self, path: Path) -> None:
        argv = find_editor()
        if argv is None:
            self.session.edit_unavailable(path, "No editor found (set EDITOR or install nano/vim).")
            return
        try:
            with self.suspend():
                rc = subprocess.run([*argv, str(path)], check=False).returncode
        except SuspendNotSupported:
            self.session.edit_unavailable(path, "Not a terminal; cannot run an interactive editor.")
            return
        except OSError as e:
            logger.warning("editor %s failed: %s", argv[0], e)
            self.session.edit_unavailable(path, f"Could not start editor: {e}")
            return
        self.session.edit_finished(path, rc)

    def _render(self) -> None:
        s = self.session
        self.query_one("#title", Label).update(s.title())
        activity = s.activity()
        if activity:
            activity = f"{SPINNER[self._frame % len(SPINNER)]} {activity}"
        self.query_one("#activity", Label).update(activity)
        self.query_one("#breadcrumb", Label).update(s.breadcrumb())

        menu = self.query_one("#menu", Static)
        menu.border_title = s.menu_title()
        menu.update(_menu_text(s.menu_lines()))

        self.query_one("#status", Static).update("\n".join(s.status_lines()))

        log = self.query_one("#log", Static)
        height = max(1, log.content_region.height or log.size.height)
        s.log_height = height
        log.update(_log_text(s.log.window(height)))

        self._render_overlay()

    def _render_overlay(self) -> None:
        s = self.session
        wrap = self.query_one("#overlay-wrap")
        overlay = self.query_one("#overlay", Static)
        if s.confirm is not None:
            c = s.confirm
            yes = Text("[ Yes ]", style="bold green reverse" if c.choice == YES else "")
            no = Text("[ No ]", style="" if c.choice == YES else "bold red reverse")
            overlay.border_title = c.title
            overlay.update(Text.assemble("\n", c.message, "\n\n      ", yes, "    ", no, "\n\n",
                                         ("y/n, ←/→ + enter, esc cancels", "dim")))
            wrap.display = True
        elif s.help:
            overlay.border_title = "Help"
            overlay.update("\n".join(s.help_lines()))
            wrap.display = True
        else:
            wrap.display = False


def run_dash(session: Session) -> None:
    app = KamalDashApp(session)
    session.set_refresh(app.nudge)
    try:
        app.run()
    finally:
        session.close()
