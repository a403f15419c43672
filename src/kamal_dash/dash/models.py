from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..discovery import ContainerEntry


class Screen(str, Enum):
    # server mode
    APPS = "apps"
    APP_MENU = "app_menu"
    CONTAINERS = "containers"
    APP_ACTIONS = "app_actions"
    PROXY_MENU = "proxy_menu"
    # project mode
    DESTINATIONS = "destinations"
    MAIN_MENU = "main_menu"
    DEPLOY = "deploy"
    APP = "app"
    SERVER = "server"
    ACCESSORY = "accessory"
    PROXY = "proxy"
    OTHER = "other"
    CONFIG = "config"


@dataclass(slots=True)
class ScreenState:
    """Current screen plus selection indices; touched only by the event loop.

    ``selected`` indexes the root list (apps or destinations), ``submenu`` the
    current menu, ``container`` the flattened container list.
    """

    screen: Screen
    selected: int = 0
    submenu: int = 0
    container: int = 0
    containers: list[ContainerEntry] = field(default_factory=list)
    _stack: list[tuple[Screen, int]] = field(default_factory=list, repr=False)

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def trail(self) -> list[Screen]:
        return [s for s, _ in self._stack] + [self.screen]

    def push(self, screen: Screen) -> None:
        self._stack.append((self.screen, self.submenu))
        self.screen = screen
        self.submenu = 0

    def pop(self) -> bool:
        if not self._stack:
            return False
        if self.screen is Screen.CONTAINERS:
            self.containers = []
            self.container = 0
        self.screen, self.submenu = self._stack.pop()
        return True

    def reset(self, screen: Screen) -> None:
        self._stack.clear()
        self.screen = screen
        self.submenu = 0
        self.container = 0
        self.containers = []


def clamp(index: int, count: int) -> int:
    if count <= 0:
        return 0
    return max(0, min(index, count - 1))


YES = 0
NO = 1


@dataclass(slots=True)
class ConfirmOverlay:
    """A pending yes/no question. Starts on "No"; resolves at most once."""

    title: str
    message: str
    on_accept: Callable[[], None]
    on_decline: Callable[[], None] | None = None
    choice: int = NO
    resolved: bool = False

    def left(self) -> None:
        self.choice = YES

    def right(self) -> None:
        self.choice = NO

    def toggle(self) -> None:
        self.choice = NO if self.choice == YES else YES

    def accept(self) -> None:
        if self.resolved:
            return
        self.resolved = True
        self.on_accept()

    def decline(self) -> None:
        if self.resolved:
            return
        self.resolved = True
        if self.on_decline is not None:
            self.on_decline()

    def cancel(self) -> None:
        self.decline()

    def submit(self) -> None:
        if self.choice == YES:
            self.accept()
        else:
            self.decline()
