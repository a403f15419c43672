"""Menu tables for both session modes.

Each menu is an ordered tuple of :class:`Action` rows. The session indexes
into these tuples with the selection index, so the rendered order and the
dispatch order can never drift apart.

``build`` turns a context into something the supervisor can run: a
zero-argument operation for ``RUN`` rows, or a ``(on_line, cancel)`` stream
function for ``STREAM`` rows. Server-mode builders receive a
:class:`ServerContext`; project-mode builders receive a
:class:`~kamal_dash.kamal.KamalRunner`.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from ..commands import CommandResult, LineHandler
from ..discovery import (
    PROXY_DETAILS_COMMAND,
    PROXY_ID_COMMAND,
    Application,
    ContainerEntry,
    ProcessRecord,
    container_command,
    inspect_command,
    shell_probe_command,
    stream_app_logs_command,
    stream_logs_command,
)
from ..errors import DiscoveryError
from ..kamal import KamalRunner
from ..ssh import RemoteHost
from ..util import split_lines
from .models import Screen
from .supervisor import Supervisor

DEFAULT_CONFIRM = "Are you sure you want to proceed?"
SHELLS = ("/bin/bash", "/bin/sh")


class ActionKind(str, Enum):
    RUN = "run"
    STREAM = "stream"
    NAV = "nav"
    EDIT = "edit"
    BACK = "back"


Builder = Callable[[Any], Callable[..., Any]]


@dataclass(frozen=True, slots=True)
class Action:
    id: str
    label: str
    kind: ActionKind = ActionKind.RUN
    destructive: bool = False
    confirm_message: str = ""
    build: Builder | None = None
    # NAV: screen to open. EDIT: which file ("deploy" or "secrets").
    target: Screen | str | None = None

    @property
    def confirm_text(self) -> str:
        return self.confirm_message or DEFAULT_CONFIRM


@dataclass(frozen=True, slots=True)
class Menu:
    title: str
    actions: tuple[Action, ...]
    # Prepended to action labels for the operation name ("App" + "Stop").
    prefix: str = ""

    def __len__(self) -> int:
        return len(self.actions)

    def get(self, index: int) -> Action | None:
        if 0 <= index < len(self.actions):
            return self.actions[index]
        return None

    def operation_label(self, action: Action) -> str:
        return f"{self.prefix} {action.label}" if self.prefix else action.label


def _nav(id: str, label: str, target: Screen) -> Action:
    return Action(id, label, ActionKind.NAV, target=target)


BACK = Action("back", "Back", ActionKind.BACK)


# --- server mode ------------------------------------------------------------


@dataclass(slots=True)
class ServerContext:
    remote: RemoteHost
    app: Application
    supervisor: Supervisor
    entry: ContainerEntry | None = None


def _for_each(ctx: ServerContext, records: list[ProcessRecord], verbs: tuple[str, ...], done: str):
    def op() -> None:
        if not records:
            raise DiscoveryError(f"no containers in {ctx.app.service}")
        for verb in verbs:
            for rec in records:
                res = ctx.remote.run(container_command(verb, rec.id))
                if not res.ok:
                    detail = res.stderr.strip() or f"exit {res.exit_code}"
                    ctx.supervisor.log_error(f"Failed to {verb} {rec.name}: {detail}")
                elif verb == verbs[-1]:
                    ctx.supervisor.log_success(f"{done} {rec.name}")
    return op


def _app_stream_logs(ctx: ServerContext):
    ids = [r.id for r in ctx.app.records] or [r.id for r in ctx.app.all_records()]
    if not ids:
        raise DiscoveryError(f"no containers in {ctx.app.service}")
    command = stream_app_logs_command(ids)

    def stream(on_line: LineHandler, cancel: threading.Event) -> int | None:
        return ctx.remote.stream(command, on_line, cancel)
    return stream


def _app_details(ctx: ServerContext):
    def op() -> None:
        for rec in ctx.app.all_records():
            res = ctx.remote.run(inspect_command(rec.id))
            if res.ok:
                ctx.supervisor.log.append([f"  {rec.name}: {res.stdout.strip()}"])
            else:
                ctx.supervisor.log.append([f"  {rec.name}: error - {res.stderr.strip() or res.exit_code}"])
    return op


def _exec_hint(ctx: ServerContext):
    def op() -> None:
        if not ctx.app.records:
            raise DiscoveryError("no containers available")
        rec = ctx.app.records[0]
        for shell in SHELLS:
            res = ctx.remote.run(shell_probe_command(rec.id, shell))
            if res.ok and res.stdout.strip():
                ctx.supervisor.log_info(f"Shell available: {shell}")
                ctx.supervisor.log_info("To connect manually run:")
                ctx.supervisor.log_info(f"  ssh {ctx.remote.display()} docker exec -it {rec.name} {shell}")
                return
        raise DiscoveryError(f"no shell found in {rec.name}")
    return op


def _proxy_stream_logs(ctx: ServerContext):
    def stream(on_line: LineHandler, cancel: threading.Event) -> int | None:
        proxy_id = ctx.remote.run(PROXY_ID_COMMAND).stdout.strip()
        if not proxy_id:
            raise DiscoveryError("kamal-proxy container not found")
        return ctx.remote.stream(stream_logs_command(proxy_id), on_line, cancel)
    return stream


def _proxy_details(ctx: ServerContext):
    def op() -> None:
        res = ctx.remote.run(PROXY_DETAILS_COMMAND)
        lines = split_lines(res.stdout)
        if not res.ok or not lines:
            raise DiscoveryError("kamal-proxy container not found")
        ctx.supervisor.log.append([f"  {ln}" for ln in lines])
    return op


def _entry_stream_logs(ctx: ServerContext):
    assert ctx.entry is not None
    command = stream_logs_command(ctx.entry.record.id)

    def stream(on_line: LineHandler, cancel: threading.Event) -> int | None:
        return ctx.remote.stream(command, on_line, cancel)
    return stream


def _entry_verb(verb: str):
    def build(ctx: ServerContext):
        assert ctx.entry is not None
        command = container_command(verb, ctx.entry.record.id)
        return lambda: ctx.remote.run(command)
    return build


SERVER_APP_MENU = Menu("App", (
    _nav("containers", "Containers...", Screen.CONTAINERS),
    Action("logs", "Logs (streaming)", ActionKind.STREAM, build=_app_stream_logs),
    Action("details", "Details", build=_app_details),
    _nav("actions", "Actions...", Screen.APP_ACTIONS),
    _nav("proxy", "Proxy...", Screen.PROXY_MENU),
    BACK,
))

SERVER_ACTIONS_MENU = Menu("Actions", (
    Action("reboot", "Boot / Reboot", destructive=True,
           confirm_message="Reboot the app (stop + start every container)?",
           build=lambda ctx: _for_each(ctx, ctx.app.records, ("stop", "start"), "Rebooted")),
    Action("start", "Start", build=lambda ctx: _for_each(ctx, ctx.app.records, ("start",), "Started")),
    Action("stop", "Stop", destructive=True, confirm_message="Stop every container of the app?",
           build=lambda ctx: _for_each(ctx, ctx.app.records, ("stop",), "Stopped")),
    Action("restart", "Restart", build=lambda ctx: _for_each(ctx, ctx.app.records, ("restart",), "Restarted")),
    Action("exec", "Exec (shell)", build=_exec_hint),
    BACK,
))

SERVER_PROXY_MENU = Menu("Proxy", (
    Action("proxy_logs", "Proxy logs (streaming)", ActionKind.STREAM, build=_proxy_stream_logs),
    Action("proxy_details", "Proxy details", build=_proxy_details),
    BACK,
))

# Container-select screen: keyed by the key that triggers each action.
CONTAINER_ACTIONS: dict[str, Action] = {
    "l": Action("container_logs", "Logs", ActionKind.STREAM, build=_entry_stream_logs),
    "r": Action("container_restart", "Restart", destructive=True,
                confirm_message="Restart this container?", build=_entry_verb("restart")),
    "s": Action("container_stop", "Stop", destructive=True,
                confirm_message="Stop this container?", build=_entry_verb("stop")),
    "S": Action("container_start", "Start", build=_entry_verb("start")),
}

SERVER_MENUS: dict[Screen, Menu] = {
    Screen.APP_MENU: SERVER_APP_MENU,
    Screen.APP_ACTIONS: SERVER_ACTIONS_MENU,
    Screen.PROXY_MENU: SERVER_PROXY_MENU,
}


# --- project mode -----------------------------------------------------------


def kamal_run(*subcommand: str) -> Builder:
    def build(runner: KamalRunner) -> Callable[[], CommandResult]:
        return lambda: runner.run(*subcommand)
    return build


def kamal_stream(*subcommand: str) -> Builder:
    def build(runner: KamalRunner):
        def stream(on_line: LineHandler, cancel: threading.Event) -> int | None:
            return runner.stream(subcommand, on_line, cancel)
        return stream
    return build


def _run(id: str, label: str, *subcommand: str, confirm: str = "") -> Action:
    return Action(id, label, destructive=bool(confirm), confirm_message=confirm,
                  build=kamal_run(*subcommand))


def _stream(id: str, label: str, *subcommand: str) -> Action:
    return Action(id, label, ActionKind.STREAM, build=kamal_stream(*subcommand))


MAIN_MENU = Menu("Menu", (
    _nav("deploy", "Deploy / Redeploy / Rollback", Screen.DEPLOY),
    _nav("app", "App (boot, start, stop, logs...)", Screen.APP),
    _nav("server", "Server (bootstrap, exec)", Screen.SERVER),
    _nav("accessory", "Accessory (boot, logs, reboot)", Screen.ACCESSORY),
    _nav("proxy", "Proxy (boot, logs, reboot)", Screen.PROXY),
    _nav("other", "Other (prune, config, lock...)", Screen.OTHER),
    _nav("config", "Config (edit deploy.yml, secrets, restart)", Screen.CONFIG),
))

DEPLOY_MENU = Menu("Deploy", (
    _run("deploy", "Deploy", "deploy"),
    _run("deploy_skip_push", "Deploy (skip push)", "deploy", "--skip-push"),
    _run("redeploy", "Redeploy", "redeploy"),
    _run("rollback", "Rollback", "rollback", confirm="Rollback to previous version?"),
    _run("setup", "Setup (first-time)", "setup"),
))

APP_MENU = Menu("App", (
    _run("app_boot", "Boot", "app", "boot"),
    _run("app_start", "Start", "app", "start"),
    _run("app_stop", "Stop", "app", "stop", confirm="Stop the application?"),
    _run("app_restart", "Restart", "app", "restart"),
    _run("app_logs", "Logs", "app", "logs"),
    _run("app_containers", "Containers", "app", "containers"),
    _run("app_details", "Details", "app", "details"),
    _run("app_images", "Images", "app", "images"),
    _run("app_version", "Version", "app", "version"),
    _run("app_stale", "Stale containers", "app", "stale_containers", "--stop",
         confirm="Stop and remove stale containers?"),
    _run("app_exec_whoami", "Exec: whoami", "app", "exec", "whoami"),
    _run("app_maintenance", "Maintenance", "app", "maintenance"),
    _run("app_live", "Live", "app", "live"),
    _run("app_remove", "Remove", "app", "remove", confirm="Remove the application? This cannot be undone."),
    _stream("app_logs_stream", "Live: App logs (stream)", "app", "logs", "-f"),
), prefix="App")

SERVER_MENU = Menu("Server", (
    _run("server_bootstrap", "Bootstrap", "server", "bootstrap"),
    _run("server_exec_date", "Exec: date", "server", "exec", "date"),
    _run("server_exec_uptime", "Exec: uptime", "server", "exec", "uptime"),
), prefix="Server")

ACCESSORY_MENU = Menu("Accessory", (
    _run("acc_boot", "Boot all", "accessory", "boot", "all"),
    _run("acc_start", "Start all", "accessory", "start", "all"),
    _run("acc_stop", "Stop all", "accessory", "stop", "all", confirm="Stop all accessories?"),
    _run("acc_restart", "Restart all", "accessory", "restart", "all"),
    _run("acc_reboot", "Reboot all", "accessory", "reboot", "all"),
    _run("acc_remove", "Remove all", "accessory", "remove", "all",
         confirm="Remove all accessories? This cannot be undone."),
    _run("acc_details", "Details all", "accessory", "details", "all"),
    _run("acc_logs", "Logs all", "accessory", "logs", "all"),
    _run("acc_upgrade", "Upgrade", "accessory", "upgrade"),
    _stream("acc_logs_stream", "Live: Accessory logs (stream)", "accessory", "logs", "all", "-f"),
), prefix="Accessory")

PROXY_MENU = Menu("Proxy", (
    _run("proxy_boot", "Boot", "proxy", "boot"),
    _run("proxy_start", "Start", "proxy", "start"),
    _run("proxy_stop", "Stop", "proxy", "stop", confirm="Stop the proxy?"),
    _run("proxy_restart", "Restart", "proxy", "restart"),
    _run("proxy_reboot", "Reboot", "proxy", "reboot"),
    _run("proxy_reboot_rolling", "Reboot (rolling)", "proxy", "reboot", "--rolling"),
    _run("proxy_logs", "Logs", "proxy", "logs"),
    _run("proxy_details", "Details", "proxy", "details"),
    _run("proxy_remove", "Remove", "proxy", "remove", confirm="Remove the proxy? This cannot be undone."),
    _run("proxy_boot_config_get", "Boot config get", "proxy", "boot_config", "get"),
    _run("proxy_boot_config_set", "Boot config set", "proxy", "boot_config", "set"),
    _run("proxy_boot_config_reset", "Boot config reset", "proxy", "boot_config", "reset"),
    _stream("proxy_logs_stream", "Live: Proxy logs (stream)", "proxy", "logs", "-f"),
), prefix="Proxy")

OTHER_MENU = Menu("Other", (
    _run("prune", "Prune", "prune", confirm="Prune old images and containers?"),
    _run("build", "Build", "build"),
    _run("config", "Config", "config"),
    _run("details", "Details", "details"),
    _run("audit", "Audit", "audit"),
    _run("lock_status", "Lock status", "lock", "status"),
    _run("lock_acquire", "Lock acquire", "lock", "acquire"),
    _run("lock_release", "Lock release", "lock", "release"),
    _run("lock_release_force", "Lock release --force", "lock", "release", "--force",
         confirm="Force release the lock?"),
    _run("registry_login", "Registry login", "registry", "login"),
    _run("registry_logout", "Registry logout", "registry", "logout"),
    _run("secrets", "Secrets", "secrets"),
    _run("env_push", "Env push", "env", "push"),
    _run("env_pull", "Env pull", "env", "pull"),
    _run("env_delete", "Env delete", "env", "delete", confirm="Delete environment variables?"),
    _run("docs", "Docs", "docs"),
    _run("help", "Help", "help"),
    _run("init", "Init", "init"),
    _run("upgrade", "Upgrade", "upgrade"),
    _run("version", "Version", "version"),
))

CONFIG_MENU = Menu("Config", (
    Action("edit_deploy", "Edit deploy config (current dest)", ActionKind.EDIT, target="deploy"),
    Action("edit_secrets", "Edit secrets (current dest)", ActionKind.EDIT, target="secrets"),
    _run("config_redeploy", "Redeploy (after edit)", "redeploy"),
    _run("config_app_restart", "App restart (after edit)", "app", "restart"),
))

PROJECT_MENUS: dict[Screen, Menu] = {
    Screen.MAIN_MENU: MAIN_MENU,
    Screen.DEPLOY: DEPLOY_MENU,
    Screen.APP: APP_MENU,
    Screen.SERVER: SERVER_MENU,
    Screen.ACCESSORY: ACCESSORY_MENU,
    Screen.PROXY: PROXY_MENU,
    Screen.OTHER: OTHER_MENU,
    Screen.CONFIG: CONFIG_MENU,
}
