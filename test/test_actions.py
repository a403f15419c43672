import threading

import pytest

from conftest import FakeRemote
from kamal_dash.commands import CommandResult
from kamal_dash.dash.actions import (
    CONTAINER_ACTIONS,
    PROJECT_MENUS,
    SERVER_ACTIONS_MENU,
    SERVER_APP_MENU,
    SERVER_MENUS,
    SERVER_PROXY_MENU,
    ActionKind,
    ServerContext,
    kamal_run,
    kamal_stream,
)
from kamal_dash.dash.logbuffer import LogBuffer
from kamal_dash.dash.models import Screen
from kamal_dash.dash.supervisor import Supervisor
from kamal_dash.discovery import PROXY_DETAILS_COMMAND, PROXY_ID_COMMAND, ContainerEntry, ProcessRecord, group_records
from kamal_dash.errors import DiscoveryError
from kamal_dash.kamal import KamalRunner, RunOptions


def web_app():
    records = [
        ProcessRecord("id-w1", "web-1", "reg/web:v1", state="running", labels={"service": "web"}),
        ProcessRecord("id-w2", "web-2", "reg/web:v1", state="running", labels={"service": "web"}),
        ProcessRecord("id-pg", "web-postgres", "postgres:16", state="running", labels={"service": "web-postgres"}),
    ]
    return group_records(records)[0]


def ctx(remote, entry=None):
    return ServerContext(remote, web_app(), Supervisor(LogBuffer(3000)), entry)


def action(menu, id):
    for a in menu.actions:
        if a.id == id:
            return a
    raise KeyError(id)


def all_menus():
    return list(SERVER_MENUS.values()) + list(PROJECT_MENUS.values())


def test_action_ids_unique_per_menu():
    for menu in all_menus():
        ids = [a.id for a in menu.actions]
        assert len(ids) == len(set(ids)), menu.title


def test_leaf_rows_have_builders_and_nav_rows_have_targets():
    for menu in all_menus():
        for a in menu.actions:
            if a.kind in (ActionKind.RUN, ActionKind.STREAM):
                assert a.build is not None, a.id
            if a.kind is ActionKind.NAV:
                assert isinstance(a.target, Screen), a.id
    for a in CONTAINER_ACTIONS.values():
        assert a.build is not None


def test_every_destructive_row_has_a_specific_message():
    for menu in all_menus():
        for a in menu.actions:
            if a.destructive:
                assert a.confirm_message, a.id


def test_project_destructive_rows():
    destructive = {
        a.id for menu in PROJECT_MENUS.values() for a in menu.actions if a.destructive
    }
    assert destructive == {
        "rollback",
        "app_stop",
        "app_stale",
        "app_remove",
        "acc_stop",
        "acc_remove",
        "proxy_stop",
        "proxy_remove",
        "prune",
        "lock_release_force",
        "env_delete",
    }


def test_server_menu_order():
    assert [a.label for a in SERVER_APP_MENU.actions] == [
        "Containers...", "Logs (streaming)", "Details", "Actions...", "Proxy...", "Back",
    ]
    assert [a.id for a in SERVER_ACTIONS_MENU.actions if a.destructive] == ["reboot", "stop"]
    assert CONTAINER_ACTIONS["s"].destructive and CONTAINER_ACTIONS["r"].destructive
    assert not CONTAINER_ACTIONS["S"].destructive


def test_operation_label_uses_prefix():
    app_menu = PROJECT_MENUS[Screen.APP]
    assert app_menu.operation_label(action(app_menu, "app_stop")) == "App Stop"
    deploy = PROJECT_MENUS[Screen.DEPLOY]
    assert deploy.operation_label(action(deploy, "deploy")) == "Deploy"
    assert deploy.get(99) is None


def test_reboot_stops_then_starts_each_primary():
    remote = FakeRemote()
    c = ctx(remote)
    op = action(SERVER_ACTIONS_MENU, "reboot").build(c)
    op()
    assert remote.calls == [
        "docker stop id-w1", "docker stop id-w2", "docker start id-w1", "docker start id-w2",
    ]
    logged = "\n".join(c.supervisor.log.snapshot())
    assert "Rebooted web-1" in logged and "Rebooted web-2" in logged


def test_per_container_failure_is_logged_and_loop_continues():
    remote = FakeRemote({"docker restart id-w1": CommandResult("", "no such container", 1)})
    c = ctx(remote)
    action(SERVER_ACTIONS_MENU, "restart").build(c)()
    logged = "\n".join(c.supervisor.log.snapshot())
    assert "Failed to restart web-1: no such container" in logged
    assert "Restarted web-2" in logged


def test_app_logs_follow_primary_containers():
    remote = FakeRemote(stream_lines=["hello"])
    c = ctx(remote)
    stream = action(SERVER_APP_MENU, "logs").build(c)
    got = []
    assert stream(got.append, threading.Event()) == 0
    assert got == ["hello"]
    (command,) = remote.streamed
    assert "id-w1" in command and "id-w2" in command and "id-pg" not in command


def test_exec_hint_reports_first_available_shell():
    remote = FakeRemote({
        "docker exec id-w1 which /bin/bash 2>/dev/null": CommandResult("", "", 1),
        "docker exec id-w1 which /bin/sh 2>/dev/null": CommandResult("/bin/sh\n", "", 0),
    })
    c = ctx(remote)
    action(SERVER_ACTIONS_MENU, "exec").build(c)()
    logged = "\n".join(c.supervisor.log.snapshot())
    assert "Shell available: /bin/sh" in logged
    assert "docker exec -it web-1 /bin/sh" in logged


def test_exec_hint_without_shell_raises():
    remote = FakeRemote({
        "docker exec id-w1 which /bin/bash 2>/dev/null": CommandResult("", "", 1),
        "docker exec id-w1 which /bin/sh 2>/dev/null": CommandResult("", "", 1),
    })
    with pytest.raises(DiscoveryError):
        action(SERVER_ACTIONS_MENU, "exec").build(ctx(remote))()


def test_proxy_rows():
    remote = FakeRemote({
        PROXY_ID_COMMAND: CommandResult("", "", 0),
        PROXY_DETAILS_COMMAND: CommandResult("Name: kamal-proxy\nStatus: Up\n", "", 0),
    })
    c = ctx(remote)
    with pytest.raises(DiscoveryError):
        action(SERVER_PROXY_MENU, "proxy_logs").build(c)(lambda _: None, threading.Event())
    action(SERVER_PROXY_MENU, "proxy_details").build(c)()
    assert any("Name: kamal-proxy" in ln for ln in c.supervisor.log.snapshot())


def test_container_key_actions_target_selected_entry():
    remote = FakeRemote()
    entry = ContainerEntry(web_app().accessories[0].records[0], "postgres")
    op = CONTAINER_ACTIONS["r"].build(ctx(remote, entry))
    op()
    assert remote.calls == ["docker restart id-pg"]


def test_kamal_builders(tmp_path):
    runner = KamalRunner(RunOptions(cwd=tmp_path), kamal_bin="kamal")
    op = kamal_run("app", "boot")(runner)
    assert callable(op)
    assert runner.argv(("app", "boot")) == ["kamal", "app", "boot"]
    stream = kamal_stream("app", "logs", "-f")(runner)
    assert callable(stream)
