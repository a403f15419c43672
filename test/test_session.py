import os
import stat
import threading

import pytest

from conftest import FakeRemote, listing_line, wait_for
from kamal_dash.commands import CommandResult
from kamal_dash.config import Settings
from kamal_dash.dash.actions import Action
from kamal_dash.dash.models import Screen
from kamal_dash.dash.session import ProjectSession, ServerSession
from kamal_dash.discovery import LIST_COMMAND, PROXY_STATUS_COMMAND, ProcessRecord, group_records


def records(n, service="web"):
    return [
        ProcessRecord(f"id-{service}-{i}", f"{service}-{i}", "reg/web:v1", state="running",
                      labels={"service": service})
        for i in range(n)
    ]


class BlockingRemote(FakeRemote):
    """Streams until cancelled."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stream_started = threading.Event()

    def stream(self, command, on_line, cancel):
        self.streamed.append(command)
        self.stream_started.set()
        cancel.wait(5)
        return None


def text(session):
    return "\n".join(session.log.snapshot())


@pytest.fixture
def server(settings):
    remote = BlockingRemote()
    session = ServerSession(remote, settings, apps=group_records(records(3) + records(1, "web-redis")))
    yield session
    session.close()
    session.supervisor.join(5)


def press(session, *keys):
    for k in keys:
        session.handle_key(k)


def test_decline_never_runs_accept(server):
    calls = []
    act = Action("danger", "Danger", destructive=True, confirm_message="Really?",
                 build=lambda ctx: lambda: calls.append("ran"))
    for key in ("escape", "n", "enter", "q"):
        server.dispatch("Danger", act, None)
        assert server.confirm is not None
        assert server.confirm.message == "Really?"
        server.handle_key(key)
        assert server.confirm is None
    server.supervisor.join(5)
    assert calls == []
    assert text(server).count("Danger cancelled") == 4
    assert not server.quit_requested


def test_confirm_yes_runs(server):
    calls = []
    act = Action("danger", "Danger", destructive=True, build=lambda ctx: lambda: calls.append("ran"))
    server.dispatch("Danger", act, None)
    press(server, "left", "enter")
    server.supervisor.join(5)
    assert calls == ["ran"]


def test_silent_reject_while_running(server):
    release = threading.Event()
    first = Action("slow", "Slow", build=lambda ctx: lambda: release.wait(5))
    second_calls = []
    second = Action("fast", "Fast", build=lambda ctx: lambda: second_calls.append(1))
    assert server.dispatch("Slow", first, None)
    assert server.dispatch("Fast", second, None) is False
    assert server.confirm is None
    release.set()
    server.supervisor.join(5)
    assert second_calls == []
    assert "Running: Fast" not in text(server)


def test_navigation_clamps_and_never_wraps(server):
    assert server.state.screen is Screen.APPS
    press(server, "up")
    assert server.state.selected == 0
    press(server, "enter")
    assert server.state.screen is Screen.APP_MENU
    press(server, *["down"] * 20)
    assert server.state.submenu == 5
    press(server, "enter")  # Back row
    assert server.state.screen is Screen.APPS


def test_container_select_clamps_after_shrinking_refresh(server):
    press(server, "enter", "enter")
    assert server.state.screen is Screen.CONTAINERS
    assert len(server.state.containers) == 4
    press(server, "down", "down", "down")
    assert server.state.container == 3
    server.apply_apps(group_records(records(2)))
    assert len(server.state.containers) == 2
    assert server.state.container == 1
    server.apply_apps(group_records([]))
    assert server.state.screen is Screen.APPS
    assert server.state.containers == []


def test_refresh_applies_on_tick(settings):
    lines = [listing_line("web-1", "web")]
    remote = FakeRemote({
        LIST_COMMAND: CommandResult("\n".join(lines), "", 0),
        PROXY_STATUS_COMMAND: CommandResult("Up\n", "", 0),
    })
    session = ServerSession(remote, settings, apps=group_records(records(3) + records(2, "api")))
    session.state.selected = 1
    press(session, "r")
    assert wait_for(lambda: "Found 1 app(s)" in text(session))
    # Not applied until the event loop ticks.
    assert len(session.apps) == 2
    session.tick()
    assert [a.service for a in session.apps] == ["web"]
    assert session.state.selected == 0


def test_back_cancels_stream(server):
    press(server, "enter", "enter")
    press(server, "l")
    assert server.remote.stream_started.wait(5)
    assert server.supervisor.streaming
    press(server, "escape")
    assert not server.supervisor.streaming
    assert server.state.screen is Screen.APP_MENU
    server.supervisor.join(5)
    assert "Logs web-0 stopped" in text(server)


def test_drill_down_stops_stream(server):
    press(server, "enter", "down", "enter")
    assert server.remote.stream_started.wait(5)
    assert server.supervisor.streaming
    press(server, "up", "enter")
    assert server.state.screen is Screen.CONTAINERS
    assert not server.supervisor.streaming


def test_enter_on_container_streams_its_logs(server):
    press(server, "enter", "enter", "down", "enter")
    assert server.remote.stream_started.wait(5)
    assert "id-web-1" in server.remote.streamed[0]


def test_container_stop_needs_confirmation(server):
    press(server, "enter", "enter", "s")
    assert server.confirm is not None
    assert server.confirm.title == "Confirm Stop web-0"
    press(server, "escape")
    assert server.remote.calls == []


def test_scroll_back_and_follow(server):
    server.log.append([f"line {i}" for i in range(50)])
    server.log_height = 20
    press(server, "k")
    assert not server.log.follow
    assert server.log.scroll == 25
    press(server, "j")
    assert server.log.follow
    server.log.append(["newest"])
    assert server.log.window(20)[-1].endswith("newest")


def test_clear_and_help(server):
    server.log.append(["x"])
    press(server, "c")
    assert len(server.log) == 0
    press(server, "?")
    assert server.help
    press(server, "down")
    assert server.state.selected == 0
    press(server, "?")
    assert not server.help


def test_quit(server):
    press(server, "q")
    assert server.quit_requested


def test_status_lines_describe_selected_app(server):
    lines = server.status_lines()
    assert "Service: web" in lines
    assert "Containers: 3/3 running" in lines
    assert any("redis" in ln for ln in lines)


# --- project mode -----------------------------------------------------------


@pytest.fixture
def fake_kamal(tmp_path):
    script = tmp_path / "bin" / "kamal"
    script.parent.mkdir()
    script.write_text('#!/bin/sh\necho "kamal $*"\n')
    script.chmod(0o755)
    return script


@pytest.fixture
def project(tmp_path, fake_kamal):
    proj = tmp_path / "proj"
    (proj / "config").mkdir(parents=True)
    (proj / "config" / "deploy.yml").write_text("service: shop\nimage: acme/shop\n")
    (proj / "config" / "deploy.staging.yml").write_text("servers: [1.2.3.4]\n")
    settings = Settings(kamal_bin=str(fake_kamal), control_dir=tmp_path)
    session = ProjectSession(proj, settings)
    yield session
    session.close()
    session.supervisor.join(5)


def test_project_lists_destinations(project):
    assert [d.name for d in project.destinations] == ["staging"]
    assert project.destinations[0].service == "shop"
    assert project.menu_lines()[0].text == "shop (staging)"


def test_project_runs_deploy_cli(project):
    press(project, "enter", "enter", "enter")
    assert project.state.screen is Screen.DEPLOY
    project.supervisor.join(5)
    out = text(project)
    assert "Running: Deploy" in out
    assert "--destination staging deploy" in out
    assert "Deploy completed in" in out


def test_project_rollback_asks_first(project):
    press(project, "enter", "enter", "down", "down", "down", "enter")
    assert project.confirm is not None
    assert project.confirm.message == "Rollback to previous version?"
    press(project, "n")
    assert "Rollback cancelled" in text(project)


def test_project_m_jumps_to_main_menu(project):
    press(project, "enter", "down", "enter")
    assert project.state.screen is Screen.APP
    press(project, "m")
    assert project.state.screen is Screen.MAIN_MENU
    assert project.state.trail == [Screen.DESTINATIONS, Screen.MAIN_MENU]


def test_project_m_stops_live_logs(project, tmp_path):
    looping = tmp_path / "bin" / "kamal-follow"
    looping.write_text('#!/bin/sh\nwhile :; do echo "kamal $*"; sleep 0.1; done\n')
    looping.chmod(0o755)
    project.settings.kamal_bin = str(looping)
    press(project, "enter", "down", "enter", *["down"] * 14, "enter")
    assert wait_for(lambda: "app logs -f" in text(project))
    assert project.supervisor.streaming
    press(project, "m")
    assert project.state.screen is Screen.MAIN_MENU
    assert not project.supervisor.streaming
    project.supervisor.join(5)


def test_project_edit_deploy_config(project):
    press(project, "enter", *["down"] * 6, "enter", "enter")
    assert project.state.screen is Screen.CONFIG
    path = project.take_edit()
    assert path is not None and path.name == "deploy.staging.yml"
    assert project.take_edit() is None


@pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
def test_project_edit_secrets_creates_private_file(project):
    press(project, "enter", *["down"] * 6, "enter", "down", "enter")
    path = project.take_edit()
    assert path is not None and path.name == "secrets-staging"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700


def test_project_edit_results_are_logged(project, tmp_path):
    project.edit_finished(tmp_path / "x.yml", 0)
    project.edit_finished(tmp_path / "x.yml", 1)
    project.edit_unavailable(tmp_path / "x.yml", "No editor found")
    out = text(project)
    assert "Edited" in out
    assert "Editor exited with status 1" in out
    assert "No editor found" in out


def test_project_status_poll(project):
    lines = project.build_status(project.destination())
    assert lines[0] == "App: shop (staging)"
    assert any("app version" in ln for ln in lines)
    assert any("app containers" in ln for ln in lines)
    assert project.build_status(None)[0] == "No app selected."


def test_project_poller_starts_and_stops(project):
    project.poll_interval = 0.05
    project.start()
    assert wait_for(lambda: any("App: shop" in ln for ln in project.status_lines()))
    project.close()
    assert not project._poller.is_alive()


def test_project_without_config(tmp_path, settings):
    session = ProjectSession(tmp_path, settings)
    assert session.destinations == []
    assert "No config/deploy*.yml" in session.status_lines()[0]
    press(session, "enter")
    assert session.state.screen is Screen.MAIN_MENU
    session.close()


def test_base_session_is_abstract(settings):
    from kamal_dash.dash.session import Session

    with pytest.raises(TypeError):
        Session(settings)
