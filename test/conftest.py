import json
import time

import pytest

from kamal_dash.commands import CommandResult
from kamal_dash.discovery import LIST_COMMAND, PROXY_STATUS_COMMAND
from kamal_dash.errors import TransportError


def listing_line(name, service, destination="", role="", state="running", image="reg/app:abc123", id=None):
    labels = [f"service={service}"]
    if destination:
        labels.append(f"destination={destination}")
    if role:
        labels.append(f"role={role}")
    return json.dumps({
        "ID": id or f"id-{name}",
        "Name": name,
        "Image": image,
        "Status": "Up 2 hours" if state == "running" else "Exited (0) 1 hour ago",
        "State": state,
        "Labels": ",".join(labels),
        "Created": "2024-05-01 10:00:00 +0000 UTC",
    })


class FakeRemote:
    """Answers commands from a table; unknown commands succeed with no output."""

    def __init__(self, replies=None, stream_lines=(), stream_rc=0):
        self.replies = dict(replies or {})
        self.calls = []
        self.streamed = []
        self.stream_lines = list(stream_lines)
        self.stream_rc = stream_rc

    def run(self, command, timeout=None):
        self.calls.append(command)
        reply = self.replies.get(command, CommandResult("", "", 0))
        if isinstance(reply, Exception):
            raise reply
        return reply

    def stream(self, command, on_line, cancel):
        self.streamed.append(command)
        for line in self.stream_lines:
            if cancel.is_set():
                return None
            on_line(line)
        return self.stream_rc

    def display(self):
        return "deploy@fake"


@pytest.fixture
def fake_remote_factory():
    def make(lines, proxy="Up 3 days"):
        return FakeRemote({
            LIST_COMMAND: CommandResult("\n".join(lines) + "\n", "", 0),
            PROXY_STATUS_COMMAND: CommandResult(proxy + "\n", "", 0),
        })
    return make


@pytest.fixture
def broken_remote():
    return FakeRemote({LIST_COMMAND: TransportError("ssh deploy@fake failed: Connection refused")})


@pytest.fixture
def settings(tmp_path):
    from kamal_dash.config import Settings

    return Settings(control_dir=tmp_path)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
