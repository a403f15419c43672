from __future__ import annotations

import json
import logging
import shlex
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Protocol

from .commands import CommandResult
from .config import DEFAULT_DESTINATION
from .errors import DiscoveryError, TransportError

logger = logging.getLogger(__name__)

SEPARATOR = "-"
PRIMARY_ROLE = "web"
PROXY_NAME = "kamal-proxy"

# One JSON object per container; Labels arrive as docker's "k=v,k2=v2" string.
LIST_COMMAND = (
    "docker ps -a --format '{\"ID\":\"{{.ID}}\",\"Name\":\"{{.Names}}\",\"Image\":\"{{.Image}}\","
    "\"Status\":\"{{.Status}}\",\"State\":\"{{.State}}\",\"Labels\":\"{{.Labels}}\","
    "\"Created\":\"{{.CreatedAt}}\"}'"
)
PROXY_STATUS_COMMAND = f'docker ps --filter "name={PROXY_NAME}" --format "{{{{.Status}}}}" | head -1'
PROXY_ID_COMMAND = f'docker ps --filter "name={PROXY_NAME}" --format "{{{{.ID}}}}" | head -1'
PROXY_DETAILS_COMMAND = (
    f'docker ps --filter "name={PROXY_NAME}" '
    '--format "Name: {{.Names}}\\nImage: {{.Image}}\\nStatus: {{.Status}}\\nPorts: {{.Ports}}"'
)


class Remote(Protocol):
    def run(self, command: str, timeout: float | None = None) -> CommandResult: ...


@dataclass(frozen=True, slots=True)
class ProcessRecord:
    """One container as reported by a single discovery pass."""

    id: str
    name: str
    image: str = ""
    status: str = ""
    state: str = ""
    labels: Mapping[str, str] = field(default_factory=dict, hash=False)
    created: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", MappingProxyType(dict(self.labels)))

    @property
    def service(self) -> str:
        return self.labels.get("service", "")

    @property
    def destination(self) -> str:
        return self.labels.get("destination", "") or DEFAULT_DESTINATION

    @property
    def role(self) -> str:
        return self.labels.get("role", "")

    @property
    def running(self) -> bool:
        return self.state == "running"


@dataclass(slots=True)
class Accessory:
    name: str
    records: list[ProcessRecord] = field(default_factory=list)


@dataclass(slots=True)
class Application:
    service: str
    destination: str
    records: list[ProcessRecord] = field(default_factory=list)
    accessories: list[Accessory] = field(default_factory=list)
    proxy_status: str = ""

    @property
    def label(self) -> str:
        return f"{self.service} ({self.destination})"

    def accessory(self, name: str) -> Accessory | None:
        for acc in self.accessories:
            if acc.name == name:
                return acc
        return None

    def all_records(self) -> list[ProcessRecord]:
        out = list(self.records)
        for acc in self.accessories:
            out.extend(acc.records)
        return out


@dataclass(frozen=True, slots=True)
class ContainerEntry:
    record: ProcessRecord
    role: str


def parse_labels(text: str) -> dict[str, str]:
    labels: dict[str, str] = {}
    for pair in text.split(","):
        key, sep, value = pair.partition("=")
        key = key.strip()
        if sep and key:
            labels[key] = value.strip()
    return labels


def parse_record(line: str) -> ProcessRecord | None:
    try:
        raw = json.loads(line)
    except ValueError:
        return None
    if not isinstance(raw, dict):
        return None
    labels = raw.get("Labels", "")
    return ProcessRecord(
        id=str(raw.get("ID", "")),
        name=str(raw.get("Name", "")),
        image=str(raw.get("Image", "")),
        status=str(raw.get("Status", "")),
        state=str(raw.get("State", "")),
        labels=parse_labels(labels) if isinstance(labels, str) else {},
        created=str(raw.get("Created", "")),
    )


def parse_records(output: str) -> list[ProcessRecord]:
    """Parse listing output line by line; malformed lines are dropped."""
    records: list[ProcessRecord] = []
    dropped = 0
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        rec = parse_record(line)
        if rec is None:
            dropped += 1
            continue
        records.append(rec)
    if dropped:
        logger.debug("dropped %d malformed listing line(s)", dropped)
    return records


def detect_base_app(service: str, all_services: Iterable[str], sep: str = SEPARATOR) -> tuple[str, str]:
    """Return (base service, accessory name) for a service label.

    Prefixes are tried from the longest proper prefix down; the first one that
    is itself a known service owns this one and the rest of the name is the
    accessory. Without a match the service is its own base with no accessory.
    """
    known = all_services if isinstance(all_services, (set, frozenset)) else set(all_services)
    parts = service.split(sep)
    for i in range(len(parts) - 1, 0, -1):
        prefix = sep.join(parts[:i])
        if prefix in known:
            return prefix, sep.join(parts[i:])
    return service, ""


def group_records(records: Iterable[ProcessRecord]) -> list[Application]:
    """Group records into applications keyed by (base service, destination).

    Records without a service label are not managed here and are skipped.
    Output keeps first-seen order; callers sort for display.
    """
    managed = [r for r in records if r.service]
    all_services = {r.service for r in managed}

    apps: dict[tuple[str, str], Application] = {}
    for rec in managed:
        base, accessory_name = detect_base_app(rec.service, all_services)
        key = (base, rec.destination)
        app = apps.get(key)
        if app is None:
            app = apps[key] = Application(service=base, destination=rec.destination)

        role = rec.role or accessory_name
        if not role or role == PRIMARY_ROLE:
            app.records.append(rec)
            continue
        acc = app.accessory(role)
        if acc is None:
            app.accessories.append(Accessory(role, [rec]))
        else:
            acc.records.append(rec)
    return list(apps.values())


def check_proxy_status(remote: Remote) -> str:
    try:
        res = remote.run(PROXY_STATUS_COMMAND)
    except TransportError as e:
        logger.debug("proxy probe failed: %s", e)
        return "unknown"
    if not res.ok:
        return "unknown"
    out = res.stdout.strip()
    if not out:
        return "not running"
    if "Up" in out:
        return "running"
    return out


def discover_apps(remote: Remote) -> list[Application]:
    """One listing pass plus one proxy probe, sorted by (service, destination)."""
    try:
        res = remote.run(LIST_COMMAND)
    except TransportError as e:
        raise DiscoveryError(f"failed to list containers: {e}") from e
    if not res.ok:
        detail = res.stderr.strip() or f"exit {res.exit_code}"
        raise DiscoveryError(f"failed to list containers: {detail}")

    apps = group_records(parse_records(res.stdout))
    proxy = check_proxy_status(remote)
    for app in apps:
        app.proxy_status = proxy
    apps.sort(key=lambda a: (a.service, a.destination))
    logger.info("discovered %d app(s)", len(apps))
    return apps


def container_entries(app: Application | None) -> list[ContainerEntry]:
    """Primary records first (role "web"), then each accessory in order."""
    if app is None:
        return []
    entries = [ContainerEntry(r, PRIMARY_ROLE) for r in app.records]
    for acc in app.accessories:
        entries.extend(ContainerEntry(r, acc.name) for r in acc.records)
    return entries


def app_version(records: list[ProcessRecord]) -> str:
    if not records:
        return "unknown"
    image = records[0].image
    idx = image.rfind(":")
    if idx > 0:
        return image[idx + 1:]
    return image


def count_running(records: Iterable[ProcessRecord]) -> int:
    return sum(1 for r in records if r.running)


def stream_logs_command(container_id: str, lines: int = 100) -> str:
    return f"docker logs -f --tail {int(lines)} {shlex.quote(container_id)} 2>&1"


def stream_app_logs_command(container_ids: Iterable[str], lines: int = 100) -> str:
    """Follow several containers at once; one background tail per container."""
    ids = list(container_ids)
    if not ids:
        raise ValueError("no containers to follow")
    if len(ids) == 1:
        return stream_logs_command(ids[0], lines)
    tails = " & ".join(stream_logs_command(cid, lines) for cid in ids)
    return f"{tails} & wait"


def container_command(verb: str, container_id: str) -> str:
    if verb not in ("start", "stop", "restart"):
        raise ValueError(f"unsupported container verb: {verb}")
    return f"docker {verb} {shlex.quote(container_id)}"


def inspect_command(container_id: str) -> str:
    return (
        "docker inspect --format '{{.State.Status}} | Started: {{.State.StartedAt}} | "
        f"Image: {{{{.Config.Image}}}}' {shlex.quote(container_id)}"
    )


def shell_probe_command(container_id: str, shell: str) -> str:
    return f"docker exec {shlex.quote(container_id)} which {shlex.quote(shell)} 2>/dev/null"
