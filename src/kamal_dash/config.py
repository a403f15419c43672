from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

LOG_CAP_MIN = 1000
LOG_CAP_MAX = 3000
DEFAULT_DESTINATION = "production"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


def resolve_bin(prefer: str) -> str:
    """Absolute path as given, otherwise a PATH lookup (falling back to the bare name)."""
    if os.path.sep in prefer:
        return prefer
    return shutil.which(prefer) or prefer


@dataclass(slots=True)
class Settings:
    ssh_bin: str = "ssh"
    kamal_bin: str = "kamal"
    timeout: float = 30.0
    log_cap: int = LOG_CAP_MAX
    log_file: Path | None = None
    log_level: str = "INFO"
    control_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    def __post_init__(self) -> None:
        self.log_cap = max(LOG_CAP_MIN, min(LOG_CAP_MAX, int(self.log_cap)))
        if self.timeout <= 0:
            self.timeout = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        log_file = os.getenv("KDASH_LOG_FILE", "").strip()
        control_dir = os.getenv("KDASH_CONTROL_DIR", "").strip()
        return cls(
            ssh_bin=os.getenv("KDASH_SSH_BIN", "ssh").strip() or "ssh",
            kamal_bin=os.getenv("KDASH_KAMAL_BIN", "kamal").strip() or "kamal",
            timeout=_env_float("KDASH_TIMEOUT", 30.0),
            log_cap=_env_int("KDASH_LOG_CAP", LOG_CAP_MAX),
            log_file=Path(log_file).expanduser() if log_file else None,
            log_level=os.getenv("KDASH_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            control_dir=Path(control_dir) if control_dir else Path(tempfile.gettempdir()),
        )


@dataclass(slots=True)
class SessionDestination:
    """One deploy target read from config/deploy*.yml."""

    name: str
    config_path: Path
    service: str
    config: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def label(self) -> str:
        return f"{self.service} ({self.name or DEFAULT_DESTINATION})"


def _load_yaml(path: Path) -> dict[str, Any] | None:
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        logger.debug("skipping %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        return None
    return data


def _service_of(cfg: dict[str, Any]) -> str | None:
    s = cfg.get("service")
    return s if isinstance(s, str) and s else None


def find_deploy_configs(project_dir: Path | str) -> list[SessionDestination]:
    """Return the deploy destinations of a project directory.

    deploy.yml is the shared base. When deploy.<name>.yml overlays exist only
    they are returned, inheriting ``service`` from the base; otherwise the base
    is the single destination with an empty name.
    """
    config_dir = Path(project_dir) / "config"
    if not config_dir.is_dir():
        return []

    base: SessionDestination | None = None
    destinations: list[SessionDestination] = []
    for path in sorted(config_dir.iterdir()):
        if not path.is_file() or path.suffix not in (".yml", ".yaml"):
            continue
        if not path.name.startswith("deploy."):
            continue
        cfg = _load_yaml(path)
        if cfg is None:
            continue
        if path.stem == "deploy":
            base = SessionDestination("", path, _service_of(cfg) or "default", cfg)
        else:
            dest_name = path.stem[len("deploy."):]
            destinations.append(SessionDestination(dest_name, path, _service_of(cfg) or dest_name, cfg))

    if destinations:
        if base is not None:
            for d in destinations:
                if _service_of(d.config) is None:
                    d.service = base.service
        return destinations
    return [base] if base is not None else []


def secrets_path(project_dir: Path | str, dest: SessionDestination | None) -> Path:
    base = Path(project_dir) / ".kamal" / "secrets"
    if dest is not None and dest.name:
        return base.with_name(f"secrets-{dest.name}")
    return base
