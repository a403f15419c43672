from __future__ import annotations

import os
from pathlib import Path

from .errors import ConfigError, UnsafePathError

# Directories a project root must never be.
_FORBIDDEN_ROOTS = {"/", "/etc", "/bin", "/sbin", "/usr", "/var", "/boot", "/dev", "/proc", "/sys"}


def _real(path: Path) -> Path:
    # Resolve symlinks; for a missing target resolve its parent instead.
    try:
        return path.resolve(strict=True)
    except (OSError, RuntimeError):
        return path.parent.resolve() / path.name


def validate_path(base: Path | str, target: Path | str) -> Path:
    """Return the real target path, raising UnsafePathError if it escapes base."""
    real_base = _real(Path(base).absolute())
    real_target = _real(Path(target).absolute())
    if real_target != real_base and real_base not in real_target.parents:
        raise UnsafePathError(f"path traversal detected: {target} is outside {base}")
    return real_target


def validate_cwd(path: Path | str) -> Path:
    p = Path(path).absolute()
    if not p.is_dir():
        raise ConfigError(f"not a directory: {p}")
    real = p.resolve()
    if str(real) in _FORBIDDEN_ROOTS:
        raise UnsafePathError(f"refusing to use system directory: {real}")
    return real


def is_symlink(path: Path | str) -> bool:
    return os.path.islink(path)
