from __future__ import annotations

import os
import shlex
import shutil
from pathlib import Path

from .errors import UnsafePathError
from .security import is_symlink, validate_path

FALLBACK_EDITORS = ("nano", "vim", "vi")


def find_editor() -> list[str] | None:
    """argv prefix for the operator's editor: $EDITOR, $VISUAL, then nano/vim/vi."""
    for var in ("EDITOR", "VISUAL"):
        value = os.environ.get(var, "").strip()
        if value:
            return shlex.split(value)
    for name in FALLBACK_EDITORS:
        path = shutil.which(name)
        if path:
            return [path]
    return None


def ensure_secrets_file(project_dir: Path, path: Path) -> Path:
    """Create the secrets file (0600) inside a 0700 directory if missing.

    Refuses paths outside ``project_dir`` and symlinked secrets files.
    """
    real = validate_path(project_dir, path)
    if is_symlink(path):
        raise UnsafePathError(f"refusing to edit symlinked secrets file: {path}")
    real.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    if not real.exists():
        fd = os.open(real, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    return real
