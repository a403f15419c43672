import json
import sys
from typing import Literal

Status = Literal["success", "error", "info", "warning", "running"]

ICONS: dict[str, str] = {
    "success": "✓",
    "error": "✗",
    "info": "ℹ",
    "warning": "⚠",
    "running": "●",
}


def is_tty() -> bool:
    try:
        return sys.stdout.isatty()
    except Exception:
        return False


def json_line(obj: dict) -> str:
    return json.dumps(obj, separators=(",", ":"))


def status_line(status: Status, message: str) -> str:
    icon = ICONS.get(status)
    return f"{icon} {message}" if icon else message


def format_duration(seconds: float) -> str:
    """Compact human duration: 250ms, 4.2s, 3m7s, 2h5m."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    total = int(seconds)
    if seconds < 3600:
        return f"{total // 60}m{total % 60}s"
    return f"{total // 3600}h{(total // 60) % 60}m"


def truncate(s: str, max_len: int) -> str:
    if len(s) <= max_len:
        return s
    if max_len <= 3:
        return s[:max_len]
    return s[: max_len - 3] + "..."


def split_lines(text: str) -> list[str]:
    """Non-empty lines of text, trailing whitespace kept."""
    return [ln for ln in text.split("\n") if ln.strip()]


def tail_lines(text: str, n: int) -> list[str]:
    """Last n non-empty lines, stripped."""
    lines = [ln.strip() for ln in text.strip().split("\n") if ln.strip()]
    return lines[-n:] if n > 0 else []
