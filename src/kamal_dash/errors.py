from __future__ import annotations

from typing import Sequence


class KamalDashError(RuntimeError):
    pass


class TransportError(KamalDashError):
    """The remote target could not be launched or reached."""


class CommandTimeout(TransportError):
    def __init__(self, argv: Sequence[str], timeout: float) -> None:
        self.argv = list(argv)
        self.timeout = timeout
        super().__init__(f"command timed out after {timeout:g}s")


class DiscoveryError(KamalDashError):
    pass


class ConfigError(KamalDashError):
    pass


class UnsafePathError(KamalDashError):
    pass
