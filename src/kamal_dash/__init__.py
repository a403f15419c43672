from importlib.metadata import PackageNotFoundError, version as _pkg_version

__all__ = ["__version__", "DIST_NAME"]

DIST_NAME = "kamal-dash"


def _detect_version() -> str:
    try:
        return _pkg_version(DIST_NAME)
    except PackageNotFoundError:
        # Source checkout without installed metadata
        return "0.0.0+dev"


__version__ = _detect_version()
