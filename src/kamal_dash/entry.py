import sys
from typing import List

from .cli import app


SUBCOMMANDS = {
    "project",
    "server",
    "apps",
    "destinations",
    "doctor",
    "version",
    "--version",
    "-V",
    "-h",
    "--help",
}


def main(argv: List[str] | None = None):
    if argv is None:
        argv = sys.argv[1:]

    # Handle version early to avoid Click group error
    if argv and argv[0] in {"--version", "-V"}:
        from . import __version__
        print(__version__)
        return

    # Shorthand: "kdash user@host[:port]" is server mode, "kdash PATH" is project mode.
    # Leading options (--log-file, --log-level) stay in front of the subcommand.
    opts: List[str] = []
    rest = list(argv)
    while rest and rest[0].startswith("-") and rest[0] not in SUBCOMMANDS:
        opts.append(rest.pop(0))
        if "=" not in opts[-1] and rest:
            opts.append(rest.pop(0))

    if rest and rest[0] not in SUBCOMMANDS and not rest[0].startswith("-"):
        first = rest[0]
        sub = "server" if "@" in first else "project"
        sys.argv = ["kdash", *opts, sub, *rest]
        return app()

    # Otherwise, dispatch to Typer app (subcommands / flags)
    sys.argv = ["kdash", *argv]
    return app()
