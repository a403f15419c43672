import shutil
import subprocess
from pathlib import Path
from typing import Optional

import typer

from . import __version__
from .config import Settings, find_deploy_configs, resolve_bin
from .discovery import app_version, count_running, discover_apps
from .errors import ConfigError, DiscoveryError, TransportError, UnsafePathError
from .logging_ext import setup_logging
from .security import validate_cwd
from .ssh import RemoteHost, detect_user
from .util import is_tty, json_line


app = typer.Typer(
    name="kdash",
    add_completion=False,
    invoke_without_command=True,
    help=(
        "Terminal dashboard for Kamal deployments.\n\n"
        "Usage:\n"
        "  kdash [PATH]                 Project mode: run kamal for config/deploy*.yml under PATH\n"
        "  kdash user@host[:port]       Server mode: discover Kamal apps on a host over ssh\n"
        "  kdash apps <host> [--json]   List discovered apps (tab-separated)\n"
        "  kdash destinations [PATH]    List deploy destinations\n"
        "  kdash doctor [--host H]      Check ssh, kamal and the dashboard dependencies"
    ),
    context_settings={"help_option_names": ["-h", "--help"]},
)


@app.callback()
def _root(
    ctx: typer.Context,
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        is_eager=True,
    ),
    log_file: Optional[Path] = typer.Option(
        None, "--log-file", help="Write diagnostic logs here (default: $KDASH_LOG_FILE)"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Diagnostic log level (default: $KDASH_LOG_LEVEL or INFO)"
    ),
):
    if version:
        typer.echo(__version__)
        raise typer.Exit()
    settings = Settings.from_env()
    if log_file is not None:
        settings.log_file = log_file
    if log_level:
        settings.log_level = log_level.upper()
    setup_logging(settings.log_level, settings.log_file)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        _run_project(settings, Path.cwd())


def _settings(ctx: typer.Context) -> Settings:
    obj = ctx.find_root().obj
    return obj if isinstance(obj, Settings) else Settings.from_env()


def _remote(spec: str, settings: Settings) -> RemoteHost:
    ssh_bin = resolve_bin(settings.ssh_bin)
    try:
        remote = RemoteHost.parse(
            spec, ssh_bin=ssh_bin, timeout=settings.timeout, control_dir=settings.control_dir
        )
    except ValueError as e:
        typer.echo(f"Invalid host: {e}", err=True)
        raise typer.Exit(code=2)
    if not remote.user:
        remote.user = detect_user(remote.host, ssh_bin)
    return remote


def _launch(session) -> None:
    if not is_tty():
        typer.echo("kdash needs an interactive terminal; use `kdash apps` or `kdash destinations` in scripts.", err=True)
        raise typer.Exit(code=1)
    try:
        import textual  # noqa: F401
    except Exception:
        typer.echo("Dashboard requires 'textual'. Install it with: pip install kamal-dash", err=True)
        raise typer.Exit(code=1)

    # Lazy import to avoid importing Textual at module import time
    from .dash.app import run_dash

    run_dash(session)


def _run_project(settings: Settings, path: Path) -> None:
    try:
        project_dir = validate_cwd(path)
    except (ConfigError, UnsafePathError) as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)

    from .dash.session import ProjectSession

    session = ProjectSession(project_dir, settings)
    if not session.destinations:
        typer.echo(f"No config/deploy*.yml found in {project_dir}; kamal will use its defaults.", err=True)
    _launch(session)


@app.command()
def version():
    """Show CLI version (semver)."""
    typer.echo(__version__)


@app.command()
def project(
    ctx: typer.Context,
    path: Path = typer.Argument(Path("."), help="Project directory containing config/deploy.yml"),
):
    """Open the dashboard in project mode (runs kamal locally)."""
    _run_project(_settings(ctx), path)


@app.command()
def server(
    ctx: typer.Context,
    host: str = typer.Argument(..., help="[user@]host[:port]"),
):
    """Open the dashboard in server mode (docker over ssh)."""
    settings = _settings(ctx)
    remote = _remote(host, settings)
    typer.echo(f"Connecting to {remote.display()}...")
    try:
        remote.test_connection()
    except TransportError as e:
        typer.echo(f"Connection failed: {e}", err=True)
        raise typer.Exit(code=1)

    from .dash.session import ServerSession

    typer.echo("Discovering Kamal apps...")
    session = ServerSession(remote, settings)
    try:
        session.discover()
    except DiscoveryError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Found {len(session.apps)} app(s)")
    _launch(session)


@app.command()
def apps(
    ctx: typer.Context,
    host: str = typer.Argument(..., help="[user@]host[:port]"),
    json_out: bool = typer.Option(False, "--json", help="One JSON object per line"),
):
    """List Kamal apps on a host. Prints: service\tdestination\trunning/total\tversion\taccessories\tproxy"""
    remote = _remote(host, _settings(ctx))
    try:
        found = discover_apps(remote)
    except DiscoveryError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    for a in found:
        running = count_running(a.records)
        accessories = [acc.name for acc in a.accessories]
        if json_out:
            typer.echo(json_line({
                "service": a.service,
                "destination": a.destination,
                "running": running,
                "total": len(a.records),
                "version": app_version(a.records),
                "accessories": accessories,
                "proxy": a.proxy_status,
            }))
        else:
            typer.echo(
                f"{a.service}\t{a.destination}\t{running}/{len(a.records)}\t"
                f"{app_version(a.records)}\t{','.join(accessories) or '-'}\t{a.proxy_status}"
            )


@app.command()
def destinations(
    path: Path = typer.Argument(Path("."), help="Project directory"),
    json_out: bool = typer.Option(False, "--json", help="One JSON object per line"),
):
    """List deploy destinations. Prints: name\tservice\tconfig"""
    found = find_deploy_configs(path)
    if not found:
        typer.echo(f"No config/deploy*.yml found in {path}", err=True)
        raise typer.Exit(code=1)
    for d in found:
        if json_out:
            typer.echo(json_line({"name": d.name, "service": d.service, "config": str(d.config_path)}))
        else:
            typer.echo(f"{d.name or '-'}\t{d.service}\t{d.config_path}")


@app.command()
def doctor(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Also test ssh to this host"),
):
    """Diagnose ssh, kamal and the dashboard dependencies."""
    settings = _settings(ctx)

    ssh_bin = resolve_bin(settings.ssh_bin)
    ssh_ok = bool(shutil.which(ssh_bin))

    kamal_bin = resolve_bin(settings.kamal_bin)
    kamal_ok, kamal_ver = False, ""
    try:
        r = subprocess.run([kamal_bin, "version"], capture_output=True, text=True, timeout=15)
        kamal_ok = r.returncode == 0
        lines = (r.stdout or r.stderr).strip().splitlines()[:1]
        kamal_ver = lines[0] if lines else ""
    except (OSError, subprocess.TimeoutExpired):
        kamal_ok = False

    try:
        import textual  # noqa: F401
        textual_ok = True
    except Exception:
        textual_ok = False

    typer.echo(f"ssh: {'ok' if ssh_ok else 'FAIL'} ({ssh_bin})")
    typer.echo(f"kamal: {'ok' if kamal_ok else 'FAIL'} {('(' + kamal_ver + ')') if kamal_ver else ''}".rstrip())
    typer.echo(f"textual: {'ok' if textual_ok else 'FAIL'}")
    typer.echo(f"log file: {settings.log_file or 'disabled'}")

    if host:
        remote = _remote(host, settings)
        try:
            remote.test_connection()
            typer.echo(f"ssh {remote.display()}: ok")
        except TransportError as e:
            typer.echo(f"ssh {remote.display()}: FAIL ({e})")
            raise typer.Exit(code=1)
