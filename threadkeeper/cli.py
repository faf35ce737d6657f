"""
THREADKEEPER CLI

Daemon:
  - threadkeeper init [owner/repo]        (configure the bot for a repository)
  - threadkeeper start [--detach]         (poll every configured repository)
  - threadkeeper stop / restart

Sessions:
  - threadkeeper status / list / attach / logs / history
  - threadkeeper pause / resume / fresh / retry / undo

Whitelist:
  - threadkeeper whitelist show|add|remove [--repo owner/repo]
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
import sys
import time
from datetime import datetime
from typing import List, Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from threadkeeper.config_loader import (
    ConfigError,
    GlobalConfig,
    InvalidPatternError,
    RepoId,
    RepoPaths,
    daemon_log_file,
    detect_repo_from_cwd,
    get_all_repos,
    global_config_file,
    home_dir,
    init_home,
    load_global_config,
    load_global_whitelist,
    load_repo_config,
    load_repo_whitelist,
    pid_file,
    save_global_config,
    save_repo_overrides,
)
from threadkeeper.guard import add_global_pattern, add_repo_pattern, remove_global_pattern, remove_repo_pattern
from threadkeeper.history import read_history
from threadkeeper.identity import BANNER, __codename__, __tagline__, __version__
from threadkeeper.monitor import strip_ansi
from threadkeeper.poller import retry_branch, run_all, undo_last_commit
from threadkeeper.registry import RegistryError, SessionRegistry
from threadkeeper.tmux import TmuxManager, list_all_windows

# Load .env from current directory or home
load_dotenv()
load_dotenv(home_dir() / ".env")

app = typer.Typer(
    name="threadkeeper",
    help=f"{__codename__} — {__tagline__}\nDrives coding agents from PR and issue threads.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
whitelist_app = typer.Typer(help="Show or edit the command whitelist.", no_args_is_help=True)
app.add_typer(whitelist_app, name="whitelist")

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


def _resolve_repo(repo: Optional[str]) -> RepoId:
    try:
        if repo:
            return RepoId.parse(repo)
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    detected = detect_repo_from_cwd()
    if detected is None:
        console.print("[red]No GitHub remote found here. Pass --repo owner/repo.[/]")
        raise typer.Exit(1)
    return detected


def _read_pid() -> int | None:
    path = pid_file()
    if not path.exists():
        return None
    try:
        return int(path.read_text().strip())
    except ValueError:
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _daemon_pid() -> int | None:
    pid = _read_pid()
    if pid is not None and _pid_alive(pid):
        return pid
    return None


def _spawn_detached(repos: list[str], verbose: bool) -> int:
    cmd = [sys.executable, "-m", "threadkeeper", "start"]
    for r in repos:
        cmd += ["--repo", r]
    if verbose:
        cmd.append("--verbose")
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    return proc.pid


def _format_ts(ts: float | str) -> str:
    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")
    return str(ts)[:19].replace("T", " ")


# ---------------------------------------------------------------------------
# Setup + daemon
# ---------------------------------------------------------------------------

@app.command()
def init(
    repo: Optional[str] = typer.Argument(None, help="owner/repo (default: detected from git remotes)"),
    bot: Optional[str] = typer.Option(None, "--bot", "-b", help="GitHub username the bot posts as"),
    users: Optional[str] = typer.Option(None, "--users", "-u", help="Comma-separated authorized GitHub users"),
    backend: Optional[str] = typer.Option(None, "--backend", help="Agent backend: claude or codex"),
    token: Optional[str] = typer.Option(None, "--token", help="GitHub token (default: GH_TOKEN / gh auth)"),
    interval: Optional[int] = typer.Option(None, "--interval", help="Poll interval in seconds"),
):
    """Configure THREADKEEPER for a repository."""
    _print_banner()
    repo_id = _resolve_repo(repo)
    init_home()

    first_run = not global_config_file().exists()
    current = load_global_config()

    bot = bot or current.bot_username or typer.prompt("Bot GitHub username")
    if users is not None:
        user_list = [u.strip().lstrip("@") for u in users.split(",") if u.strip()]
    elif current.authorized_users:
        user_list = current.authorized_users
    else:
        answer = typer.prompt("Authorized GitHub users (comma-separated)")
        user_list = [u.strip().lstrip("@") for u in answer.split(",") if u.strip()]

    try:
        wanted = GlobalConfig(
            github_token=token if token is not None else current.github_token,
            bot_username=bot,
            authorized_users=user_list,
            backend=backend or current.backend,
            poll_interval_seconds=interval or current.poll_interval_seconds,
            interactive=current.interactive,
            idle_timeout_seconds=current.idle_timeout_seconds,
            delete_workspace_on_close=current.delete_workspace_on_close,
            base_branch=current.base_branch,
        )
    except ValueError as e:
        console.print(f"[red]Invalid settings: {e}[/]")
        raise typer.Exit(1)

    if first_run:
        save_global_config(wanted)
        overrides = {}
    else:
        base = current.model_dump()
        overrides = {k: v for k, v in wanted.model_dump().items() if base.get(k) != v}
    save_repo_overrides(repo_id, overrides)
    RepoPaths(repo_id).ensure()

    config = load_repo_config(repo_id)
    table = Table(title=f"{repo_id}", border_style="cyan")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Bot", config.bot_tag)
    table.add_row("Authorized users", ", ".join(config.authorized_users) or "[red]none[/]")
    table.add_row("Backend", config.backend)
    table.add_row("Poll interval", f"{config.poll_interval_seconds}s")
    table.add_row("Token", "configured" if config.github_token else "from environment / gh auth")
    console.print(table)
    console.print(f"\n[green]Initialized {repo_id}.[/] Run [bold]threadkeeper start[/] to begin polling.")


@app.command()
def start(
    repo: Optional[List[str]] = typer.Option(None, "--repo", "-r", help="owner/repo (repeatable; default: all)"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Run in the background"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start polling configured repositories."""
    running = _daemon_pid()
    if running is not None and running != os.getpid():
        console.print(f"[yellow]Already running (pid {running}).[/]")
        raise typer.Exit(1)

    try:
        repos = [RepoId.parse(r) for r in repo] if repo else get_all_repos()
    except ConfigError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    if not repos:
        console.print("[red]No repositories configured. Run `threadkeeper init` first.[/]")
        raise typer.Exit(1)

    if detach:
        pid = _spawn_detached([r.slug for r in repos], verbose)
        console.print(f"[green]Started in the background (pid {pid}).[/] Logs: {daemon_log_file()}")
        return

    _print_banner()
    _configure_logging(verbose)
    logger.add(
        daemon_log_file(),
        level="DEBUG" if verbose else "INFO",
        rotation="10 MB",
        retention=5,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level:<7} | {message}",
    )
    init_home()
    pid_file().write_text(str(os.getpid()))
    console.print(f"[cyan]Polling {', '.join(r.slug for r in repos)}[/]")
    try:
        schedulers = asyncio.run(run_all(repos))
    finally:
        pid_file().unlink(missing_ok=True)

    failed = [s for s in schedulers if s.failure is not None]
    for s in failed:
        console.print(f"[red]{s.poller.repo} stopped after an error: {s.failure}[/]")
    if failed:
        raise typer.Exit(1)


@app.command()
def stop():
    """Stop the background poller."""
    pid = _read_pid()
    if pid is None or not _pid_alive(pid):
        pid_file().unlink(missing_ok=True)
        console.print("[dim]Not running.[/]")
        return
    os.kill(pid, signal.SIGTERM)
    console.print(f"[green]Sent SIGTERM to {pid}.[/]")


@app.command()
def restart(
    repo: Optional[List[str]] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Stop the background poller and start it again detached."""
    pid = _daemon_pid()
    if pid is not None:
        os.kill(pid, signal.SIGTERM)
        deadline = time.time() + 30
        while _pid_alive(pid) and time.time() < deadline:
            time.sleep(0.5)
        if _pid_alive(pid):
            console.print(f"[red]{pid} did not exit.[/]")
            raise typer.Exit(1)
    new_pid = _spawn_detached(list(repo or []), verbose)
    console.print(f"[green]Restarted (pid {new_pid}).[/]")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@app.command()
def status(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="owner/repo (default: all)"),
):
    """Show the poller and every tracked session."""
    pid = _daemon_pid()
    console.print(f"Poller: {'[green]running[/] (pid ' + str(pid) + ')' if pid else '[dim]stopped[/]'}")

    repos = [_resolve_repo(repo)] if repo else get_all_repos()
    table = Table(title="Sessions", border_style="cyan")
    table.add_column("Repo")
    table.add_column("Branch")
    table.add_column("#")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Waiting on")

    colors = {"running": "green", "paused": "yellow", "waiting_approval": "red", "waiting_clarification": "magenta"}
    for repo_id in repos:
        registry = SessionRegistry(repo_id)
        try:
            sessions = registry.all()
        except RegistryError as e:
            console.print(f"[red]{e}[/]")
            continue
        for branch, s in sorted(sessions.items()):
            waiting = ""
            if s.pending_approval:
                waiting = f"`{s.pending_approval.failed_part}`"
            elif s.pending_clarification:
                waiting = s.pending_clarification.question
            color = colors.get(s.status, "white")
            table.add_row(
                repo_id.slug,
                branch,
                f"{'issue ' if s.thread == 'issue' else ''}{s.number}",
                f"[{color}]{s.status}[/]",
                _format_ts(s.started_at),
                escape(waiting),
            )
    console.print(table)


@app.command("list")
def list_windows():
    """List agent windows on the THREADKEEPER tmux server."""
    windows = asyncio.run(list_all_windows())
    if not windows:
        console.print("[dim]No agent windows.[/]")
        return
    table = Table(title="Agent windows", border_style="cyan")
    table.add_column("Session")
    table.add_column("Window")
    table.add_column("Active")
    for w in windows:
        table.add_row(w.session, w.window, "✓" if w.active else "")
    console.print(table)


@app.command()
def attach(
    branch: str = typer.Argument(..., help="Branch whose agent window to attach to"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
):
    """Attach the terminal to a branch's agent window."""
    cmd = TmuxManager(_resolve_repo(repo)).attach_command(branch)
    os.execvp(cmd[0], cmd)


@app.command()
def pause(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
):
    """Stop reading a branch's output. The agent keeps running."""
    registry = SessionRegistry(_resolve_repo(repo))
    if registry.pause(branch):
        console.print(f"[yellow]Paused {branch}.[/]")
    else:
        console.print(f"[red]No running session on {branch}.[/]")
        raise typer.Exit(1)


@app.command()
def resume(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
):
    """Resume monitoring a paused branch."""
    registry = SessionRegistry(_resolve_repo(repo))
    if registry.resume(branch):
        console.print(f"[green]Resumed {branch}.[/]")
    else:
        console.print(f"[red]No paused session on {branch}.[/]")
        raise typer.Exit(1)


@app.command()
def fresh(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
):
    """Start the next run on a branch without the previous conversation."""
    registry = SessionRegistry(_resolve_repo(repo))
    if registry.clear_resumable(branch):
        console.print(f"[green]{branch} will start fresh next time.[/]")
    else:
        console.print(f"[dim]{branch} was not resumable.[/]")


@app.command()
def retry(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
):
    """Drop the last run on a branch and re-process its requests next cycle."""
    keys = asyncio.run(retry_branch(_resolve_repo(repo), branch))
    console.print(f"[green]{branch}: {len(keys)} request(s) will be picked up again.[/]")


@app.command()
def undo(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Revert the last commit THREADKEEPER pushed to a branch."""
    _configure_logging(verbose)
    result = asyncio.run(undo_last_commit(_resolve_repo(repo), branch))
    if result is None:
        console.print(f"[dim]No pushed commit to undo on {branch}.[/]")
        raise typer.Exit(1)
    sha, revert_sha = result
    console.print(f"[green]Reverted {sha} with {revert_sha}.[/]")


@app.command()
def logs(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
):
    """Show the tail of a branch's agent output."""
    path = RepoPaths(_resolve_repo(repo)).log_file(branch)
    if not path.exists():
        console.print(f"[dim]No log for {branch}.[/]")
        raise typer.Exit(1)
    text = strip_ansi(path.read_bytes().decode("utf-8", errors="replace"))
    for line in text.splitlines()[-lines:]:
        console.print(line, markup=False, highlight=False)


@app.command()
def history(
    branch: str = typer.Argument(...),
    repo: Optional[str] = typer.Option(None, "--repo", "-r"),
    count: int = typer.Option(20, "--count", "-n", help="Number of entries to show"),
):
    """Show the audit trail of a branch."""
    events = read_history(_resolve_repo(repo), branch)
    if not events:
        console.print(f"[dim]No history for {branch}.[/]")
        return
    table = Table(title=f"History: {branch}", border_style="cyan")
    table.add_column("Time")
    table.add_column("Event")
    table.add_column("#")
    table.add_column("Details")
    for event in events[-count:]:
        extra = event.model_extra or {}
        details = ", ".join(f"{k}={v}" for k, v in extra.items() if k != "body")
        table.add_row(_format_ts(event.ts), event.type, str(event.pr or ""), escape(details[:120]))
    console.print(table)


# ---------------------------------------------------------------------------
# Whitelist
# ---------------------------------------------------------------------------

@whitelist_app.command("show")
def whitelist_show(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Also show this repository's patterns"),
):
    """List whitelist patterns with their indexes."""
    table = Table(title="Command whitelist", border_style="cyan")
    table.add_column("Scope")
    table.add_column("#")
    table.add_column("Pattern")
    for i, p in enumerate(load_global_whitelist()):
        table.add_row("global", str(i), escape(p))
    if repo:
        repo_id = _resolve_repo(repo)
        for i, p in enumerate(load_repo_whitelist(repo_id)):
            table.add_row(repo_id.slug, str(i), escape(p))
    console.print(table)


@whitelist_app.command("add")
def whitelist_add(
    pattern: str = typer.Argument(..., help="Regular expression a command fragment must match"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Add to this repository only"),
):
    """Add a pattern to the global (or a repository's) whitelist."""
    try:
        added = add_repo_pattern(_resolve_repo(repo), pattern) if repo else add_global_pattern(pattern)
    except InvalidPatternError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)
    if added:
        console.print(f"[green]Added[/] {escape(pattern)}")
    else:
        console.print(f"[dim]Already present:[/] {escape(pattern)}")


@whitelist_app.command("remove")
def whitelist_remove(
    index: int = typer.Argument(..., help="Index shown by `whitelist show`"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Remove from this repository's list"),
):
    """Remove a pattern by index."""
    try:
        removed = remove_repo_pattern(_resolve_repo(repo), index) if repo else remove_global_pattern(index)
    except IndexError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(f"[green]Removed[/] {escape(removed)}")


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
