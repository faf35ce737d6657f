"""
THREADKEEPER process isolation — one tmux window per branch.

Agents run inside windows of a dedicated tmux server (`-L threadkeeper`),
so they survive the controller and can be attached to by a human.
Window output is mirrored to the branch log with `pipe-pane`.
"""

from __future__ import annotations

import asyncio
import re
import shlex
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from threadkeeper.config_loader import RepoId, branch_slug

SOCKET_NAME = "threadkeeper"
SESSION_PREFIX = "tk-"


class TmuxError(Exception):
    pass


class WindowInfo(BaseModel):
    session: str
    window: str
    active: bool = False


def session_name(repo: RepoId) -> str:
    return SESSION_PREFIX + re.sub(r"[^A-Za-z0-9_-]", "_", f"{repo.owner}-{repo.repo}")


def window_name(branch: str) -> str:
    # '.' and ':' are target separators in tmux
    return re.sub(r"[.:]", "_", branch_slug(branch))


async def _run_tmux(*args: str, timeout: int = 15) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            "tmux", "-L", SOCKET_NAME, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TmuxError(f"Could not run tmux: {e}") from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise TmuxError(f"tmux {args[0]} timed out")
    return proc.returncode or 0, (stdout or b"").decode(), (stderr or b"").decode()


class TmuxManager:
    """Named, attachable, independently surviving agent windows for one repository."""

    def __init__(self, repo: RepoId):
        self.repo = repo
        self.session = session_name(repo)

    def target(self, branch: str) -> str:
        return f"{self.session}:{window_name(branch)}"

    async def _tmux(self, *args: str) -> str:
        code, out, err = await _run_tmux(*args)
        if code != 0:
            raise TmuxError(f"tmux {' '.join(args[:2])} failed: {err.strip()}")
        return out

    async def session_exists(self) -> bool:
        code, _, _ = await _run_tmux("has-session", "-t", self.session)
        return code == 0

    async def ensure_session(self) -> None:
        if not await self.session_exists():
            await self._tmux("new-session", "-d", "-s", self.session, "-x", "200", "-y", "50")
            logger.debug(f"[TMUX] Created session {self.session}")

    async def window_exists(self, branch: str) -> bool:
        code, out, _ = await _run_tmux("list-windows", "-t", self.session, "-F", "#{window_name}")
        if code != 0:
            return False
        return window_name(branch) in out.splitlines()

    async def create_window(self, branch: str, cwd: Path) -> None:
        await self.ensure_session()
        if await self.window_exists(branch):
            return
        await self._tmux("new-window", "-d", "-t", self.session, "-n", window_name(branch), "-c", str(cwd))
        logger.debug(f"[TMUX] Created window {self.target(branch)}")

    async def pipe_output(self, branch: str, log_file: Path) -> None:
        """Mirror the window to log_file. `-o` leaves an existing pipe in place."""
        log_file.parent.mkdir(parents=True, exist_ok=True)
        await self._tmux("pipe-pane", "-o", "-t", self.target(branch), f"cat >> {shlex.quote(str(log_file))}")

    async def send_keys(self, branch: str, text: str, enter: bool = True) -> None:
        """Type text literally into the window, then optionally press Enter."""
        await self._tmux("send-keys", "-t", self.target(branch), "-l", text)
        if enter:
            await self._tmux("send-keys", "-t", self.target(branch), "Enter")

    async def press(self, branch: str, key: str) -> None:
        """Send a named key (e.g. "Enter", "Escape") without literal interpretation."""
        await self._tmux("send-keys", "-t", self.target(branch), key)

    async def run_in_window(self, branch: str, command: str) -> None:
        await self.send_keys(branch, command, enter=True)

    async def destroy_window(self, branch: str) -> None:
        code, _, err = await _run_tmux("kill-window", "-t", self.target(branch))
        if code != 0:
            logger.debug(f"[TMUX] kill-window {self.target(branch)}: {err.strip()}")

    async def list_windows(self) -> list[WindowInfo]:
        return [w for w in await list_all_windows() if w.session == self.session]

    def attach_command(self, branch: str | None = None) -> list[str]:
        target = self.target(branch) if branch else self.session
        return ["tmux", "-L", SOCKET_NAME, "attach-session", "-t", target]


async def list_all_windows() -> list[WindowInfo]:
    """Every THREADKEEPER window on the dedicated server."""
    code, out, _ = await _run_tmux(
        "list-windows", "-a", "-F", "#{session_name}|#{window_name}|#{window_active}",
    )
    if code != 0:
        return []
    windows = []
    for line in out.splitlines():
        parts = line.split("|")
        if len(parts) != 3 or not parts[0].startswith(SESSION_PREFIX):
            continue
        windows.append(WindowInfo(session=parts[0], window=parts[1], active=parts[2] == "1"))
    return windows
