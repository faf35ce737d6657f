"""
THREADKEEPER Workspace Isolation

One shallow clone per branch under <home>/repos/<owner>/<repo>/workspaces/.
Agents edit the working tree; only the controller stages, commits and pushes.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path

from loguru import logger

from threadkeeper.config_loader import RepoId, RepoPaths


class WorkspaceError(Exception):
    pass


def to_ssh_url(clone_url: str) -> str:
    """https://github.com/o/r.git → git@github.com:o/r.git, so the machine's SSH key is used."""
    return re.sub(r"^https://([^/]+)/", r"git@\1:", clone_url)


class Workspace:
    """
    Manages the isolated clone for a single branch.
    """

    def __init__(self, repo: RepoId, branch: str, paths: RepoPaths | None = None):
        self.repo = repo
        self.branch = branch
        self.paths = paths or RepoPaths(repo)

    @property
    def path(self) -> Path:
        return self.paths.workspace_dir(self.branch)

    @property
    def exists(self) -> bool:
        return (self.path / ".git").exists()

    async def ensure(self, clone_url: str, source_branch: str | None = None) -> Path:
        """
        Clone `source_branch` (default: this branch) or, when the clone already
        exists, hard-reset it to the remote tip.
        """
        source = source_branch or self.branch
        if self.exists:
            await self._worktree_git("fetch", "origin", f"+refs/heads/{source}:refs/remotes/origin/{source}")
            await self._worktree_git("reset", "--hard", f"origin/{source}")
            await self._worktree_git("clean", "-fd")
            logger.info(f"[WORKSPACE] Refreshed {self.branch} from origin/{source}")
            return self.path

        self.path.parent.mkdir(parents=True, exist_ok=True)
        await self._run_cmd(
            ["git", "clone", "--depth=1", "--single-branch", "--branch", source,
             to_ssh_url(clone_url), str(self.path)],
            cwd=self.path.parent,
            timeout=300,
        )
        logger.info(f"[WORKSPACE] Cloned {source} into {self.path}")
        return self.path

    async def has_changes(self) -> bool:
        status = await self._worktree_git("status", "--porcelain", capture=True)
        return bool(status.strip())

    async def commit_and_push(self, message: str, push_branch: str | None = None) -> str | None:
        """Stage everything, commit and push. Returns the short sha, or None if nothing changed."""
        if not await self.has_changes():
            logger.info(f"[WORKSPACE] Nothing to commit on {self.branch}.")
            return None

        target = push_branch or self.branch
        await self._worktree_git("add", "-A")
        await self._worktree_git("commit", "-m", message)
        await self._worktree_git("push", "--set-upstream", "origin", f"HEAD:refs/heads/{target}")
        sha = (await self._worktree_git("rev-parse", "--short", "HEAD", capture=True)).strip()
        logger.info(f"[WORKSPACE] Pushed {sha} to {target}")
        return sha

    async def checkout_new_branch(self, new_branch: str) -> None:
        await self._worktree_git("checkout", "-b", new_branch)

    def rename(self, new_branch: str) -> "Workspace":
        """Move the clone directory to the new branch's slot. No git operations."""
        moved = Workspace(self.repo, new_branch, self.paths)
        moved.path.parent.mkdir(parents=True, exist_ok=True)
        if moved.path.exists():
            shutil.rmtree(moved.path, ignore_errors=True)
        self.path.rename(moved.path)
        return moved

    async def revert(self, sha: str) -> str:
        """Revert one pushed commit on top of the remote tip and push the revert."""
        await self._worktree_git(
            "fetch", "--deepen=50", "origin", f"+refs/heads/{self.branch}:refs/remotes/origin/{self.branch}"
        )
        await self._worktree_git("reset", "--hard", f"origin/{self.branch}")
        await self._worktree_git("revert", "--no-edit", sha)
        await self._worktree_git("push", "origin", f"HEAD:refs/heads/{self.branch}")
        new_sha = (await self._worktree_git("rev-parse", "--short", "HEAD", capture=True)).strip()
        logger.info(f"[WORKSPACE] Reverted {sha} on {self.branch} as {new_sha}")
        return new_sha

    def remove(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path, ignore_errors=True)
            logger.info(f"[WORKSPACE] Removed {self.path}")

    async def _worktree_git(self, *args: str, capture: bool = False) -> str:
        return await self._run_cmd(["git", *args], cwd=self.path, capture=capture)

    @staticmethod
    async def _run_cmd(cmd: list[str], cwd: Path, capture: bool = False, timeout: int = 120) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise WorkspaceError(f"Could not run {cmd[0]}: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise WorkspaceError(f"Git timed out: {' '.join(cmd)}")
        if proc.returncode != 0:
            raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{(stderr or b'').decode()}")
        return (stdout or b"").decode() if capture else ""
