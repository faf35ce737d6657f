"""
THREADKEEPER Session Monitor

Reads a branch's mirrored tmux output incrementally from the session's
cursor, answers trust prompts, gates approval prompts through the
Command Guard, and decides when a run is over.

A check never waits on the agent: it reads what is already on disk,
asks tmux whether the window is still there, and returns.
"""

from __future__ import annotations

import re
import shlex
import time
from pathlib import Path
from typing import Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from threadkeeper import history
from threadkeeper.config_loader import InvalidPatternError, RepoConfig, RepoId, RepoPaths
from threadkeeper.github import GitHubClient, GitHubError
from threadkeeper.guard import CommandGuard, add_repo_pattern
from threadkeeper.history import BranchHistory
from threadkeeper.prompts import AgentDirectives, ControlAction, parse_directives, render_escalation
from threadkeeper.registry import PendingApproval, Session, SessionRegistry
from threadkeeper.tmux import TmuxError, TmuxManager

MonitorStatus = Literal["completed", "running", "approval_needed", "paused"]

APPROVAL_PATTERNS = [
    re.compile(r"Do you want to (run|execute)", re.IGNORECASE),
    re.compile(r"Allow this command", re.IGNORECASE),
    re.compile(r"\? \(y/n\)", re.IGNORECASE),
    re.compile(r"Press Enter to approve", re.IGNORECASE),
    re.compile(r"permission to run", re.IGNORECASE),
    re.compile(r"wants to execute", re.IGNORECASE),
    re.compile(r"Allow .+ tool", re.IGNORECASE),
]

TRUST_PROMPT_PATTERNS = [
    re.compile(r"Do you trust the files in this folder", re.IGNORECASE),
    re.compile(r"trust (?:this|the) (?:folder|directory|workspace)\?", re.IGNORECASE),
]

PARTIAL_LINE_LIMIT = 512

_QUOTED_COMMAND = re.compile(r"[`\"]([^`\"]+)[`\"]")
_ANSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

AGENT_NAMES = {"claude": "Claude", "codex": "Codex"}


def strip_ansi(text: str) -> str:
    return _CONTROL_CHARS.sub("", _ANSI.sub("", text.replace("\r\n", "\n")))


def extract_command(text: str) -> str:
    match = _QUOTED_COMMAND.search(text)
    return match.group(1) if match else "unknown command"


def build_agent_command(
    backend: str,
    prompt_file: Path,
    last_message_file: Path,
    cwd: Path,
    resume: bool = False,
    interactive: bool = False,
) -> str:
    """
    Shell line typed into the window. The prompt is read from a file so no
    quoting of user text is needed; the window's shell exits with the agent.

    One-shot runs (`--print`, `exec`) write a last-message file and read no
    further input. Interactive runs keep the agent's own prompt open, so
    injected text reaches it; they end by idle timeout or when the agent quits.
    """
    prompt = f'"$(cat {shlex.quote(str(prompt_file))})"'
    last = shlex.quote(str(last_message_file))
    if interactive:
        if backend == "codex":
            agent = f"codex resume --last {prompt}" if resume else f"codex {prompt}"
        else:
            agent = f"claude {'--continue ' if resume else ''}{prompt}"
    elif backend == "codex":
        resume_args = "resume --last " if resume else ""
        agent = f"codex exec --output-last-message {last} {resume_args}{prompt}"
    else:
        resume_args = "--continue " if resume else ""
        agent = f"claude {resume_args}--print {prompt} | tee {last}"
    return f"cd {shlex.quote(str(cwd))} && {agent}; exit"


class RunOutput(BaseModel):
    """What a finished run said: the reply text and its parsed directives."""
    text: str | None = None
    directives: AgentDirectives = Field(default_factory=AgentDirectives)


class SessionMonitor:
    """Watches the sessions of one repository."""

    def __init__(
        self,
        repo: RepoId,
        registry: SessionRegistry,
        tmux: TmuxManager,
        github: GitHubClient,
        config: RepoConfig,
        paths: RepoPaths | None = None,
        guard_factory: Callable[[RepoId], CommandGuard] = CommandGuard.for_scope,
        clock: Callable[[], float] = time.time,
    ):
        self.repo = repo
        self.registry = registry
        self.tmux = tmux
        self.github = github
        self.config = config
        self.paths = paths or registry.paths
        self.guard_factory = guard_factory
        self.clock = clock
        self._partial: dict[str, str] = {}

    @property
    def accepts_input(self) -> bool:
        """Whether a running agent reads text typed into its window."""
        return self.config.interactive

    def _history(self, branch: str) -> BranchHistory:
        return BranchHistory(self.repo, branch, self.paths)

    # -- reading ----------------------------------------------------------

    @staticmethod
    def _read_from(path: Path, offset: int) -> tuple[bytes, int]:
        """Bytes from offset to EOF, and the new end. A shrunken file yields nothing."""
        if not path.exists():
            return b"", offset
        size = path.stat().st_size
        if size <= offset:
            return b"", offset
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read(size - offset)
        return data, offset + len(data)

    def read_new_output(self, session: Session) -> str:
        data, end = self._read_from(self.paths.log_file(session.branch), session.log_offset)
        session.advance_cursor(end)
        return strip_ansi(data.decode("utf-8", errors="replace"))

    # -- the check --------------------------------------------------------

    async def check(self, branch: str) -> MonitorStatus:
        session = self.registry.get(branch)
        if session is None:
            return "completed"
        if session.status == "paused":
            return "paused"
        if session.status == "waiting_approval":
            return "approval_needed"

        text = self.read_new_output(session)
        now = self.clock()
        meaningful = bool(text.strip())
        idle_since = session.last_activity_at
        if meaningful:
            session.last_activity_at = now
        self.registry.put(session)

        # a prompt may arrive split across two reads
        scan = self._partial.pop(branch, "") + text
        prompted = False

        if meaningful and any(p.search(scan) for p in TRUST_PROMPT_PATTERNS):
            prompted = True
            await self.tmux.press(branch, "Enter")
            self._history(branch).append(history.TRUST_PROMPT_ACCEPTED, pr=session.number)
            logger.info(f"[MONITOR] {branch}: accepted workspace trust prompt")

        if meaningful and any(p.search(scan) for p in APPROVAL_PATTERNS):
            prompted = True
            command = extract_command(scan)
            result = self.guard_factory(self.repo).check(command)
            if result.approved:
                await self.tmux.send_keys(branch, "y")
                self._history(branch).append(
                    history.COMMAND_REQUESTED,
                    pr=session.number,
                    command=command,
                    approved=True,
                    pattern="auto-approved",
                )
                logger.info(f"[MONITOR] {branch}: auto-approved {command!r}")
            else:
                await self._escalate(session, command, result.failed_part or command)
                return "approval_needed"

        if not prompted:
            self._partial[branch] = scan.rpartition("\n")[2][-PARTIAL_LINE_LIMIT:]

        if not await self.tmux.window_exists(branch):
            logger.info(f"[MONITOR] {branch}: window gone, run complete")
            return "completed"

        if not meaningful and now - idle_since > self.config.idle_timeout_seconds:
            await self.tmux.destroy_window(branch)
            self._history(branch).append(
                history.IDLE_TIMEOUT, pr=session.number, idle_seconds=int(now - idle_since)
            )
            logger.info(f"[MONITOR] {branch}: idle for {int(now - idle_since)}s, closing window")
            return "completed"

        return "running"

    async def _escalate(self, session: Session, command: str, failed_part: str) -> None:
        session.await_approval(PendingApproval(command=command, failed_part=failed_part))
        self.registry.put(session)
        self._history(session.branch).append(
            history.COMMAND_REQUESTED,
            pr=session.number,
            command=command,
            approved=False,
            failed_part=failed_part,
        )
        logger.warning(f"[MONITOR] {session.branch}: {failed_part!r} is not whitelisted, asking upstream")

        try:
            comment_id = await self.github.post_comment(
                session.number, render_escalation(session.pending_approval, self.config.bot_tag)
            )
        except GitHubError as e:
            logger.warning(f"[MONITOR] Could not post approval request for {session.branch}: {e}")
            return
        session.pending_approval.comment_id = comment_id
        self.registry.put(session)

    # -- approvals --------------------------------------------------------

    async def handle_approval(self, branch: str, action: ControlAction, pattern: str | None = None) -> bool:
        """Answer a pending approval. Returns False when nothing was waiting."""
        session = self.registry.get(branch)
        if session is None or session.pending_approval is None:
            return False
        command = session.pending_approval.command

        if action == "deny":
            await self.tmux.send_keys(branch, "n")
            self._history(branch).append(history.COMMAND_DENIED, pr=session.number, command=command)
        else:
            await self.tmux.send_keys(branch, "y")
            self._history(branch).append(
                history.COMMAND_APPROVED, pr=session.number, command=command, action=action
            )
            if action == "allow_always" and pattern:
                try:
                    add_repo_pattern(self.repo, pattern)
                except InvalidPatternError as e:
                    logger.warning(f"[MONITOR] {e}; approving {branch} once instead")

        session.resolve_approval()
        session.last_activity_at = self.clock()
        self.registry.put(session)
        logger.info(f"[MONITOR] {branch}: {action} for {command!r}")
        return True

    # -- starting runs ----------------------------------------------------

    async def start(self, session: Session, prompt: str, cwd: Path, resume: bool = False) -> str:
        """
        Launch the agent for `session` in its window and register the session.

        A fresh start truncates the branch log and zeroes the cursor. A resumed
        start keeps the log and begins reading at its current end.
        """
        branch = session.branch
        log = self.paths.log_file(branch)
        log.parent.mkdir(parents=True, exist_ok=True)
        if resume:
            size = log.stat().st_size if log.exists() else 0
            session.advance_cursor(max(size, session.log_offset))
        else:
            log.write_bytes(b"")
            session.log_offset = 0
        session.run_offset = session.log_offset
        session.last_activity_at = self.clock()

        last_message = self.paths.last_message_file(branch)
        last_message.unlink(missing_ok=True)
        prompt_file = self.paths.prompt_file(branch)
        prompt_file.write_text(prompt, encoding="utf-8")

        command = build_agent_command(
            self.config.backend, prompt_file, last_message, cwd, resume=resume, interactive=self.config.interactive
        )

        await self.tmux.ensure_session()
        if await self.tmux.window_exists(branch):
            await self.tmux.destroy_window(branch)
        self._partial.pop(branch, None)
        await self.tmux.create_window(branch, cwd)
        try:
            await self.tmux.pipe_output(branch, log)
            await self.tmux.run_in_window(branch, command)
        except TmuxError:
            await self.tmux.destroy_window(branch)
            raise
        self.registry.put(session)

        self._history(branch).append(
            history.CLI_STARTED,
            pr=session.number,
            command=command,
            resume=resume,
            comment_ids=session.comment_ids,
            issue_ids=session.issue_ids,
            tmux_window=self.tmux.target(branch),
        )
        logger.info(f"[MONITOR] Started {self.config.backend} on {branch} ({'resume' if resume else 'fresh'})")
        return command

    async def inject(self, branch: str, text: str, pr: int | None = None) -> None:
        """Type more input into an agent that is still running."""
        await self.tmux.send_keys(branch, " ".join(text.split()))
        self._history(branch).append(history.INPUT_INJECTED, pr=pr, text=text)

    # -- results ----------------------------------------------------------

    def read_output(self, session: Session) -> RunOutput:
        """
        The run's final reply: the backend's last-message file when it wrote
        one, otherwise everything the window printed since the run started.
        The token count is looked for in the full window output.
        """
        data, _ = self._read_from(self.paths.log_file(session.branch), session.run_offset)
        window_text = strip_ansi(data.decode("utf-8", errors="replace"))

        last_message = self.paths.last_message_file(session.branch)
        text = None
        if last_message.exists():
            text = last_message.read_text(encoding="utf-8", errors="replace").strip() or None
        if text is None:
            text = window_text.strip() or None

        directives = parse_directives(text)
        if directives.tokens_used is None:
            directives.tokens_used = parse_directives(window_text).tokens_used
        return RunOutput(text=text, directives=directives)

    @property
    def agent_name(self) -> str:
        return AGENT_NAMES.get(self.config.backend, self.config.backend.title())
