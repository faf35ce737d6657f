"""
THREADKEEPER History — append-only audit trail.

One JSONL file per branch, one immutable timestamped event per line.
Never rewritten, and kept after a branch's session and workspace are gone.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from threadkeeper.config_loader import RepoId, RepoPaths

# Event kinds
COMMENT_DETECTED = "comment_detected"
CLI_STARTED = "cli_started"
INPUT_INJECTED = "input_injected"
COMMAND_REQUESTED = "command_requested"
COMMAND_APPROVED = "command_approved"
COMMAND_DENIED = "command_denied"
TRUST_PROMPT_ACCEPTED = "trust_prompt_accepted"
COMMIT_PUSHED = "commit_pushed"
COMMIT_REVERTED = "commit_reverted"
COMMENT_POSTED = "comment_posted"
PR_OPENED = "pr_opened"
CLARIFICATION_REQUESTED = "clarification_requested"
CLARIFICATION_ANSWERED = "clarification_answered"
SESSION_FAILED = "session_failed"
SESSION_RETRIED = "session_retried"
IDLE_TIMEOUT = "idle_timeout"
PR_MERGED = "pr_merged"
PR_CLOSED = "pr_closed"
CLEANUP = "cleanup"


class HistoryEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    ts: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    type: str
    pr: int | None = None


class BranchHistory:
    """Reads and appends the history file of one branch."""

    def __init__(self, repo: RepoId, branch: str, paths: RepoPaths | None = None):
        self.repo = repo
        self.branch = branch
        self.paths = paths or RepoPaths(repo)

    @property
    def path(self):
        return self.paths.history_file(self.branch)

    def append(self, event_type: str, pr: int | None = None, **data: Any) -> HistoryEvent:
        event = HistoryEvent(type=event_type, pr=pr, **data)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json(exclude_none=True) + "\n")
        logger.debug(f"[HISTORY] {self.branch}: {event_type}")
        return event

    def read(self) -> list[HistoryEvent]:
        if not self.path.exists():
            return []
        events = []
        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(HistoryEvent(**json.loads(line)))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning(f"[HISTORY] Skipping corrupt line {lineno} in {self.path}: {e}")
        return events

    def last(self, event_type: str) -> HistoryEvent | None:
        for event in reversed(self.read()):
            if event.type == event_type:
                return event
        return None


def append_history(repo: RepoId, branch: str, event_type: str, pr: int | None = None, **data: Any) -> HistoryEvent:
    return BranchHistory(repo, branch).append(event_type, pr=pr, **data)


def read_history(repo: RepoId, branch: str) -> list[HistoryEvent]:
    return BranchHistory(repo, branch).read()
