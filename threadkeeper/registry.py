"""
THREADKEEPER Session Registry — durable per-repository state.

Owns:
  - the session map (branch → Session) and its state machine
  - the seen-event sets (comment IDs, issue numbers)
  - the resumability flags (branch names)
  - the issue → PR links

Every record is a whole-file JSON document replaced atomically on write.
Single writer per repository is assumed; nothing here takes a lock.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from threadkeeper.config_loader import RepoId, RepoPaths, atomic_write_text

SessionStatus = Literal["running", "waiting_approval", "waiting_clarification", "paused"]
MessageKind = Literal["review", "discussion", "issue"]
SeenKey = tuple[str, int]


class RegistryError(Exception):
    pass


class InvalidTransition(RegistryError):
    pass


# ---------------------------------------------------------------------------
# Session model + state machine
# ---------------------------------------------------------------------------

class TriggerComment(BaseModel):
    """A message that asked for (part of) this session's work."""
    user: str
    body: str
    comment_id: int | None = None
    kind: MessageKind = "discussion"


class PendingApproval(BaseModel):
    command: str
    failed_part: str
    comment_id: int | None = None


class PendingClarification(BaseModel):
    question: str
    comment_id: int | None = None


class Session(BaseModel):
    """
    One agent run against one branch.

    `number` is the PR number, or the issue number while `thread == "issue"`.
    `log_offset` is the Monitor's read cursor into the branch log;
    `run_offset` marks where the current agent run's output begins.
    """

    branch: str
    number: int
    thread: Literal["pr", "issue"] = "pr"
    comment_ids: list[int] = Field(default_factory=list)
    issue_ids: list[int] = Field(default_factory=list)
    triggers: list[TriggerComment] = Field(default_factory=list)
    status: SessionStatus = "running"
    log_offset: int = 0
    run_offset: int = 0
    started_at: float = Field(default_factory=time.time)
    last_activity_at: float = Field(default_factory=time.time)
    pending_approval: PendingApproval | None = None
    pending_clarification: PendingClarification | None = None

    @model_validator(mode="after")
    def _check_pending_records(self) -> "Session":
        self.check_invariants()
        return self

    def check_invariants(self) -> None:
        if (self.pending_approval is not None) != (self.status == "waiting_approval"):
            raise ValueError(
                f"{self.branch}: pending approval must be set iff status is waiting_approval "
                f"(status={self.status})"
            )
        if (self.pending_clarification is not None) != (self.status == "waiting_clarification"):
            raise ValueError(
                f"{self.branch}: pending clarification must be set iff status is "
                f"waiting_clarification (status={self.status})"
            )

    @property
    def seen_keys(self) -> list[SeenKey]:
        return [("comment", c) for c in self.comment_ids] + [("issue", i) for i in self.issue_ids]

    def merge_triggers(
        self,
        triggers: list[TriggerComment],
        comment_ids: list[int],
        issue_ids: list[int],
    ) -> None:
        self.triggers = self.triggers + triggers
        self.comment_ids = self.comment_ids + [c for c in comment_ids if c not in self.comment_ids]
        self.issue_ids = self.issue_ids + [i for i in issue_ids if i not in self.issue_ids]

    # -- transitions ------------------------------------------------------

    def _require(self, *allowed: str) -> None:
        if self.status not in allowed:
            raise InvalidTransition(f"{self.branch}: cannot leave {self.status} here (expected {allowed})")

    def await_approval(self, pending: PendingApproval) -> None:
        self._require("running")
        self.status = "waiting_approval"
        self.pending_approval = pending
        self.check_invariants()

    def resolve_approval(self) -> None:
        self._require("waiting_approval")
        self.status = "running"
        self.pending_approval = None
        self.check_invariants()

    def await_clarification(self, pending: PendingClarification) -> None:
        self._require("running")
        self.status = "waiting_clarification"
        self.pending_clarification = pending
        self.check_invariants()

    def answer_clarification(
        self,
        triggers: list[TriggerComment],
        comment_ids: list[int],
        issue_ids: list[int],
    ) -> None:
        """Fold the answer in; trigger history is extended, never replaced."""
        self._require("waiting_clarification")
        self.merge_triggers(triggers, comment_ids, issue_ids)
        self.status = "running"
        self.pending_clarification = None
        self.check_invariants()

    def pause(self) -> None:
        self._require("running")
        self.status = "paused"
        self.check_invariants()

    def unpause(self, now: float | None = None) -> None:
        """Back to running; the idle clock restarts from the moment of resuming."""
        self._require("paused")
        self.status = "running"
        self.last_activity_at = time.time() if now is None else now
        self.check_invariants()

    def advance_cursor(self, offset: int) -> None:
        if offset < self.log_offset:
            raise RegistryError(f"{self.branch}: read cursor may not move backwards ({self.log_offset} → {offset})")
        self.log_offset = offset


class SessionStore(BaseModel):
    sessions: dict[str, Session] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Small persisted sets / maps
# ---------------------------------------------------------------------------

class SeenEvents(BaseModel):
    """Dedup record: comment IDs and issue numbers already acted on."""
    comments: set[int] = Field(default_factory=set)
    issues: set[int] = Field(default_factory=set)

    def _bucket(self, key: SeenKey) -> set[int]:
        kind, _ = key
        if kind == "issue":
            return self.issues
        if kind == "comment":
            return self.comments
        raise KeyError(f"Unknown seen-event kind: {kind}")

    def __contains__(self, key: SeenKey) -> bool:
        return key[1] in self._bucket(key)

    def add(self, key: SeenKey) -> None:
        self._bucket(key).add(key[1])

    def discard(self, key: SeenKey) -> None:
        self._bucket(key).discard(key[1])

    def to_json(self) -> str:
        return json.dumps({"comments": sorted(self.comments), "issues": sorted(self.issues)}) + "\n"


class ResumeState(BaseModel):
    resumable_branches: list[str] = Field(default_factory=list)


class IssueLink(BaseModel):
    pr_number: int
    branch: str


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SessionRegistry:
    """File-backed registry for one repository."""

    def __init__(self, repo: RepoId, paths: RepoPaths | None = None):
        self.repo = repo
        self.paths = paths or RepoPaths(repo)

    # -- io ---------------------------------------------------------------

    @staticmethod
    def _read_json(path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RegistryError(f"Corrupt registry file {path}: {e}") from e

    @staticmethod
    def _write(path: Path, text: str) -> None:
        atomic_write_text(path, text)

    # -- sessions ---------------------------------------------------------

    def load(self) -> SessionStore:
        data = self._read_json(self.paths.sessions_file)
        if data is None:
            return SessionStore()
        try:
            return SessionStore.model_validate(data)
        except ValidationError as e:
            raise RegistryError(f"Invalid session registry {self.paths.sessions_file}: {e}") from e

    def save(self, store: SessionStore) -> None:
        self._write(self.paths.sessions_file, store.model_dump_json(indent=2) + "\n")

    def all(self) -> dict[str, Session]:
        return self.load().sessions

    def get(self, branch: str) -> Session | None:
        return self.load().sessions.get(branch)

    def put(self, session: Session) -> None:
        session.check_invariants()
        store = self.load()
        store.sessions[session.branch] = session
        self.save(store)

    def remove(self, branch: str) -> bool:
        store = self.load()
        if store.sessions.pop(branch, None) is None:
            return False
        self.save(store)
        logger.debug(f"[REGISTRY] Removed session {branch}")
        return True

    def find_by_number(self, number: int) -> list[Session]:
        return [s for s in self.all().values() if s.number == number]

    def pause(self, branch: str) -> bool:
        session = self.get(branch)
        if not session or session.status != "running":
            return False
        session.pause()
        self.put(session)
        return True

    def resume(self, branch: str, now: float | None = None) -> bool:
        session = self.get(branch)
        if not session or session.status != "paused":
            return False
        session.unpause(now)
        self.put(session)
        return True

    # -- seen events ------------------------------------------------------

    def load_seen(self) -> SeenEvents:
        data = self._read_json(self.paths.seen_file)
        if data is None:
            return SeenEvents()
        return SeenEvents(comments=set(data.get("comments", [])), issues=set(data.get("issues", [])))

    def save_seen(self, seen: SeenEvents) -> None:
        self._write(self.paths.seen_file, seen.to_json())

    # -- resumability -----------------------------------------------------

    def _load_resume(self) -> ResumeState:
        data = self._read_json(self.paths.resume_file)
        return ResumeState.model_validate(data) if data else ResumeState()

    def is_resumable(self, branch: str) -> bool:
        return branch in self._load_resume().resumable_branches

    def mark_resumable(self, branch: str) -> None:
        state = self._load_resume()
        if branch not in state.resumable_branches:
            state.resumable_branches.append(branch)
            self._write(self.paths.resume_file, state.model_dump_json(indent=2) + "\n")

    def clear_resumable(self, branch: str) -> bool:
        state = self._load_resume()
        if branch not in state.resumable_branches:
            return False
        state.resumable_branches.remove(branch)
        self._write(self.paths.resume_file, state.model_dump_json(indent=2) + "\n")
        return True

    # -- issue → PR links -------------------------------------------------

    def issue_links(self) -> dict[int, IssueLink]:
        data = self._read_json(self.paths.issue_links_file) or {}
        return {int(k): IssueLink.model_validate(v) for k, v in data.items()}

    def _save_issue_links(self, links: dict[int, IssueLink]) -> None:
        payload = {str(k): v.model_dump() for k, v in sorted(links.items())}
        self._write(self.paths.issue_links_file, json.dumps(payload, indent=2) + "\n")

    def get_issue_link(self, issue_number: int) -> IssueLink | None:
        return self.issue_links().get(issue_number)

    def set_issue_link(self, issue_number: int, pr_number: int, branch: str) -> None:
        links = self.issue_links()
        links[issue_number] = IssueLink(pr_number=pr_number, branch=branch)
        self._save_issue_links(links)

    def remove_issue_link(self, issue_number: int) -> None:
        links = self.issue_links()
        if links.pop(issue_number, None) is not None:
            self._save_issue_links(links)
