"""
THREADKEEPER Command Guard — decides what an agent may run unattended.

A requested shell line is split into independent fragments (compound
operators and subshells), and every fragment must match at least one
whitelist regex. The first fragment that matches nothing is reported
back as the failing part, and the caller escalates it to a human.

Patterns are compiled once when a guard is built. Malformed patterns
are logged and never match.
"""

from __future__ import annotations

import re

from loguru import logger
from pydantic import BaseModel

from threadkeeper.config_loader import (
    RepoId,
    load_global_whitelist,
    load_repo_whitelist,
    load_whitelist,
    save_global_whitelist,
    save_repo_whitelist,
    validate_pattern,
)

_SUBSHELL_MARK = "__SUBCMD__"
_DOLLAR_SUBSHELL = re.compile(r"\$\(([^)]+)\)")
_BACKTICK_SUBSHELL = re.compile(r"`([^`]+)`")
_SEPARATORS = re.compile(r"\s*(?:&&|\|\||[;|])\s*")


def split_command(command: str) -> list[str]:
    """
    Split a compound shell line into independently checkable fragments.

    `$(...)` and backtick spans become their own fragments; the remainder is
    split on &&, ||, ; and |. Empty fragments are dropped.
    """
    normalized = _DOLLAR_SUBSHELL.sub(lambda m: f"{_SUBSHELL_MARK}{m.group(1)}{_SUBSHELL_MARK}", command)
    normalized = _BACKTICK_SUBSHELL.sub(lambda m: f"{_SUBSHELL_MARK}{m.group(1)}{_SUBSHELL_MARK}", normalized)

    parts: list[str] = []
    for raw in _SEPARATORS.split(normalized):
        pieces = raw.split(_SUBSHELL_MARK) if _SUBSHELL_MARK in raw else [raw]
        for piece in pieces:
            trimmed = piece.strip()
            if trimmed:
                parts.append(trimmed)
    return parts


class CheckResult(BaseModel):
    approved: bool
    failed_part: str | None = None


class CommandGuard:
    """A compiled whitelist for one scope (global, or global + one repo)."""

    def __init__(self, patterns: list[str]):
        self.patterns = list(patterns)
        self._compiled: list[re.Pattern[str]] = []
        for pattern in self.patterns:
            try:
                self._compiled.append(re.compile(pattern))
            except re.error as e:
                logger.warning(f"[GUARD] Ignoring malformed whitelist pattern {pattern!r}: {e}")

    @classmethod
    def for_scope(cls, repo: RepoId | None = None) -> "CommandGuard":
        return cls(load_whitelist(repo))

    def allows(self, fragment: str) -> bool:
        return any(p.search(fragment) for p in self._compiled)

    def check(self, command: str) -> CheckResult:
        for part in split_command(command):
            if not self.allows(part):
                logger.debug(f"[GUARD] Rejected fragment: {part!r}")
                return CheckResult(approved=False, failed_part=part)
        return CheckResult(approved=True)


def check_command(command: str, repo: RepoId | None = None) -> CheckResult:
    """Check a command against the global whitelist plus the repo's, if given."""
    return CommandGuard.for_scope(repo).check(command)


# ---------------------------------------------------------------------------
# Whitelist maintenance
# ---------------------------------------------------------------------------

def add_global_pattern(pattern: str) -> bool:
    validate_pattern(pattern)
    current = load_global_whitelist()
    if pattern in current:
        return False
    save_global_whitelist(current + [pattern])
    logger.info(f"[GUARD] Added global pattern {pattern!r}")
    return True


def add_repo_pattern(repo: RepoId, pattern: str) -> bool:
    """Append to the repo's own list; global patterns are never touched."""
    validate_pattern(pattern)
    current = load_repo_whitelist(repo)
    if pattern in current or pattern in load_global_whitelist():
        return False
    save_repo_whitelist(repo, current + [pattern])
    logger.info(f"[GUARD] Added {repo} pattern {pattern!r}")
    return True


def remove_global_pattern(index: int) -> str:
    current = load_global_whitelist()
    if not 0 <= index < len(current):
        raise IndexError(f"No global pattern at index {index}")
    removed = current.pop(index)
    save_global_whitelist(current)
    return removed


def remove_repo_pattern(repo: RepoId, index: int) -> str:
    current = load_repo_whitelist(repo)
    if not 0 <= index < len(current):
        raise IndexError(f"No {repo} pattern at index {index}")
    removed = current.pop(index)
    save_repo_whitelist(repo, current)
    return removed
