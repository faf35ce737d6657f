"""
Configuration loader for THREADKEEPER.

Resolves a repository's effective settings by merging, in order:
  1. Built-in defaults (the pydantic field defaults below)
  2. Global overrides (<home>/config.yaml)
  3. Repo overrides (<home>/repos/<owner>/<repo>/config.yaml)

Also owns the on-disk layout under <home> and the command whitelist files.
"""

from __future__ import annotations

import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class ConfigError(Exception):
    pass


class InvalidPatternError(ConfigError):
    """Raised when a whitelist pattern does not compile."""
    pass


# ---------------------------------------------------------------------------
# Repository identity + layout
# ---------------------------------------------------------------------------

class RepoId(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def parse(cls, value: str) -> "RepoId":
        parts = value.strip().strip("/").split("/")
        if len(parts) != 2 or not all(parts):
            raise ConfigError(f"Expected owner/repo, got: {value!r}")
        return cls(owner=parts[0], repo=parts[1])

    def __str__(self) -> str:
        return self.slug


def home_dir() -> Path:
    """Root of all THREADKEEPER state. THREADKEEPER_HOME overrides ~/.threadkeeper."""
    override = os.environ.get("THREADKEEPER_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".threadkeeper"


def branch_slug(branch: str) -> str:
    """File-system safe form of a branch name."""
    return branch.replace("/", "__")


class RepoPaths:
    """Every file and directory THREADKEEPER keeps for one repository."""

    def __init__(self, repo: RepoId, home: Path | None = None):
        self.repo = repo
        self.home = home or home_dir()
        self.root = self.home / "repos" / repo.owner / repo.repo

    @property
    def config_file(self) -> Path:
        return self.root / "config.yaml"

    @property
    def whitelist_file(self) -> Path:
        return self.root / "whitelist.yaml"

    @property
    def sessions_file(self) -> Path:
        return self.root / "sessions.json"

    @property
    def seen_file(self) -> Path:
        return self.root / "seen.json"

    @property
    def resume_file(self) -> Path:
        return self.root / "resume-state.json"

    @property
    def issue_links_file(self) -> Path:
        return self.root / "issue-pr-map.json"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def history_dir(self) -> Path:
        return self.root / "history"

    @property
    def workspaces_dir(self) -> Path:
        return self.root / "workspaces"

    def log_file(self, branch: str) -> Path:
        return self.logs_dir / f"{branch_slug(branch)}.log"

    def last_message_file(self, branch: str) -> Path:
        return self.logs_dir / f"{branch_slug(branch)}-last-message.txt"

    def prompt_file(self, branch: str) -> Path:
        return self.logs_dir / f"{branch_slug(branch)}-prompt.md"

    def history_file(self, branch: str) -> Path:
        return self.history_dir / f"{branch_slug(branch)}.jsonl"

    def workspace_dir(self, branch: str) -> Path:
        return self.workspaces_dir / branch_slug(branch)

    def ensure(self) -> None:
        for d in (self.root, self.logs_dir, self.history_dir, self.workspaces_dir):
            d.mkdir(parents=True, exist_ok=True)


def global_config_file() -> Path:
    return home_dir() / "config.yaml"


def global_whitelist_file() -> Path:
    return home_dir() / "whitelist.yaml"


def pid_file() -> Path:
    return home_dir() / "threadkeeper.pid"


def daemon_log_file() -> Path:
    return home_dir() / "threadkeeper.log"


# ---------------------------------------------------------------------------
# Atomic persistence
# ---------------------------------------------------------------------------

def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then os.replace over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return data


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    atomic_write_text(path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True))


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class GlobalConfig(BaseModel):
    github_token: str = ""
    bot_username: str = ""
    authorized_users: list[str] = Field(default_factory=list)
    backend: Literal["claude", "codex"] = "claude"
    interactive: bool = False
    poll_interval_seconds: int = Field(default=900, ge=1)
    idle_timeout_seconds: int = Field(default=600, ge=1)
    delete_workspace_on_close: bool = True
    base_branch: str | None = None

    @field_validator("bot_username")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        return value.strip().lstrip("@")


class RepoConfig(GlobalConfig):
    """Effective settings for one repository after the layered merge."""

    @property
    def bot_tag(self) -> str:
        return f"@{self.bot_username}"

    def resolved_token(self) -> str | None:
        return self.github_token or os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN") or None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_global_config() -> GlobalConfig:
    try:
        return GlobalConfig(**_read_yaml(global_config_file()))
    except ValidationError as e:
        raise ConfigError(f"Invalid global config: {e}") from e


def save_global_config(config: GlobalConfig) -> None:
    _write_yaml(global_config_file(), config.model_dump())


def load_repo_config(repo: RepoId) -> RepoConfig:
    """
    Load config by merging:
      1. Built-in defaults
      2. Global overrides (<home>/config.yaml)
      3. Repo overrides (<home>/repos/<owner>/<repo>/config.yaml)
    """
    base: dict[str, Any] = RepoConfig().model_dump()
    base = _deep_merge(base, _read_yaml(global_config_file()))
    base = _deep_merge(base, _read_yaml(RepoPaths(repo).config_file))
    try:
        return RepoConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid config for {repo}: {e}") from e


def save_repo_overrides(repo: RepoId, overrides: dict[str, Any]) -> None:
    """Persist only the settings that differ from the global file."""
    paths = RepoPaths(repo)
    paths.ensure()
    _write_yaml(paths.config_file, overrides)


def get_all_repos() -> list[RepoId]:
    """Every repository that has been initialized (has a repo config file)."""
    root = home_dir() / "repos"
    if not root.is_dir():
        return []
    repos = []
    for owner_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for repo_dir in sorted(p for p in owner_dir.iterdir() if p.is_dir()):
            if (repo_dir / "config.yaml").exists():
                repos.append(RepoId(owner=owner_dir.name, repo=repo_dir.name))
    return repos


# ---------------------------------------------------------------------------
# Command whitelist
# ---------------------------------------------------------------------------

DEFAULT_SAFE_PATTERNS = [
    r"^git\s+(status|diff|log|show|branch)\b",
    r"^ls\b",
    r"^cat\b",
    r"^head\b",
    r"^tail\b",
    r"^find\b",
    r"^grep\b",
    r"^rg\b",
    r"^wc\b",
    r"^file\b",
    r"^which\b",
    r"^echo\b",
    r"^npm\s+(test|run|install)\b",
    r"^node\b",
    r"^npx\b",
    r"^python[23]?\b",
    r"^pytest\b",
    r"^pip[23]?\s+install\b",
    r"^cargo\s+(build|test|check|fmt|clippy)\b",
    r"^go\s+(build|test|vet)\b",
    r"^sed\b",
    r"^awk\b",
    r"^mkdir\b",
    r"^touch\b",
    r"^cp\b",
    r"^mv\b",
]


def _read_patterns(path: Path) -> list[str]:
    data = _read_yaml(path)
    patterns = data.get("patterns") or []
    return [str(p) for p in patterns]


def validate_pattern(pattern: str) -> None:
    try:
        re.compile(pattern)
    except re.error as e:
        raise InvalidPatternError(f"Invalid whitelist pattern {pattern!r}: {e}") from e


def load_global_whitelist() -> list[str]:
    return _read_patterns(global_whitelist_file())


def load_repo_whitelist(repo: RepoId) -> list[str]:
    return _read_patterns(RepoPaths(repo).whitelist_file)


def load_whitelist(repo: RepoId | None = None) -> list[str]:
    """Global patterns, plus the repo's additional patterns when a repo is given."""
    patterns = load_global_whitelist()
    if repo is not None:
        patterns = patterns + load_repo_whitelist(repo)
    return patterns


def save_global_whitelist(patterns: list[str]) -> None:
    _write_yaml(global_whitelist_file(), {"patterns": list(patterns)})


def save_repo_whitelist(repo: RepoId, patterns: list[str]) -> None:
    _write_yaml(RepoPaths(repo).whitelist_file, {"patterns": list(patterns)})


def init_home() -> Path:
    """Create <home> and seed the global whitelist on first use."""
    home = home_dir()
    home.mkdir(parents=True, exist_ok=True)
    if not global_whitelist_file().exists():
        save_global_whitelist(DEFAULT_SAFE_PATTERNS)
        logger.info(f"[CONFIG] Seeded global whitelist at {global_whitelist_file()}")
    return home


# ---------------------------------------------------------------------------
# Git remote detection
# ---------------------------------------------------------------------------

_GITHUB_REMOTE = re.compile(r"github\.com[:/]([^/\s]+)/([^/\s]+?)(?:\.git)?/?$")


def parse_remotes(output: str) -> list[tuple[str, RepoId]]:
    """Parse `git remote -v` output into (remote name, RepoId) pairs, fetch lines only."""
    seen: set[RepoId] = set()
    remotes: list[tuple[str, RepoId]] = []
    for line in output.splitlines():
        if "(fetch)" not in line:
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        match = _GITHUB_REMOTE.search(parts[1])
        if not match:
            continue
        repo = RepoId(owner=match.group(1), repo=match.group(2))
        if repo in seen:
            continue
        seen.add(repo)
        remotes.append((parts[0], repo))
    return remotes


def detect_remotes(cwd: Path | None = None) -> list[tuple[str, RepoId]]:
    try:
        result = subprocess.run(
            ["git", "remote", "-v"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return []
    if result.returncode != 0:
        return []
    return parse_remotes(result.stdout)


def detect_repo_from_cwd(cwd: Path | None = None) -> RepoId | None:
    remotes = detect_remotes(cwd)
    for name, repo in remotes:
        if name == "origin":
            return repo
    return remotes[0][1] if remotes else None
