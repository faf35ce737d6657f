from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from threadkeeper.config_loader import RepoConfig, RepoId, RepoPaths
from threadkeeper.github import Issue, PullRequest, ThreadMessage
from threadkeeper.monitor import SessionMonitor
from threadkeeper.poller import RepoPoller
from threadkeeper.registry import SessionRegistry
from threadkeeper.tmux import TmuxError, window_name
from threadkeeper.workspace import WorkspaceError


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------

class FakeGitHub:
    def __init__(self, repo: RepoId):
        self.repo = repo
        self.prs: dict[int, PullRequest] = {}
        self.closed: dict[int, PullRequest] = {}
        self.pr_comments: dict[int, list[ThreadMessage]] = {}
        self.issues: dict[int, Issue] = {}
        self.issue_comments: dict[int, list[ThreadMessage]] = {}
        self.posted: list[tuple[int, str]] = []
        self.review_replies: list[tuple[int, int, str]] = []
        self.reactions: list[tuple[int, str]] = []
        self.created_prs: list[dict] = []
        self._ids = itertools.count(9000)
        self._pr_numbers = itertools.count(100)

    def add_pr(self, number: int, branch: str) -> PullRequest:
        pr = PullRequest(number=number, branch=branch, clone_url=self.default_clone_url())
        self.prs[number] = pr
        return pr

    def comment(self, number, body, user="alice", kind="discussion", created_at=None, comment_id=None, **extra):
        message = ThreadMessage(
            id=comment_id or next(self._ids),
            body=body,
            user=user,
            number=number,
            created_at=created_at or f"2024-01-01T00:00:{len(self.pr_comments.get(number, [])):02d}Z",
            kind=kind,
            on_issue=number in self.issues,
            **extra,
        )
        bucket = self.issue_comments if number in self.issues else self.pr_comments
        bucket.setdefault(number, []).append(message)
        return message

    def default_clone_url(self) -> str:
        return f"https://github.com/{self.repo.owner}/{self.repo.repo}.git"

    async def list_open_prs(self):
        return list(self.prs.values())

    async def get_pull_request(self, number):
        return self.closed.get(number) or self.prs[number]

    async def fetch_pr_comments(self, number, bot_tag):
        return [m for m in self.pr_comments.get(number, []) if bot_tag in m.body]

    async def list_open_issues(self):
        return list(self.issues.values())

    async def fetch_issue_comments(self, number, bot_tag):
        return [m for m in self.issue_comments.get(number, []) if bot_tag in m.body]

    async def get_default_branch(self):
        return "main"

    async def post_comment(self, number, body):
        self.posted.append((number, body))
        return next(self._ids)

    async def post_review_reply(self, pr_number, reply_to, body):
        self.review_replies.append((pr_number, reply_to, body))
        return next(self._ids)

    async def react(self, message, reaction):
        self.reactions.append((message.id, reaction))

    async def create_pull_request(self, head, base, title, body):
        number = next(self._pr_numbers)
        self.created_prs.append({"number": number, "head": head, "base": base, "title": title, "body": body})
        self.add_pr(number, head)
        return number, f"https://github.com/{self.repo.slug}/pull/{number}"


class FakeTmux:
    def __init__(self):
        self.windows: set[str] = set()
        self.commands: list[tuple[str, str]] = []
        self.keys: list[tuple[str, str]] = []
        self.pressed: list[tuple[str, str]] = []
        self.destroyed: list[str] = []
        self.pipes: dict[str, Path] = {}
        self.launch_failures = 0

    def target(self, branch):
        return f"tk-test:{window_name(branch)}"

    async def ensure_session(self):
        pass

    async def window_exists(self, branch):
        return branch in self.windows

    async def create_window(self, branch, cwd):
        self.windows.add(branch)

    async def pipe_output(self, branch, log_file):
        self.pipes[branch] = log_file

    async def run_in_window(self, branch, command):
        if self.launch_failures:
            self.launch_failures -= 1
            raise TmuxError("send-keys failed")
        self.commands.append((branch, command))

    async def send_keys(self, branch, text, enter=True):
        self.keys.append((branch, text))

    async def press(self, branch, key):
        self.pressed.append((branch, key))

    async def destroy_window(self, branch):
        self.destroyed.append(branch)
        self.windows.discard(branch)

    def finish(self, branch):
        """The agent exits and its window closes."""
        self.windows.discard(branch)


class FakeWorkspace:
    def __init__(self, owner: "FakeWorkspaces", repo, branch, paths):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.paths = paths

    @property
    def path(self) -> Path:
        return self.paths.workspace_dir(self.branch)

    @property
    def exists(self) -> bool:
        return (self.path / ".git").exists()

    async def ensure(self, clone_url, source_branch=None):
        if self.owner.fail_ensure:
            raise WorkspaceError("clone failed")
        (self.path / ".git").mkdir(parents=True, exist_ok=True)
        self.owner.ensured.append((self.branch, source_branch or self.branch))
        return self.path

    async def has_changes(self):
        return self.branch in self.owner.dirty

    async def commit_and_push(self, message, push_branch=None):
        if self.branch not in self.owner.dirty:
            return None
        self.owner.dirty.discard(self.branch)
        self.owner.commits.append({"branch": self.branch, "push_branch": push_branch or self.branch, "message": message})
        return "abc1234"

    async def checkout_new_branch(self, new_branch):
        self.owner.checkouts.append((self.branch, new_branch))

    def rename(self, new_branch):
        moved = FakeWorkspace(self.owner, self.repo, new_branch, self.paths)
        moved.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.rename(moved.path)
        return moved

    def remove(self):
        self.owner.removed.append(self.branch)


class FakeWorkspaces:
    """Workspace factory sharing one record of what happened."""

    def __init__(self):
        self.dirty: set[str] = set()
        self.commits: list[dict] = []
        self.ensured: list[tuple[str, str]] = []
        self.checkouts: list[tuple[str, str]] = []
        self.removed: list[str] = []
        self.fail_ensure = False

    def __call__(self, repo, branch, paths):
        return FakeWorkspace(self, repo, branch, paths)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def home(tmp_path, monkeypatch):
    path = tmp_path / "home"
    monkeypatch.setenv("THREADKEEPER_HOME", str(path))
    return path


@pytest.fixture
def repo():
    return RepoId(owner="acme", repo="widgets")


@pytest.fixture
def paths(home, repo):
    p = RepoPaths(repo)
    p.ensure()
    return p


@pytest.fixture
def config():
    return RepoConfig(bot_username="tk-bot", authorized_users=["alice", "bob"], idle_timeout_seconds=600)


@pytest.fixture
def registry(repo, paths):
    return SessionRegistry(repo, paths)


@pytest.fixture
def github(repo):
    return FakeGitHub(repo)


@pytest.fixture
def tmux():
    return FakeTmux()


@pytest.fixture
def workspaces():
    return FakeWorkspaces()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(repo, registry, tmux, github, config, paths, clock):
    return SessionMonitor(repo, registry, tmux, github, config, paths, clock=clock)


@pytest.fixture
def poller(repo, config, github, tmux, registry, monitor, paths, workspaces):
    return RepoPoller(
        repo,
        config=config,
        github=github,
        tmux=tmux,
        registry=registry,
        monitor=monitor,
        paths=paths,
        workspace_factory=workspaces,
    )


@pytest.fixture
def agent_output(paths):
    """Append text to a branch's mirrored window log, as the agent would."""

    def write(branch: str, text: str) -> None:
        log = paths.log_file(branch)
        log.parent.mkdir(parents=True, exist_ok=True)
        with open(log, "ab") as f:
            f.write(text.encode("utf-8"))

    return write
