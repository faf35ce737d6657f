"""
THREADKEEPER GitHub access layer.

Thin async wrapper over the `gh` CLI: list open PRs/issues, fetch comments
that mention the bot, post replies, react, and open pull requests.
Read calls retry transient failures; reactions are best-effort.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from threadkeeper.config_loader import RepoId
from threadkeeper.registry import MessageKind, SeenKey

Reaction = Literal["+1", "-1", "laugh", "confused", "heart", "hooray", "rocket", "eyes"]


class GitHubError(Exception):
    pass


class ThreadMessage(BaseModel):
    """
    A bot mention arriving from a PR or issue thread.

    `id` is the comment ID, except for kind "issue" (an issue body), where
    it is the issue number. `number` is the PR or issue the message lives on.
    """

    id: int
    body: str
    user: str
    number: int
    created_at: str
    kind: MessageKind = "discussion"
    on_issue: bool = False
    html_url: str = ""
    path: str | None = None
    diff_hunk: str | None = None
    line: int | None = None

    @property
    def seen_key(self) -> SeenKey:
        return ("issue", self.id) if self.kind == "issue" else ("comment", self.id)


class PullRequest(BaseModel):
    number: int
    branch: str
    merged: bool = False
    state: str = "open"
    title: str = ""
    clone_url: str = ""


class Issue(BaseModel):
    number: int
    title: str = ""
    body: str = ""
    user: str = ""
    created_at: str = ""
    html_url: str = ""


_read_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    retry=retry_if_exception_type(GitHubError),
    reraise=True,
)


class GitHubClient:
    """All hosted-repository calls for one repository."""

    def __init__(self, repo: RepoId, token: str | None = None, timeout: int = 60):
        self.repo = repo
        self.token = token
        self.timeout = timeout

    # -- transport --------------------------------------------------------

    async def _gh(self, *args: str) -> str:
        env = dict(os.environ)
        if self.token:
            env["GH_TOKEN"] = self.token
        try:
            proc = await asyncio.create_subprocess_exec(
                "gh",
                *args,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitHubError(f"Could not run gh: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitHubError(f"gh {' '.join(args[:2])} timed out after {self.timeout}s")
        if proc.returncode != 0:
            raise GitHubError(f"gh {' '.join(args[:3])} failed: {(stderr or b'').decode().strip()}")
        return (stdout or b"").decode()

    async def _gh_json(self, *args: str) -> Any:
        out = await self._gh(*args)
        try:
            return json.loads(out) if out.strip() else None
        except json.JSONDecodeError as e:
            raise GitHubError(f"gh returned invalid JSON for {' '.join(args[:2])}: {e}") from e

    def _api(self, path: str) -> str:
        return f"repos/{self.repo.owner}/{self.repo.repo}/{path}"

    def default_clone_url(self) -> str:
        return f"https://github.com/{self.repo.owner}/{self.repo.repo}.git"

    def _clone_url(self, head_repository: dict | None) -> str:
        url = (head_repository or {}).get("url")
        return f"{url}.git" if url else self.default_clone_url()

    # -- reads ------------------------------------------------------------

    @_read_retry
    async def list_open_prs(self) -> list[PullRequest]:
        data = await self._gh_json(
            "pr", "list",
            "--repo", self.repo.slug,
            "--state", "open",
            "--json", "number,headRefName,state,title,headRepository",
            "--limit", "100",
        ) or []
        return [
            PullRequest(
                number=pr["number"],
                branch=pr["headRefName"],
                state=(pr.get("state") or "").lower(),
                title=pr.get("title") or "",
                clone_url=self._clone_url(pr.get("headRepository")),
            )
            for pr in data
        ]

    @_read_retry
    async def get_pull_request(self, number: int) -> PullRequest:
        data = await self._gh_json(
            "pr", "view", str(number),
            "--repo", self.repo.slug,
            "--json", "number,headRefName,mergedAt,state,title,headRepository",
        )
        return PullRequest(
            number=data["number"],
            branch=data["headRefName"],
            merged=data.get("mergedAt") is not None,
            state=(data.get("state") or "").lower(),
            title=data.get("title") or "",
            clone_url=self._clone_url(data.get("headRepository")),
        )

    @_read_retry
    async def fetch_pr_comments(self, number: int, bot_tag: str) -> list[ThreadMessage]:
        """Discussion and inline review comments on a PR that mention the bot."""
        discussion = await self._gh_json("api", self._api(f"issues/{number}/comments?per_page=100")) or []
        review = await self._gh_json("api", self._api(f"pulls/{number}/comments?per_page=100")) or []

        messages: list[ThreadMessage] = []
        for c in discussion:
            if bot_tag not in (c.get("body") or ""):
                continue
            messages.append(ThreadMessage(
                id=c["id"],
                body=c["body"],
                user=(c.get("user") or {}).get("login", ""),
                number=number,
                created_at=c.get("created_at", ""),
                html_url=c.get("html_url", ""),
                kind="discussion",
            ))
        for c in review:
            if bot_tag not in (c.get("body") or ""):
                continue
            messages.append(ThreadMessage(
                id=c["id"],
                body=c["body"],
                user=(c.get("user") or {}).get("login", ""),
                number=number,
                created_at=c.get("created_at", ""),
                html_url=c.get("html_url", ""),
                kind="review",
                path=c.get("path"),
                diff_hunk=c.get("diff_hunk"),
                line=c.get("line") or c.get("original_line"),
            ))
        messages.sort(key=lambda m: m.created_at)
        return messages

    @_read_retry
    async def list_open_issues(self) -> list[Issue]:
        data = await self._gh_json(
            "issue", "list",
            "--repo", self.repo.slug,
            "--state", "open",
            "--json", "number,title,body,author,url,createdAt",
            "--limit", "100",
        ) or []
        return [
            Issue(
                number=i["number"],
                title=i.get("title") or "",
                body=i.get("body") or "",
                user=(i.get("author") or {}).get("login", ""),
                created_at=i.get("createdAt") or "",
                html_url=i.get("url") or "",
            )
            for i in data
        ]

    @_read_retry
    async def fetch_issue_comments(self, number: int, bot_tag: str) -> list[ThreadMessage]:
        data = await self._gh_json("api", self._api(f"issues/{number}/comments?per_page=100")) or []
        return [
            ThreadMessage(
                id=c["id"],
                body=c["body"],
                user=(c.get("user") or {}).get("login", ""),
                number=number,
                created_at=c.get("created_at", ""),
                html_url=c.get("html_url", ""),
                kind="discussion",
                on_issue=True,
            )
            for c in data
            if bot_tag in (c.get("body") or "")
        ]

    @_read_retry
    async def get_default_branch(self) -> str:
        data = await self._gh_json("api", self._api("").rstrip("/"))
        return (data or {}).get("default_branch") or "main"

    # -- writes -----------------------------------------------------------

    async def post_comment(self, number: int, body: str) -> int:
        data = await self._gh_json(
            "api", self._api(f"issues/{number}/comments"),
            "--method", "POST",
            "-f", f"body={body}",
        )
        logger.debug(f"[GITHUB] Posted comment {data['id']} on #{number}")
        return data["id"]

    async def post_review_reply(self, pr_number: int, reply_to: int, body: str) -> int:
        data = await self._gh_json(
            "api", self._api(f"pulls/{pr_number}/comments/{reply_to}/replies"),
            "--method", "POST",
            "-f", f"body={body}",
        )
        logger.debug(f"[GITHUB] Replied to review comment {reply_to} on #{pr_number}")
        return data["id"]

    async def react(self, message: ThreadMessage, reaction: Reaction) -> None:
        """Best-effort reaction on a comment or issue body."""
        if message.kind == "issue":
            endpoint = self._api(f"issues/{message.id}/reactions")
        elif message.kind == "review":
            endpoint = self._api(f"pulls/comments/{message.id}/reactions")
        else:
            endpoint = self._api(f"issues/comments/{message.id}/reactions")
        try:
            await self._gh("api", endpoint, "--method", "POST", "-f", f"content={reaction}")
        except GitHubError as e:
            logger.warning(f"[GITHUB] Could not react to {message.kind} {message.id}: {str(e).splitlines()[0]}")

    async def create_pull_request(self, head: str, base: str, title: str, body: str) -> tuple[int, str]:
        data = await self._gh_json(
            "api", self._api("pulls"),
            "--method", "POST",
            "-f", f"head={head}",
            "-f", f"base={base}",
            "-f", f"title={title}",
            "-f", f"body={body}",
        )
        logger.info(f"[GITHUB] Opened PR #{data['number']} from {head}")
        return data["number"], data.get("html_url", "")

