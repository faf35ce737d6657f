"""
THREADKEEPER Poller — the reconciliation loop.

One cycle per repository per interval:
  - collect unseen bot mentions from open PRs and issues, oldest first
  - apply control replies (allow once / allow always / deny)
  - batch task messages per branch; answer a clarification, feed a
    running agent, or start a new run
  - check every running session once; reconcile finished ones
  - clean up after merged or closed PRs
  - persist the seen-event set

It is deterministic and never waits on an agent. Any error that escapes a
cycle stops that repository's scheduler.
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from loguru import logger

from threadkeeper import history
from threadkeeper.config_loader import RepoConfig, RepoId, RepoPaths, load_repo_config
from threadkeeper.github import GitHubClient, GitHubError, Issue, PullRequest, ThreadMessage
from threadkeeper.history import BranchHistory
from threadkeeper.monitor import RunOutput, SessionMonitor
from threadkeeper.prompts import (
    BatchTarget,
    CommentBatch,
    ControlMessage,
    batch_messages,
    build_clarification_follow_up,
    build_injection,
    build_prompt,
    default_commit_message,
    parse_control_message,
    render_clarification_request,
    render_review_reply,
    render_shared_reply,
    render_thread_reply,
    rewrite_local_paths,
    sanitize_branch_name,
    strip_directives,
    strip_mention,
)
from threadkeeper.registry import (
    PendingClarification,
    SeenEvents,
    SeenKey,
    Session,
    SessionRegistry,
    TriggerComment,
)
from threadkeeper.tmux import TmuxManager
from threadkeeper.workspace import Workspace


class RepoPoller:
    """Runs reconciliation cycles for one repository."""

    def __init__(
        self,
        repo: RepoId,
        config: RepoConfig | None = None,
        github: GitHubClient | None = None,
        tmux: TmuxManager | None = None,
        registry: SessionRegistry | None = None,
        monitor: SessionMonitor | None = None,
        paths: RepoPaths | None = None,
        workspace_factory=Workspace,
    ):
        self.repo = repo
        self.paths = paths or RepoPaths(repo)
        self._fixed_config = config is not None
        self.config = config or load_repo_config(repo)
        self.registry = registry or SessionRegistry(repo, self.paths)
        self.github = github or GitHubClient(repo, self.config.resolved_token())
        self.tmux = tmux or TmuxManager(repo)
        self.monitor = monitor or SessionMonitor(
            repo, self.registry, self.tmux, self.github, self.config, self.paths
        )
        self.workspace_factory = workspace_factory
        self._prs: dict[int, PullRequest] = {}
        self._issues: dict[int, Issue] = {}

    @property
    def bot_tag(self) -> str:
        return self.config.bot_tag

    def _history(self, branch: str) -> BranchHistory:
        return BranchHistory(self.repo, branch, self.paths)

    def _workspace(self, branch: str) -> Workspace:
        return self.workspace_factory(self.repo, branch, self.paths)

    def _refresh_config(self) -> None:
        if not self._fixed_config:
            self.config = load_repo_config(self.repo)
            self.monitor.config = self.config

    # -----------------------------------------------------------------------
    # Cycle
    # -----------------------------------------------------------------------

    async def run_cycle(self) -> None:
        self._refresh_config()
        self.paths.ensure()
        logger.info(f"[POLLER] Polling {self.repo}")

        seen = self.registry.load_seen()
        try:
            prs = await self.github.list_open_prs()
            issues = await self.github.list_open_issues()
            self._prs = {pr.number: pr for pr in prs}
            self._issues = {issue.number: issue for issue in issues}
            fresh = await self._collect(prs, issues, seen)
        except GitHubError as e:
            logger.warning(f"[POLLER] Could not read {self.repo} from GitHub, skipping this cycle: {e}")
            return

        authorized = [m for m in fresh if self._is_authorized(m.user)]
        if fresh:
            logger.info(
                f"[POLLER] {self.repo}: {len(fresh)} new mention(s), {len(authorized)} from authorized users"
            )

        tasks: list[ThreadMessage] = []
        for message in authorized:
            control = parse_control_message(message.body, self.bot_tag)
            if control is None:
                tasks.append(message)
                continue
            await self._apply_control(message, control)
            seen.add(message.seen_key)

        if tasks:
            await self._dispatch(tasks, seen)

        await self._monitor_sessions(seen)
        await self._cleanup_closed()
        self.registry.save_seen(seen)

    async def _collect(
        self, prs: list[PullRequest], issues: list[Issue], seen: SeenEvents
    ) -> list[ThreadMessage]:
        """Unseen bot mentions across open PRs and issues, sorted by creation time."""
        messages: list[ThreadMessage] = []
        for pr in prs:
            messages += await self.github.fetch_pr_comments(pr.number, self.bot_tag)
        for issue in issues:
            if self.bot_tag in issue.body:
                messages.append(ThreadMessage(
                    id=issue.number,
                    body=issue.body,
                    user=issue.user,
                    number=issue.number,
                    created_at=issue.created_at,
                    kind="issue",
                    on_issue=True,
                    html_url=issue.html_url,
                ))
            messages += await self.github.fetch_issue_comments(issue.number, self.bot_tag)

        fresh = [
            m for m in messages
            if m.seen_key not in seen and m.user.lower() != self.config.bot_username.lower()
        ]
        fresh.sort(key=lambda m: m.created_at)
        return fresh

    def _is_authorized(self, user: str) -> bool:
        return user.lower() in {u.lower() for u in self.config.authorized_users}

    # -----------------------------------------------------------------------
    # Control replies
    # -----------------------------------------------------------------------

    async def _apply_control(self, message: ThreadMessage, control: ControlMessage) -> None:
        applied = False
        for session in self.registry.find_by_number(message.number):
            if session.pending_approval is None:
                continue
            if await self.monitor.handle_approval(session.branch, control.action, control.pattern):
                applied = True
        if applied:
            await self.github.react(message, "+1")
        else:
            logger.info(f"[POLLER] {control.action} on #{message.number} matched no pending approval")

    # -----------------------------------------------------------------------
    # Task batches
    # -----------------------------------------------------------------------

    def _route(self, message: ThreadMessage) -> BatchTarget | None:
        if not message.on_issue:
            pr = self._prs.get(message.number)
            if pr is None:
                return None
            return BatchTarget(branch=pr.branch, number=pr.number, thread="pr")

        link = self.registry.get_issue_link(message.number)
        if link is not None:
            return BatchTarget(branch=link.branch, number=link.pr_number, thread="pr")
        issue = self._issues.get(message.number)
        return BatchTarget(
            branch=f"issue-{message.number}",
            number=message.number,
            thread="issue",
            title=issue.title if issue else "",
        )

    async def _dispatch(self, tasks: list[ThreadMessage], seen: SeenEvents) -> None:
        routed = []
        for message in tasks:
            target = self._route(message)
            if target is None:
                logger.warning(f"[POLLER] No branch for message {message.id} on #{message.number}, skipping")
                continue
            routed.append((message, target))

        for batch in batch_messages(routed):
            await self._process_batch(batch, seen)

    def _held_by(self, session: Session | None) -> bool:
        """A session that cannot take new requests right now; they wait for a later cycle."""
        if session is None:
            return False
        if session.status == "running":
            return not self.monitor.accepts_input
        return session.status != "waiting_clarification"

    async def _process_batch(self, batch: CommentBatch, seen: SeenEvents) -> None:
        existing = self.registry.get(batch.branch)
        if self._held_by(existing):
            logger.info(f"[POLLER] {batch.branch} is busy ({existing.status}), holding new requests")
            return

        hist = self._history(batch.branch)
        for message in batch.messages:
            hist.append(
                history.COMMENT_DETECTED,
                pr=batch.number,
                comment_id=message.id,
                kind=message.kind,
                author=message.user,
                body=message.body,
            )
            await self.github.react(message, "eyes")
            seen.add(message.seen_key)

        try:
            if existing is None:
                await self._start_fresh(batch)
            elif existing.status == "waiting_clarification":
                await self._answer_clarification(existing, batch)
            else:
                await self._inject(existing, batch)
        except Exception as e:
            self._unsee(batch, seen)
            logger.error(f"[POLLER] Could not act on {batch.branch}, will retry next cycle: {e}")

    @staticmethod
    def _unsee(batch: CommentBatch, seen: SeenEvents) -> None:
        for message in batch.messages:
            seen.discard(message.seen_key)

    async def _prepare_workspace(self, batch: CommentBatch) -> Path:
        workspace = self._workspace(batch.branch)
        if batch.thread == "issue":
            base = self.config.base_branch or await self.github.get_default_branch()
            return await workspace.ensure(self.github.default_clone_url(), source_branch=base)
        pr = self._prs.get(batch.number)
        clone_url = pr.clone_url if pr and pr.clone_url else self.github.default_clone_url()
        return await workspace.ensure(clone_url)

    async def _start_fresh(self, batch: CommentBatch) -> None:
        cwd = await self._prepare_workspace(batch)
        resume = self.registry.is_resumable(batch.branch)
        session = Session(
            branch=batch.branch,
            number=batch.number,
            thread=batch.thread,
            comment_ids=batch.comment_ids,
            issue_ids=batch.issue_ids,
            triggers=batch.triggers(),
        )
        await self.monitor.start(session, build_prompt(batch, self.bot_tag), cwd, resume=resume)

    async def _inject(self, session: Session, batch: CommentBatch) -> None:
        await self.monitor.inject(batch.branch, build_injection(batch, self.bot_tag), pr=batch.number)
        session.merge_triggers(batch.triggers(), batch.comment_ids, batch.issue_ids)
        self.registry.put(session)

    async def _answer_clarification(self, session: Session, batch: CommentBatch) -> None:
        prompt = build_clarification_follow_up(session, batch, self.bot_tag)
        workspace = self._workspace(batch.branch)
        cwd = workspace.path if workspace.exists else await self._prepare_workspace(batch)

        session.answer_clarification(batch.triggers(), batch.comment_ids, batch.issue_ids)
        await self.monitor.start(session, prompt, cwd, resume=True)
        self._history(batch.branch).append(
            history.CLARIFICATION_ANSWERED,
            pr=batch.number,
            answer="\n".join(strip_mention(m.body, self.bot_tag) for m in batch.messages),
        )

    # -----------------------------------------------------------------------
    # Monitoring + reconciliation
    # -----------------------------------------------------------------------

    async def _monitor_sessions(self, seen: SeenEvents) -> None:
        for branch, session in self.registry.all().items():
            if session.status != "running":
                continue
            status = await self.monitor.check(branch)
            logger.debug(f"[POLLER] {branch}: {status}")
            if status == "completed":
                await self._reconcile(branch, seen)

    async def _reconcile(self, branch: str, seen: SeenEvents) -> None:
        session = self.registry.get(branch)
        if session is None:
            return
        output = self.monitor.read_output(session)
        directives = output.directives
        hist = self._history(branch)

        if directives.clarification:
            body = render_clarification_request(session, directives.clarification, self.bot_tag)
            comment_id = await self.github.post_comment(session.number, body)
            session.await_clarification(
                PendingClarification(question=directives.clarification, comment_id=comment_id)
            )
            self.registry.put(session)
            hist.append(
                history.CLARIFICATION_REQUESTED,
                pr=session.number,
                question=directives.clarification,
                comment_id=comment_id,
            )
            logger.info(f"[POLLER] {branch} is waiting for clarification")
            return

        workspace = self._workspace(branch)
        display = None
        if output.text:
            display = strip_directives(rewrite_local_paths(output.text, workspace.path, self.repo, branch))

        if session.thread == "issue":
            sha, posted = await self._finish_issue(session, workspace, output, display)
        else:
            sha, posted = await self._finish_pr(session, workspace, output, display)

        if sha:
            self.registry.clear_resumable(branch)
        elif posted:
            self.registry.mark_resumable(branch)

        if not sha and not posted:
            self.registry.clear_resumable(branch)
            for key in session.seen_keys:
                seen.discard(key)
            hist.append(history.SESSION_FAILED, pr=session.number, reason="no output")
            logger.warning(f"[POLLER] {branch} produced no response, its requests will be retried")

        self.registry.remove(branch)

    async def _commit(self, session: Session, workspace: Workspace, message: str, push_branch: str | None = None):
        if not workspace.exists:
            return None
        sha = await workspace.commit_and_push(message, push_branch=push_branch)
        if sha:
            for branch in dict.fromkeys([session.branch, push_branch or session.branch]):
                self._history(branch).append(
                    history.COMMIT_PUSHED, pr=session.number, sha=sha, message=message,
                    branch=push_branch or session.branch,
                )
        return sha

    async def _finish_pr(
        self, session: Session, workspace: Workspace, output: RunOutput, display: str | None
    ) -> tuple[str | None, bool]:
        message = output.directives.commit_message or default_commit_message(session)
        sha = await self._commit(session, workspace, message)
        posted = await self._post_replies(session, session.triggers, sha, output, display)
        return sha, posted

    async def _finish_issue(
        self, session: Session, workspace: Workspace, output: RunOutput, display: str | None
    ) -> tuple[str | None, bool]:
        """Issue runs with changes become a new branch and a pull request linked to the issue."""
        directives = output.directives
        number = session.number
        if not workspace.exists or not await workspace.has_changes():
            posted = await self._post_replies(session, session.triggers, None, output, display)
            return None, posted

        new_branch = sanitize_branch_name(directives.branch_name) or f"threadkeeper/issue-{number}"
        await workspace.checkout_new_branch(new_branch)
        message = directives.commit_message or default_commit_message(session)
        sha = await self._commit(session, workspace, message, push_branch=new_branch)

        issue = self._issues.get(number)
        title = directives.pr_title or f"Fix #{number}: {issue.title if issue else 'issue ' + str(number)}"
        base = self.config.base_branch or await self.github.get_default_branch()
        pr_number, pr_url = await self.github.create_pull_request(new_branch, base, title, f"Closes #{number}")

        self.registry.set_issue_link(number, pr_number, new_branch)
        workspace.rename(new_branch)
        for branch in (session.branch, new_branch):
            self._history(branch).append(
                history.PR_OPENED, pr=pr_number, issue=number, branch=new_branch, sha=sha, url=pr_url
            )
        self.registry.clear_resumable(session.branch)

        body = render_thread_reply(
            session.triggers, self.bot_tag, sha, directives.tokens_used, display, self.monitor.agent_name
        )
        opened = f"Opened #{pr_number} to resolve this."
        comment_id = await self.github.post_comment(number, f"{opened}\n\n{body}" if body else opened)
        self._history(session.branch).append(history.COMMENT_POSTED, pr=number, comment_id=comment_id)
        return sha, True

    async def _post_replies(
        self,
        session: Session,
        triggers: list[TriggerComment],
        sha: str | None,
        output: RunOutput,
        display: str | None,
    ) -> bool:
        """Inline replies for review triggers, one top-level comment for the rest."""
        tokens = output.directives.tokens_used
        agent = self.monitor.agent_name
        hist = self._history(session.branch)
        review = [t for t in triggers if t.kind == "review" and t.comment_id]
        others = [t for t in triggers if t.kind != "review"]
        shared = render_shared_reply(sha, tokens, display, agent)
        posted = False

        for trigger in review:
            specific = output.directives.responses.get(trigger.comment_id)
            body = render_review_reply(specific, sha, tokens) if specific else shared
            if not body:
                continue
            comment_id = await self.github.post_review_reply(session.number, trigger.comment_id, body)
            hist.append(history.COMMENT_POSTED, pr=session.number, comment_id=comment_id, in_reply_to=trigger.comment_id)
            posted = True

        if others or not review:
            body = render_thread_reply(others or triggers, self.bot_tag, sha, tokens, display, agent)
            if body:
                comment_id = await self.github.post_comment(session.number, body)
                hist.append(history.COMMENT_POSTED, pr=session.number, comment_id=comment_id)
                posted = True
        return posted

    # -----------------------------------------------------------------------
    # Merged / closed PRs
    # -----------------------------------------------------------------------

    async def _cleanup_closed(self) -> None:
        tracked: dict[int, set[str]] = {}
        for session in self.registry.all().values():
            if session.thread == "pr":
                tracked.setdefault(session.number, set()).add(session.branch)
        links = self.registry.issue_links()
        for link in links.values():
            tracked.setdefault(link.pr_number, set()).add(link.branch)

        for number, branches in sorted(tracked.items()):
            if number in self._prs:
                continue
            pr = await self.github.get_pull_request(number)
            if not pr.merged and pr.state != "closed":
                continue
            for branch in sorted(branches):
                await self._cleanup_branch(branch, pr)
            for issue_number, link in links.items():
                if link.pr_number == number:
                    self.registry.remove_issue_link(issue_number)

    async def _cleanup_branch(self, branch: str, pr: PullRequest) -> None:
        hist = self._history(branch)
        hist.append(history.PR_MERGED if pr.merged else history.PR_CLOSED, pr=pr.number, branch=branch)
        await self.tmux.destroy_window(branch)
        self.registry.remove(branch)
        self.registry.clear_resumable(branch)
        removed = False
        if self.config.delete_workspace_on_close:
            self._workspace(branch).remove()
            removed = True
        hist.append(
            history.CLEANUP, pr=pr.number, branch=branch, tmux_window_destroyed=True, workspace_removed=removed
        )
        logger.info(f"[POLLER] Cleaned up {branch} after PR #{pr.number} was {'merged' if pr.merged else 'closed'}")


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

class PollScheduler:
    """
    Owns one repository's recurring cycle. `stop()` is cooperative: a cycle
    in progress finishes, the sleep between cycles is cut short. A cycle that
    raises stops this scheduler only.
    """

    def __init__(self, poller: RepoPoller, lock: asyncio.Lock | None = None):
        self.poller = poller
        self.lock = lock or asyncio.Lock()
        self.failure: BaseException | None = None
        self.cycles = 0
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def interval(self) -> int:
        return self.poller.config.poll_interval_seconds

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        repo = self.poller.repo
        logger.info(f"[POLLER] Scheduler started for {repo} (every {self.interval}s)")
        while not self._stop.is_set():
            try:
                async with self.lock:
                    await self.poller.run_cycle()
            except Exception as e:
                self.failure = e
                logger.exception(f"[POLLER] Fatal error polling {repo}, stopping its scheduler")
                break
            self.cycles += 1
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"[POLLER] Scheduler stopped for {repo}")

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name=f"poll:{self.poller.repo}")
        return self._task

    def stop(self) -> None:
        self._stop.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task


async def run_all(repos: list[RepoId]) -> list[PollScheduler]:
    """Poll every repository until SIGINT/SIGTERM. Cycles never overlap across repositories."""
    lock = asyncio.Lock()
    schedulers = [PollScheduler(RepoPoller(repo), lock) for repo in repos]

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: [s.stop() for s in schedulers])
        except NotImplementedError:
            pass

    for scheduler in schedulers:
        scheduler.start()
    await asyncio.gather(*(s.wait() for s in schedulers))
    return schedulers


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

async def retry_branch(repo: RepoId, branch: str, tmux: TmuxManager | None = None) -> list[SeenKey]:
    """
    Forget the last run on a branch so its requests are picked up again:
    un-mark its events, close its window, drop its session and resume flag.
    """
    paths = RepoPaths(repo)
    registry = SessionRegistry(repo, paths)
    hist = BranchHistory(repo, branch, paths)

    session = registry.get(branch)
    if session is not None:
        keys = session.seen_keys
    else:
        started = hist.last(history.CLI_STARTED)
        extra = (started.model_extra or {}) if started else {}
        keys = [("comment", c) for c in extra.get("comment_ids", [])]
        keys += [("issue", i) for i in extra.get("issue_ids", [])]

    seen = registry.load_seen()
    for key in keys:
        seen.discard(key)
    registry.save_seen(seen)

    await (tmux or TmuxManager(repo)).destroy_window(branch)
    registry.remove(branch)
    registry.clear_resumable(branch)
    hist.append(history.SESSION_RETRIED, pr=session.number if session else None, events=len(keys))
    return keys


async def undo_last_commit(repo: RepoId, branch: str, github: GitHubClient | None = None) -> tuple[str, str] | None:
    """Revert the most recent commit pushed by the bot on a branch. Returns (sha, revert sha)."""
    paths = RepoPaths(repo)
    hist = BranchHistory(repo, branch, paths)
    pushed = [e for e in hist.read() if e.type == history.COMMIT_PUSHED]
    reverted = {(e.model_extra or {}).get("sha") for e in hist.read() if e.type == history.COMMIT_REVERTED}
    candidates = [e for e in pushed if (e.model_extra or {}).get("sha") not in reverted]
    if not candidates:
        return None
    event = candidates[-1]
    sha = (event.model_extra or {})["sha"]
    target = (event.model_extra or {}).get("branch") or branch

    workspace = Workspace(repo, target, paths)
    if not workspace.exists:
        client = github or GitHubClient(repo, load_repo_config(repo).resolved_token())
        await workspace.ensure(client.default_clone_url())
    revert_sha = await workspace.revert(sha)
    hist.append(history.COMMIT_REVERTED, pr=event.pr, sha=sha, revert_sha=revert_sha)
    return sha, revert_sha
