"""
THREADKEEPER Prompt Builder

Renders operator requests into the single instruction payload an agent
receives, and reads the agent's reply back.

Reply protocol (one directive per line, case-insensitive, an optional
"1." / "2)" list prefix is tolerated):

    COMMIT: <message>
    CLARIFICATION_NEEDED: <question>     ("none", "n/a", ... mean absent)
    RESPONSE[<comment id>]: <text>
    BRANCH_NAME: <name>
    PR_TITLE: <title>

Directive lines are never shown to humans.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from threadkeeper.config_loader import RepoId
from threadkeeper.github import ThreadMessage
from threadkeeper.registry import PendingApproval, Session, TriggerComment


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

class BatchTarget(BaseModel):
    """Where a task message is routed: a branch, and the thread replies go to."""
    branch: str
    number: int
    thread: Literal["pr", "issue"] = "pr"
    title: str = ""


class CommentBatch(BaseModel):
    branch: str
    number: int
    thread: Literal["pr", "issue"] = "pr"
    title: str = ""
    messages: list[ThreadMessage] = Field(default_factory=list)

    @property
    def comment_ids(self) -> list[int]:
        return [m.id for m in self.messages if m.kind != "issue"]

    @property
    def issue_ids(self) -> list[int]:
        return [m.id for m in self.messages if m.kind == "issue"]

    def triggers(self) -> list[TriggerComment]:
        return [
            TriggerComment(user=m.user, body=m.body, comment_id=m.id, kind=m.kind)
            for m in self.messages
        ]


def batch_messages(routed: Iterable[tuple[ThreadMessage, BatchTarget]]) -> list[CommentBatch]:
    """Group routed messages by target branch, keeping arrival order within and across batches."""
    batches: dict[str, CommentBatch] = {}
    for message, target in routed:
        batch = batches.get(target.branch)
        if batch is None:
            batch = CommentBatch(
                branch=target.branch,
                number=target.number,
                thread=target.thread,
                title=target.title,
            )
            batches[target.branch] = batch
        batch.messages.append(message)
    return list(batches.values())


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------

_FOOTER = [
    "",
    "Please address all the above requests. Make the necessary code changes.",
    "Do NOT run `git add`, `git commit`, or `git push`; the bot will commit and push for you.",
    "When finished, provide:",
    "1. A brief summary of what you changed and why.",
    "2. A suggested commit message on its own line starting with exactly `COMMIT: `, "
    "e.g. `COMMIT: fix: correct the API timeout handling`",
    "If you need clarification before you can proceed, output a single line starting with exactly "
    "`CLARIFICATION_NEEDED: ` followed by your question, e.g. "
    "`CLARIFICATION_NEEDED: Should the new function be async or sync?`, and do NOT include a COMMIT line. "
    "The bot will post your question and relay the human's answer back to you.",
]

_REVIEW_FOOTER = (
    "Some requests are inline review comments marked [comment <id>]. For each of them you may add a line "
    "starting with exactly `RESPONSE[<id>]: ` with a short reply for that thread."
)

_ISSUE_FOOTER = [
    "This work will be opened as a new pull request. Also provide:",
    "- a branch name on its own line starting with exactly `BRANCH_NAME: `, e.g. `BRANCH_NAME: fix/login-timeout`",
    "- a pull request title on its own line starting with exactly `PR_TITLE: `",
]


def strip_mention(body: str, bot_tag: str) -> str:
    return re.sub(re.escape(bot_tag), "", body, flags=re.IGNORECASE).strip()


def _render_request(message: ThreadMessage, bot_tag: str) -> list[str]:
    body = strip_mention(message.body, bot_tag)
    if message.kind == "review":
        location = message.path or "?"
        if message.line:
            location += f":{message.line}"
        lines = [f"- [comment {message.id}] @{message.user} on `{location}`: {body}"]
        if message.diff_hunk:
            lines += ["  ```diff", *[f"  {l}" for l in message.diff_hunk.splitlines()[-8:]], "  ```"]
        return lines
    return [f"- @{message.user}: {body}"]


def _header(batch: CommentBatch) -> list[str]:
    if batch.thread == "issue":
        title = f": {batch.title}" if batch.title else ""
        return [f"You are working on issue #{batch.number}{title}."]
    return [f'You are working on PR #{batch.number} on branch "{batch.branch}".']


def _footer(batch: CommentBatch, messages: Iterable[ThreadMessage] = ()) -> list[str]:
    lines = list(_FOOTER)
    if any(m.kind == "review" for m in messages):
        lines.append(_REVIEW_FOOTER)
    if batch.thread == "issue":
        lines += _ISSUE_FOOTER
    return lines


def build_prompt(batch: CommentBatch, bot_tag: str) -> str:
    """The combined instruction payload for a fresh (or continued) run."""
    lines = _header(batch) + ["The following requests were made:", ""]
    for message in batch.messages:
        lines += _render_request(message, bot_tag)
    lines += _footer(batch, batch.messages)
    return "\n".join(lines)


def build_injection(batch: CommentBatch, bot_tag: str) -> str:
    """Additional requests typed into an agent that is still running."""
    requests = [" ".join(_render_request(m, bot_tag)[0].split()) for m in batch.messages]
    return "Additional requests arrived while you were working: " + " ".join(requests)


def build_clarification_follow_up(session: Session, batch: CommentBatch, bot_tag: str) -> str:
    """Resume prompt carrying the original requests, the question asked, and the answer."""
    question = session.pending_clarification.question if session.pending_clarification else ""
    answer = "\n".join(strip_mention(m.body, bot_tag) for m in batch.messages)

    lines = _header(batch) + ["", "You were originally asked to:", ""]
    for trigger in session.triggers:
        lines.append(f"- @{trigger.user}: {strip_mention(trigger.body, bot_tag)}")
    lines += [
        "",
        f'You asked for clarification: "{question}"',
        "",
        "Here is the human's response:",
        "",
        answer,
    ]
    lines += _footer(batch, batch.messages)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Directive parsing
# ---------------------------------------------------------------------------

_DIRECTIVE = re.compile(
    r"^\s*(?:\d+[.)]\s*)?(COMMIT|CLARIFICATION_NEEDED|BRANCH_NAME|PR_TITLE|RESPONSE\[\s*(\d+)\s*\])\s*:\s*(.*?)\s*$",
    re.IGNORECASE,
)
_NUMBERED = re.compile(r"^(\s*)\d+[.)]\s+")
_TOKENS_USED = re.compile(r"tokens used\W*(\d[\d,]*)", re.IGNORECASE)
_PLACEHOLDERS = {"none", "n/a", "na", "nil", "null", "-", "no", "nothing", "not needed"}


class AgentDirectives(BaseModel):
    commit_message: str | None = None
    clarification: str | None = None
    responses: dict[int, str] = Field(default_factory=dict)
    branch_name: str | None = None
    pr_title: str | None = None
    tokens_used: int | None = None


def _is_placeholder(value: str) -> bool:
    return value.strip().strip("()`*_.\"'").strip().lower() in _PLACEHOLDERS


def parse_directives(text: str | None) -> AgentDirectives:
    """Read directive lines from an agent reply. The first occurrence of each wins."""
    result = AgentDirectives()
    if not text:
        return result

    for line in text.splitlines():
        match = _DIRECTIVE.match(line)
        if not match:
            continue
        name, comment_id, value = match.group(1).upper(), match.group(2), match.group(3).strip()
        if not value:
            continue
        if name == "COMMIT" and result.commit_message is None:
            result.commit_message = value
        elif name == "CLARIFICATION_NEEDED" and result.clarification is None:
            if not _is_placeholder(value):
                result.clarification = value
        elif name == "BRANCH_NAME" and result.branch_name is None:
            result.branch_name = value.strip("`")
        elif name == "PR_TITLE" and result.pr_title is None:
            result.pr_title = value
        elif comment_id is not None:
            result.responses.setdefault(int(comment_id), value)

    tokens = _TOKENS_USED.findall(text)
    if tokens:
        result.tokens_used = int(tokens[-1].replace(",", ""))
    return result


def strip_directives(text: str | None) -> str | None:
    """Remove directive lines for display. A lone remaining numbered bullet loses its numeral."""
    if not text:
        return None
    kept = [line for line in text.splitlines() if not _DIRECTIVE.match(line)]
    numbered = [i for i, line in enumerate(kept) if _NUMBERED.match(line)]
    if len(numbered) == 1:
        i = numbered[0]
        kept[i] = _NUMBERED.sub(r"\1", kept[i], count=1)
    cleaned = "\n".join(kept).strip()
    return cleaned or None


def sanitize_branch_name(name: str | None) -> str | None:
    """Reduce a suggested branch name to something git accepts, or None."""
    if not name:
        return None
    cleaned = re.sub(r"[^A-Za-z0-9._/-]+", "-", name.strip())
    cleaned = re.sub(r"/{2,}", "/", cleaned)
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-./")
    if cleaned.endswith(".lock"):
        cleaned = cleaned[: -len(".lock")]
    return cleaned or None


def rewrite_local_paths(text: str, workspace: Path, repo: RepoId, branch: str) -> str:
    """Turn links to files in the local clone into GitHub blob links; drop other absolute prefixes."""
    base = re.escape(str(workspace))
    text = re.sub(
        rf"\[([^\]]+)\]\({base}/([^)]+)\)",
        lambda m: f"[{m.group(1)}](https://github.com/{repo.owner}/{repo.repo}/blob/{branch}/{m.group(2)})",
        text,
    )
    return re.sub(rf"{base}/", "", text)


# ---------------------------------------------------------------------------
# Upstream messages
# ---------------------------------------------------------------------------

def default_commit_message(session: Session) -> str:
    if session.thread == "issue":
        return f"threadkeeper: resolve issue #{session.number}"
    return f"threadkeeper: address PR #{session.number} feedback"


def mentions(triggers: Iterable[TriggerComment]) -> str:
    seen: list[str] = []
    for t in triggers:
        tag = f"@{t.user}"
        if t.user and tag not in seen:
            seen.append(tag)
    return " ".join(seen)


def render_escalation(pending: PendingApproval, bot_tag: str) -> str:
    return "\n".join([
        "⚠️ **Command approval needed**",
        "",
        "The agent wants to run:",
        "```",
        pending.command,
        "```",
        "",
        f"The part `{pending.failed_part}` is not in the whitelist.",
        "",
        "Reply with:",
        f"- `{bot_tag} allow once` to approve this one time",
        f"- `{bot_tag} allow always <regex>` to add a regex pattern to this repository's whitelist",
        f"- `{bot_tag} deny` to reject this command",
    ])


def render_clarification_request(session: Session, question: str, bot_tag: str) -> str:
    who = mentions(session.triggers)
    opener = f"{who}\n\n" if who else ""
    return (
        f"{opener}I need some clarification before I can proceed:\n\n{question}\n\n"
        f"Please reply mentioning `{bot_tag}` with your answer."
    )


def _commit_lines(sha: str | None, tokens_used: int | None) -> list[str]:
    lines: list[str] = []
    if sha:
        lines.append(f"Pushed commit `{sha}`.")
    if tokens_used is not None:
        lines += ["", f"#### Tokens used: {tokens_used:,}"]
    return lines


def render_shared_reply(sha: str | None, tokens_used: int | None, display: str | None, agent_name: str) -> str | None:
    if not sha and not display:
        return None
    lines = _commit_lines(sha, tokens_used)
    if display:
        lines += ["", f"## {agent_name}'s response:", "", display]
    body = "\n".join(lines).strip()
    return body or None


def render_review_reply(specific: str, sha: str | None, tokens_used: int | None) -> str:
    extra = _commit_lines(sha, tokens_used)
    return "\n".join([specific, ""] + extra).strip() if extra else specific


def render_thread_reply(
    triggers: list[TriggerComment],
    bot_tag: str,
    sha: str | None,
    tokens_used: int | None,
    display: str | None,
    agent_name: str,
) -> str | None:
    """Top-level reply: quotes the requests, mentions their authors, then the agent's response."""
    if not sha and not display:
        return None
    quoted: list[str] = []
    for t in triggers:
        quoted += [f"> {line}" for line in strip_mention(t.body, bot_tag).splitlines()]

    lines: list[str] = []
    if quoted:
        lines += quoted + [""]
    who = mentions(triggers)
    opener = f"{who} Pushed commit `{sha}`.".strip() if sha else who
    if opener:
        lines.append(opener)
    if tokens_used is not None:
        lines += ["", f"#### Tokens used: {tokens_used:,}"]
    if display:
        lines += ["", f"## {agent_name}'s response:", "", display]
    body = "\n".join(lines).strip()
    return body or None


# ---------------------------------------------------------------------------
# Control messages
# ---------------------------------------------------------------------------

ControlAction = Literal["allow_once", "allow_always", "deny"]

_ALLOW_ALWAYS = re.compile(r"allow always\s+`?([^`\n]+)`?", re.IGNORECASE)


class ControlMessage(BaseModel):
    action: ControlAction
    pattern: str | None = None


def parse_control_message(body: str, bot_tag: str) -> ControlMessage | None:
    """Recognise approve-once / approve-always / deny replies. Anything else is a task."""
    lower = body.lower()
    if "allow once" in lower:
        return ControlMessage(action="allow_once")
    if "allow always" in lower:
        match = _ALLOW_ALWAYS.search(body)
        pattern = match.group(1).strip() if match else None
        return ControlMessage(action="allow_always", pattern=pattern or None)
    if f"{bot_tag.lower()} deny" in lower:
        return ControlMessage(action="deny")
    return None
