from pathlib import Path

from threadkeeper.config_loader import RepoId
from threadkeeper.github import ThreadMessage
from threadkeeper.prompts import (
    BatchTarget,
    batch_messages,
    build_clarification_follow_up,
    build_prompt,
    default_commit_message,
    parse_control_message,
    parse_directives,
    render_thread_reply,
    rewrite_local_paths,
    sanitize_branch_name,
    strip_directives,
)
from threadkeeper.registry import PendingClarification, Session, TriggerComment

BOT = "@tk-bot"


def _msg(id, body, number=7, kind="discussion", user="alice", **extra):
    return ThreadMessage(id=id, body=body, user=user, number=number, created_at=f"2024-01-01T00:00:{id:02d}Z", kind=kind, **extra)


def test_directive_round_trip():
    reply = "I fixed the bug in the parser.\nCOMMIT: fix: x\nRESPONSE[7]: ok\nThanks!"
    directives = parse_directives(reply)
    assert directives.commit_message == "fix: x"
    assert directives.responses == {7: "ok"}

    shown = strip_directives(reply)
    assert "COMMIT" not in shown
    assert "RESPONSE" not in shown
    assert "I fixed the bug in the parser." in shown
    assert "Thanks!" in shown


def test_directives_are_case_insensitive_with_list_prefix():
    reply = "1. commit: feat: add retries\n2) Branch_Name: feat/retries\n3. pr_title: Add retries"
    directives = parse_directives(reply)
    assert directives.commit_message == "feat: add retries"
    assert directives.branch_name == "feat/retries"
    assert directives.pr_title == "Add retries"


def test_placeholder_clarification_is_absent():
    for placeholder in ("none", "N/A", "(none)", "n/a."):
        assert parse_directives(f"CLARIFICATION_NEEDED: {placeholder}").clarification is None
    assert parse_directives("CLARIFICATION_NEEDED: Sync or async?").clarification == "Sync or async?"


def test_missing_directives_fall_back():
    directives = parse_directives("Done, nothing else to say.")
    assert directives.commit_message is None
    assert directives.clarification is None
    assert directives.responses == {}
    assert default_commit_message(Session(branch="b", number=42)) == "threadkeeper: address PR #42 feedback"


def test_token_count():
    assert parse_directives("...\ntokens used\n12,345\n").tokens_used == 12345
    assert parse_directives("tokens used: 99").tokens_used == 99


def test_lone_numbered_bullet_loses_numeral():
    reply = "1. Renamed the helper and updated callers.\n2. COMMIT: refactor: rename helper"
    assert strip_directives(reply) == "Renamed the helper and updated callers."


def test_several_bullets_keep_numerals():
    reply = "1. First\n2. Second\nCOMMIT: x"
    assert strip_directives(reply) == "1. First\n2. Second"


def test_only_directives_leaves_nothing():
    assert strip_directives("COMMIT: x\nRESPONSE[3]: y") is None


def test_batching_groups_by_branch_in_order():
    a = BatchTarget(branch="feat/a", number=7)
    b = BatchTarget(branch="feat/b", number=8)
    batches = batch_messages([(_msg(1, "one"), a), (_msg(2, "two", 8), b), (_msg(3, "three"), a)])
    assert [x.branch for x in batches] == ["feat/a", "feat/b"]
    assert [m.id for m in batches[0].messages] == [1, 3]
    assert batches[0].comment_ids == [1, 3]


def test_prompt_contains_requests_in_order_without_mention():
    batch = batch_messages([
        (_msg(1, f"{BOT} add a retry"), BatchTarget(branch="feat/a", number=7)),
        (_msg(2, f"{BOT} and a test"), BatchTarget(branch="feat/a", number=7)),
    ])[0]
    prompt = build_prompt(batch, BOT)
    assert 'PR #7 on branch "feat/a"' in prompt
    assert prompt.index("add a retry") < prompt.index("and a test")
    assert BOT not in prompt
    assert "COMMIT: " in prompt
    assert "CLARIFICATION_NEEDED: " in prompt


def test_review_comments_carry_their_id_and_location():
    message = _msg(55, f"{BOT} rename this", kind="review", path="src/app.py", line=12, diff_hunk="@@ -1 +1 @@\n-a\n+b")
    batch = batch_messages([(message, BatchTarget(branch="feat/a", number=7))])[0]
    prompt = build_prompt(batch, BOT)
    assert "[comment 55]" in prompt
    assert "src/app.py:12" in prompt
    assert "RESPONSE[<id>]" in prompt


def test_issue_prompt_asks_for_branch_and_title():
    message = _msg(12, f"{BOT} please add login", number=12, kind="issue")
    batch = batch_messages([(message, BatchTarget(branch="issue-12", number=12, thread="issue", title="Login"))])[0]
    prompt = build_prompt(batch, BOT)
    assert "issue #12: Login" in prompt
    assert "BRANCH_NAME: " in prompt
    assert "PR_TITLE: " in prompt
    assert batch.issue_ids == [12]
    assert batch.comment_ids == []


def test_clarification_follow_up_carries_question_and_answer():
    session = Session(
        branch="feat/a",
        number=7,
        triggers=[TriggerComment(user="alice", body=f"{BOT} add caching", comment_id=1)],
        status="waiting_clarification",
        pending_clarification=PendingClarification(question="Redis or memory?"),
    )
    batch = batch_messages([(_msg(2, f"{BOT} memory"), BatchTarget(branch="feat/a", number=7))])[0]
    prompt = build_clarification_follow_up(session, batch, BOT)
    assert "add caching" in prompt
    assert '"Redis or memory?"' in prompt
    assert prompt.rstrip().count("memory") >= 2


def test_thread_reply_quotes_and_mentions():
    triggers = [TriggerComment(user="alice", body=f"{BOT} fix it"), TriggerComment(user="alice", body=f"{BOT} now")]
    body = render_thread_reply(triggers, BOT, "abc1234", 1200, "All done.", "Claude")
    assert body.startswith("> fix it\n> now")
    assert "@alice Pushed commit `abc1234`." in body
    assert "#### Tokens used: 1,200" in body
    assert "## Claude's response:" in body
    assert render_thread_reply(triggers, BOT, None, None, None, "Claude") is None


def test_control_messages():
    assert parse_control_message(f"{BOT} allow once", BOT).action == "allow_once"
    always = parse_control_message(f"{BOT} allow always `^make\\b`", BOT)
    assert always.action == "allow_always"
    assert always.pattern == "^make\\b"
    assert parse_control_message(f"{BOT} deny", BOT).action == "deny"
    assert parse_control_message(f"{BOT} please deny access to admins", BOT) is None
    assert parse_control_message(f"{BOT} fix the typo", BOT) is None


def test_sanitize_branch_name():
    assert sanitize_branch_name("feat/add login!") == "feat/add-login"
    assert sanitize_branch_name("`fix..it`") == "fix.it"
    assert sanitize_branch_name("  ") is None
    assert sanitize_branch_name(None) is None


def test_local_paths_become_blob_links():
    workspace = Path("/home/u/.threadkeeper/repos/acme/widgets/workspaces/feat__a")
    repo = RepoId(owner="acme", repo="widgets")
    text = f"See [app.py]({workspace}/src/app.py) and {workspace}/README.md"
    rewritten = rewrite_local_paths(text, workspace, repo, "feat/a")
    assert "[app.py](https://github.com/acme/widgets/blob/feat/a/src/app.py)" in rewritten
    assert rewritten.endswith("and README.md")
