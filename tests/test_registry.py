import pytest
from pydantic import ValidationError

from threadkeeper.registry import (
    InvalidTransition,
    PendingApproval,
    PendingClarification,
    RegistryError,
    SeenEvents,
    Session,
    TriggerComment,
)


def _session(**kwargs) -> Session:
    return Session(branch="feature/x", number=7, **kwargs)


def test_approval_round_trip_keeps_invariant():
    s = _session()
    s.await_approval(PendingApproval(command="rm -rf build", failed_part="rm -rf build"))
    assert s.status == "waiting_approval"
    assert s.pending_approval is not None

    s.resolve_approval()
    assert s.status == "running"
    assert s.pending_approval is None


def test_clarification_answer_extends_triggers():
    s = _session(triggers=[TriggerComment(user="alice", body="@tk-bot add retries", comment_id=1)], comment_ids=[1])
    s.await_clarification(PendingClarification(question="How many?", comment_id=50))
    assert s.status == "waiting_clarification"

    s.answer_clarification([TriggerComment(user="alice", body="@tk-bot three", comment_id=2)], [2], [])
    assert s.status == "running"
    assert s.pending_clarification is None
    assert [t.comment_id for t in s.triggers] == [1, 2]
    assert s.comment_ids == [1, 2]


def test_pause_only_from_running():
    s = _session()
    s.pause()
    assert s.status == "paused"
    with pytest.raises(InvalidTransition):
        s.await_approval(PendingApproval(command="x", failed_part="x"))
    s.unpause()
    assert s.status == "running"
    with pytest.raises(InvalidTransition):
        s.unpause()


def test_waiting_state_without_record_is_rejected():
    with pytest.raises(ValidationError):
        _session(status="waiting_approval")
    with pytest.raises(ValidationError):
        _session(pending_clarification=PendingClarification(question="?"))


def test_cursor_never_moves_backwards():
    s = _session()
    s.advance_cursor(10)
    s.advance_cursor(10)
    with pytest.raises(RegistryError):
        s.advance_cursor(3)
    assert s.log_offset == 10


def test_sessions_persist(registry):
    registry.put(_session(comment_ids=[4, 5]))
    loaded = registry.get("feature/x")
    assert loaded.comment_ids == [4, 5]
    assert registry.find_by_number(7)[0].branch == "feature/x"

    assert registry.pause("feature/x")
    assert not registry.pause("feature/x")
    assert registry.get("feature/x").status == "paused"
    assert registry.resume("feature/x")

    assert registry.remove("feature/x")
    assert registry.get("feature/x") is None
    assert not registry.remove("feature/x")


def test_writes_leave_no_temp_files(registry, paths):
    registry.put(_session())
    registry.put(_session(comment_ids=[1]))
    leftovers = [p.name for p in paths.root.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_corrupt_registry_raises(registry, paths):
    paths.sessions_file.write_text("{not json")
    with pytest.raises(RegistryError):
        registry.all()


def test_seen_events_are_split_by_kind(registry):
    seen = SeenEvents()
    seen.add(("comment", 12))
    seen.add(("issue", 3))
    registry.save_seen(seen)

    loaded = registry.load_seen()
    assert ("comment", 12) in loaded
    assert ("issue", 3) in loaded
    assert ("issue", 12) not in loaded

    loaded.discard(("comment", 12))
    assert ("comment", 12) not in loaded


def test_resumable_flags(registry):
    assert not registry.is_resumable("feature/x")
    registry.mark_resumable("feature/x")
    registry.mark_resumable("feature/x")
    assert registry.is_resumable("feature/x")
    assert registry.clear_resumable("feature/x")
    assert not registry.clear_resumable("feature/x")


def test_issue_links(registry):
    registry.set_issue_link(12, 100, "feat/login")
    link = registry.get_issue_link(12)
    assert (link.pr_number, link.branch) == (100, "feat/login")
    registry.remove_issue_link(12)
    assert registry.get_issue_link(12) is None
