from threadkeeper import history
from threadkeeper.history import BranchHistory, append_history, read_history


def test_append_and_read(home, repo):
    append_history(repo, "feature/x", history.COMMENT_DETECTED, pr=7, comment_id=1, author="alice")
    append_history(repo, "feature/x", history.COMMIT_PUSHED, pr=7, sha="abc1234")

    events = read_history(repo, "feature/x")
    assert [e.type for e in events] == ["comment_detected", "commit_pushed"]
    assert events[0].model_extra["author"] == "alice"
    assert events[1].pr == 7
    assert events[0].ts <= events[1].ts


def test_one_file_per_branch(home, repo, paths):
    append_history(repo, "feature/x", history.CLEANUP)
    append_history(repo, "other", history.CLEANUP)
    assert paths.history_file("feature/x").exists()
    assert paths.history_file("other").exists()
    assert len(read_history(repo, "feature/x")) == 1


def test_corrupt_lines_are_skipped(home, repo):
    h = BranchHistory(repo, "feature/x")
    h.append(history.PR_OPENED, pr=100)
    with open(h.path, "a", encoding="utf-8") as f:
        f.write("{truncated\n")
    h.append(history.PR_MERGED, pr=100)

    assert [e.type for e in h.read()] == ["pr_opened", "pr_merged"]
    assert h.last(history.PR_OPENED).pr == 100
    assert h.last(history.SESSION_FAILED) is None
