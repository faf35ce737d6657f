from typer.testing import CliRunner

from threadkeeper import __version__
from threadkeeper.cli import app
from threadkeeper.config_loader import load_global_whitelist, load_repo_whitelist
from threadkeeper.registry import Session

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"THREADKEEPER v{__version__}" in result.stdout


def test_whitelist_add_show_remove(home, repo):
    result = runner.invoke(app, ["whitelist", "add", "^make test$"])
    assert result.exit_code == 0
    assert load_global_whitelist() == ["^make test$"]

    result = runner.invoke(app, ["whitelist", "add", "^npm ci$", "--repo", "acme/widgets"])
    assert result.exit_code == 0
    assert load_repo_whitelist(repo) == ["^npm ci$"]

    result = runner.invoke(app, ["whitelist", "show", "--repo", "acme/widgets"])
    assert result.exit_code == 0
    assert "^make test$" in result.stdout
    assert "^npm ci$" in result.stdout

    result = runner.invoke(app, ["whitelist", "remove", "0"])
    assert result.exit_code == 0
    assert load_global_whitelist() == []

    result = runner.invoke(app, ["whitelist", "remove", "5"])
    assert result.exit_code == 1


def test_invalid_pattern_is_rejected(home):
    result = runner.invoke(app, ["whitelist", "add", "(["])
    assert result.exit_code == 1
    assert load_global_whitelist() == []


def test_status_with_nothing_configured(home):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert "stopped" in result.stdout


def test_pause_and_resume(home, registry):
    registry.put(Session(branch="feature-x", number=7))

    result = runner.invoke(app, ["pause", "feature-x", "--repo", "acme/widgets"])
    assert result.exit_code == 0
    assert registry.get("feature-x").status == "paused"

    result = runner.invoke(app, ["pause", "feature-x", "--repo", "acme/widgets"])
    assert result.exit_code == 1

    result = runner.invoke(app, ["resume", "feature-x", "--repo", "acme/widgets"])
    assert result.exit_code == 0
    assert registry.get("feature-x").status == "running"


def test_fresh_clears_resume_flag(home, registry):
    registry.mark_resumable("feature-x")
    result = runner.invoke(app, ["fresh", "feature-x", "--repo", "acme/widgets"])
    assert result.exit_code == 0
    assert not registry.is_resumable("feature-x")
