import pytest
import yaml

from threadkeeper.config_loader import (
    DEFAULT_SAFE_PATTERNS,
    ConfigError,
    RepoId,
    RepoPaths,
    branch_slug,
    get_all_repos,
    global_config_file,
    init_home,
    load_global_whitelist,
    load_repo_config,
    parse_remotes,
    save_repo_overrides,
)


def test_defaults(home, repo):
    config = load_repo_config(repo)
    assert config.backend == "claude"
    assert config.poll_interval_seconds == 900
    assert config.idle_timeout_seconds == 600
    assert config.delete_workspace_on_close is True


def test_repo_file_overrides_global(home, repo):
    home.mkdir(parents=True, exist_ok=True)
    global_config_file().write_text(yaml.safe_dump({
        "bot_username": "@tk-bot",
        "authorized_users": ["alice"],
        "poll_interval_seconds": 60,
    }))
    save_repo_overrides(repo, {"poll_interval_seconds": 30, "backend": "codex"})

    config = load_repo_config(repo)
    assert config.bot_username == "tk-bot"
    assert config.bot_tag == "@tk-bot"
    assert config.authorized_users == ["alice"]
    assert config.poll_interval_seconds == 30
    assert config.backend == "codex"


def test_malformed_yaml_is_a_config_error(home, repo):
    home.mkdir(parents=True, exist_ok=True)
    global_config_file().write_text("bot_username: [unclosed")
    with pytest.raises(ConfigError):
        load_repo_config(repo)


def test_invalid_value_is_a_config_error(home, repo):
    save_repo_overrides(repo, {"backend": "vim"})
    with pytest.raises(ConfigError):
        load_repo_config(repo)


def test_init_home_seeds_whitelist_once(home):
    init_home()
    assert load_global_whitelist() == DEFAULT_SAFE_PATTERNS
    (home / "whitelist.yaml").write_text(yaml.safe_dump({"patterns": ["^ls$"]}))
    init_home()
    assert load_global_whitelist() == ["^ls$"]


def test_repo_id_parse():
    assert RepoId.parse("acme/widgets") == RepoId(owner="acme", repo="widgets")
    with pytest.raises(ConfigError):
        RepoId.parse("widgets")


def test_paths_use_branch_slug(home, repo):
    paths = RepoPaths(repo)
    assert branch_slug("feat/login") == "feat__login"
    assert paths.log_file("feat/login").name == "feat__login.log"
    assert paths.workspace_dir("feat/login") == paths.root / "workspaces" / "feat__login"
    assert paths.root == home / "repos" / "acme" / "widgets"


def test_get_all_repos_lists_initialized(home, repo):
    assert get_all_repos() == []
    save_repo_overrides(repo, {})
    assert get_all_repos() == [repo]


def test_parse_remotes():
    output = (
        "origin\tgit@github.com:acme/widgets.git (fetch)\n"
        "origin\tgit@github.com:acme/widgets.git (push)\n"
        "upstream\thttps://github.com/other/widgets (fetch)\n"
        "gitlab\thttps://gitlab.com/x/y.git (fetch)\n"
    )
    assert parse_remotes(output) == [
        ("origin", RepoId(owner="acme", repo="widgets")),
        ("upstream", RepoId(owner="other", repo="widgets")),
    ]
