"""Tests for the tool build stage."""

import pytest

from replaybench.automation.artifacts import ArtifactStore
from replaybench.automation.build import (
    build_companion_tool,
    build_pinned_tool,
    current_revision,
    ensure_tools,
    repo_dir_name,
)
from replaybench.automation.process_utils import CommandFailed


class TestRepoDirName:
    """Test checkout directory naming."""

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("https://github.com/mongodb/mongo-tools.git", "mongodb-mongo-tools"),
            ("https://github.com/alice/mongo-tools", "alice-mongo-tools"),
            ("https://github.com/alice/mongo-tools/", "alice-mongo-tools"),
            ("git@github.com:bob/mongo-tools.git", "bob-mongo-tools"),
            ("https://example.com/mongo-tools.git", "mongo-tools"),
            ("/srv/mirrors/mongo-tools", "mongo-tools"),
        ],
    )
    def test_names(self, url, expected):
        assert repo_dir_name(url) == expected

    def test_forks_do_not_collide(self):
        assert repo_dir_name("https://github.com/a/tools.git") != repo_dir_name("https://github.com/b/tools.git")

    def test_unusable_url(self):
        with pytest.raises(ValueError):
            repo_dir_name("https://github.com/")


class TestPinnedTool:
    """Test clone/checkout/build of the replay tool."""

    def test_first_build(self, upstream_repo, make_config, fake_tools):
        config = make_config(revision="v1")
        result = build_pinned_tool(config, ArtifactStore(config.work_dir))
        assert result.rebuilt
        assert result.path == (config.work_dir / "mongo-tools" / "bin" / "mongoreplay").resolve()
        assert result.path.exists()
        assert fake_tools.calls_of("build-replay") == ["build-replay"]
        assert (config.work_dir / "logs" / "build-mongoreplay.log").exists()

    def test_same_revision_is_a_no_op(self, upstream_repo, make_config, fake_tools):
        config = make_config(revision="v1")
        store = ArtifactStore(config.work_dir)
        build_pinned_tool(config, store)
        fake_tools.clear_calls()
        result = build_pinned_tool(config, store)
        assert not result.rebuilt
        assert fake_tools.calls_of("build-replay") == []

    def test_branch_revision_fast_path(self, upstream_repo, make_config, fake_tools):
        config = make_config(revision="v1")
        store = ArtifactStore(config.work_dir)
        build_pinned_tool(config, store)
        branch = current_revision(upstream_repo)
        config = make_config(revision=branch)
        assert build_pinned_tool(config, store).rebuilt
        assert not build_pinned_tool(config, store).rebuilt

    def test_new_revision_rebuilds(self, upstream_repo, make_config, fake_tools):
        config = make_config(revision="v1")
        store = ArtifactStore(config.work_dir)
        build_pinned_tool(config, store)
        fake_tools.clear_calls()
        result = build_pinned_tool(make_config(revision="v2"), store)
        assert result.rebuilt
        assert fake_tools.calls_of("build-replay") == ["build-replay"]
        assert (config.work_dir / "mongo-tools" / "VERSION").exists()

    def test_missing_binary_rebuilds(self, upstream_repo, make_config, fake_tools):
        config = make_config(revision="v1")
        store = ArtifactStore(config.work_dir)
        result = build_pinned_tool(config, store)
        result.path.unlink()
        assert build_pinned_tool(config, store).rebuilt

    def test_local_changes_are_discarded(self, upstream_repo, make_config):
        config = make_config(revision="v1")
        store = ArtifactStore(config.work_dir)
        build_pinned_tool(config, store)
        checkout = config.work_dir / "mongo-tools"
        (checkout / "build.sh").write_text("exit 1\n", encoding="utf-8")
        (checkout / "scratch.txt").write_text("junk", encoding="utf-8")
        (checkout / "bin" / "mongoreplay").unlink()
        assert build_pinned_tool(config, store).rebuilt
        assert not (checkout / "scratch.txt").exists()

    def test_force_reclones(self, upstream_repo, make_config, fake_tools):
        config = make_config(revision="v1")
        store = ArtifactStore(config.work_dir)
        build_pinned_tool(config, store)
        marker = config.work_dir / "mongo-tools" / "bin" / "stale"
        marker.write_text("old", encoding="utf-8")
        result = build_pinned_tool(make_config(revision="v1", force=True), store)
        assert result.rebuilt
        assert not marker.exists()

    def test_unknown_revision_fails(self, upstream_repo, make_config):
        config = make_config(revision="no-such-tag")
        with pytest.raises(CommandFailed, match="failed to check out no-such-tag"):
            build_pinned_tool(config, ArtifactStore(config.work_dir))

    def test_clone_failure(self, tmp_path, make_config):
        config = make_config(repo=str(tmp_path / "nowhere" / "repo"))
        with pytest.raises(CommandFailed, match="failed to clone"):
            build_pinned_tool(config, ArtifactStore(config.work_dir))


class TestCompanionTool:
    """Test the load generator build."""

    def test_builds_when_missing(self, make_config, fake_tools):
        config = make_config()
        result = build_companion_tool(config, ArtifactStore(config.work_dir))
        assert result.rebuilt
        assert result.path == (config.work_dir / "bin" / "loadgen").resolve()
        assert result.path.exists()

    def test_skips_when_present(self, make_config, fake_tools):
        config = make_config()
        store = ArtifactStore(config.work_dir)
        build_companion_tool(config, store)
        fake_tools.clear_calls()
        assert not build_companion_tool(config, store).rebuilt
        assert fake_tools.calls_of("build-loadgen") == []

    def test_force_rebuilds(self, make_config, fake_tools):
        config = make_config()
        store = ArtifactStore(config.work_dir)
        build_companion_tool(config, store)
        assert build_companion_tool(make_config(force=True), store).rebuilt


def test_ensure_tools(upstream_repo, make_config):
    config = make_config()
    store = ArtifactStore(config.work_dir)
    replay_tool, loadgen = ensure_tools(config, store)
    assert replay_tool.rebuilt and loadgen.rebuilt
    replay_tool, loadgen = ensure_tools(config, store)
    assert not replay_tool.rebuilt and not loadgen.rebuilt
