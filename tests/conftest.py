"""Shared fixtures: stand-in shell scripts for the external tools."""

import shutil
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import pytest

from replaybench.automation.artifacts import ArtifactStore
from replaybench.automation.build import ToolBuildResult
from replaybench.automation.config import PipelineConfig, deep_merge, load_settings
from replaybench.automation.stages import StageContext

REPLAY_SCRIPT = """#!/bin/sh
echo "replay $*" >> "{calls}"
case "$1" in
  record)
    cp "$2" "$3" || exit 2
    ;;
  play)
    for arg in "$@"; do
      if [ "$arg" = "--fullSpeed" ] && [ -e "{fail_flag}" ]; then
        echo "unknown flag --fullSpeed" >&2
        exit 3
      fi
    done
    [ -e "{fail_all_flag}" ] && exit 4
    [ -e "$2" ] || exit 5
    sleep 0.05
    ;;
esac
exit 0
"""

LOADGEN_SCRIPT = """#!/bin/sh
echo "loadgen $*" >> "{calls}"
exit 0
"""

RESET_SCRIPT = """#!/bin/sh
echo "reset $*" >> "{calls}"
exit 0
"""

CAPTURE_SCRIPT = """#!/bin/sh
echo "capture $*" >> "{calls}"
trap 'exit 0' TERM INT
echo "captured-packets" > "$1"
while true; do sleep 0.05; done
"""

LOADGEN_BUILD_SCRIPT = """#!/bin/sh
echo "build-loadgen $*" >> "{calls}"
cp "{loadgen_src}" "$1"
chmod +x "$1"
"""

REPLAY_BUILD_SCRIPT = """#!/bin/sh
echo "build-replay" >> "{calls}"
mkdir -p bin
cp "{replay_src}" bin/mongoreplay
chmod +x bin/mongoreplay
"""


def _write_script(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@dataclass
class FakeTools:
    root: Path
    calls: Path
    replay: Path
    loadgen: Path
    fail_flag: Path
    fail_all_flag: Path
    settings: Dict

    def call_lines(self) -> List[str]:
        if not self.calls.exists():
            return []
        return self.calls.read_text(encoding="utf-8").splitlines()

    def calls_of(self, tool: str) -> List[str]:
        return [line for line in self.call_lines() if line.split(" ", 1)[0] == tool]

    def clear_calls(self) -> None:
        self.calls.write_text("", encoding="utf-8")


@pytest.fixture
def fake_tools(tmp_path) -> FakeTools:
    root = tmp_path / "fakes"
    calls = root / "calls.log"
    fail_flag = root / "fail-full-speed"
    fail_all_flag = root / "fail-replay"
    fmt = dict(calls=calls, fail_flag=fail_flag, fail_all_flag=fail_all_flag)
    replay = _write_script(root / "replay.sh", REPLAY_SCRIPT.format(**fmt))
    loadgen = _write_script(root / "loadgen.sh", LOADGEN_SCRIPT.format(**fmt))
    reset = _write_script(root / "reset.sh", RESET_SCRIPT.format(**fmt))
    capture = _write_script(root / "capture.sh", CAPTURE_SCRIPT.format(**fmt))
    loadgen_build = _write_script(root / "loadgen-src" / "build.sh", LOADGEN_BUILD_SCRIPT.format(loadgen_src=loadgen, **fmt))

    overrides = {
        "replay_tool": {
            "build": ["sh", "build.sh"],
            "record": ["{binary}", "record", "{pcap}", "{trace}"],
            "play": ["{binary}", "play", "{trace}", "{uri}"],
            "full_speed_args": ["--fullSpeed"],
            "profile_args": ["--cpuprofile", "{profile}"],
        },
        "loadgen": {
            "source_dir": str(loadgen_build.parent),
            "build": ["sh", "build.sh", "{binary}"],
            "run": ["{binary}", "-i", "{insert}", "-u", "{update}", "-r", "{read}", "-c", "{conns}", "-d", "{duration}", "{uri}"],
            "seed_duration_s": 1,
            "generate_duration_s": 1,
        },
        "database": {"reset": [str(reset), "{uri}"]},
        "capture": {"run": [str(capture), "{pcap}"]},
        "timing": {
            "capture_ready_s": 0.2,
            "driver_flush_s": 0.0,
            "background_grace_s": 1.0,
            "stop_timeout_s": 2.0,
            "capture_stable_interval_s": 0.1,
            "capture_stable_timeout_s": 5.0,
        },
    }
    settings = deep_merge(load_settings(), overrides)
    return FakeTools(
        root=root,
        calls=calls,
        replay=replay,
        loadgen=loadgen,
        fail_flag=fail_flag,
        fail_all_flag=fail_all_flag,
        settings=settings,
    )


@pytest.fixture
def make_config(tmp_path, fake_tools):
    def _make(connections=(10,), force=False, profile=False, repo=None, revision="v1", work_dir=None):
        return PipelineConfig(
            repo=repo or str(tmp_path / "upstream" / "mongo-tools"),
            revision=revision,
            host="127.0.0.1",
            port=27017,
            connections=tuple(connections),
            interface="lo",
            profile=profile,
            force=force,
            work_dir=work_dir or (tmp_path / "work"),
            settings=fake_tools.settings,
        )

    return _make


@pytest.fixture
def make_context(fake_tools):
    """Stage context with prebuilt tools, bypassing the build stage."""

    def _make(config, rebuilt=False):
        config.work_dir.mkdir(parents=True, exist_ok=True)
        return StageContext(
            config=config,
            store=ArtifactStore(config.work_dir),
            replay_tool=ToolBuildResult(name="mongoreplay", path=fake_tools.replay, rebuilt=rebuilt),
            loadgen=ToolBuildResult(name="loadgen", path=fake_tools.loadgen, rebuilt=False),
        )

    return _make


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.name=bench", "-c", "user.email=bench@example.com", *args],
        cwd=cwd,
        check=True,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )


@pytest.fixture
def upstream_repo(tmp_path, fake_tools):
    """Local git repository whose build.sh installs the fake replay tool, tagged v1 and v2."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "upstream" / "mongo-tools"
    repo.mkdir(parents=True)
    (repo / "build.sh").write_text(
        REPLAY_BUILD_SCRIPT.format(calls=fake_tools.calls, replay_src=fake_tools.replay), encoding="utf-8"
    )
    (repo / ".gitignore").write_text("bin/\n", encoding="utf-8")
    _git(repo, "init")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "initial")
    _git(repo, "tag", "v1")
    (repo / "VERSION").write_text("2\n", encoding="utf-8")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "second")
    _git(repo, "tag", "v2")
    return repo
