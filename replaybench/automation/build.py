#!/usr/bin/env python3
"""Make sure the replay tool and the load generator are built.

The replay tool is cloned from a repository and pinned to a revision; the
load generator is built from a local source directory whenever its binary
is missing. Either rebuild invalidates every downstream artifact.
"""

from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

from replaybench.automation.artifacts import ArtifactStore
from replaybench.automation.config import PipelineConfig
from replaybench.automation.process_utils import CommandFailed, ProcessLaunchError, render_command, run_command

_SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:(?P<path>.+)$")


@dataclass(frozen=True)
class ToolBuildResult:
    name: str
    path: Path
    rebuilt: bool


def repo_dir_name(url: str) -> str:
    """Local checkout directory for ``url``, prefixed with the owner when there is one.

    ``https://github.com/alice/mongo-tools.git`` -> ``alice-mongo-tools``;
    a plain filesystem path keeps just its last component.
    """
    cleaned = url.strip().rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]
    match = _SCP_LIKE.match(cleaned)
    if match:
        path = match.group("path")
    elif "://" in cleaned:
        path = urlparse(cleaned).path
    else:
        name = Path(cleaned).name
        if not name:
            raise ValueError(f"cannot derive a directory name from {url!r}")
        return name
    parts = [part for part in path.split("/") if part]
    if not parts:
        raise ValueError(f"cannot derive a directory name from {url!r}")
    if len(parts) >= 2:
        return f"{parts[-2]}-{parts[-1]}"
    return parts[-1]


def _git_output(checkout: Path, *args: str) -> Optional[str]:
    cp = subprocess.run(
        ["git", *args],
        cwd=checkout,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        text=True,
        check=False,
    )
    if cp.returncode != 0:
        return None
    return cp.stdout.strip()


def current_revision(checkout: Path) -> str:
    label = _git_output(checkout, "rev-parse", "--abbrev-ref", "HEAD")
    if label is None:
        raise CommandFailed(f"could not determine the checked-out revision in {checkout}", ["git", "rev-parse"], None)
    return label


def revision_matches(checkout: Path, revision: str) -> bool:
    label = current_revision(checkout)
    if label == revision:
        return True
    if label != "HEAD":
        return False
    # Detached head: compare commits so tags and hashes still hit the fast path.
    head = _git_output(checkout, "rev-parse", "HEAD")
    wanted = _git_output(checkout, "rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}")
    return head is not None and head == wanted


def _require_binary(name: str, binary: Path) -> None:
    if not binary.exists():
        raise ProcessLaunchError(f"{name} build finished but {binary} was not produced")


def build_pinned_tool(config: PipelineConfig, store: ArtifactStore) -> ToolBuildResult:
    tool = config.section("replay_tool")
    name = str(tool.get("name", "replay"))
    checkout = (config.work_dir / repo_dir_name(config.repo)).resolve()
    binary = checkout / str(tool.get("binary", f"bin/{name}"))
    log_path = store.build_log(name)

    if config.force or not checkout.exists():
        if checkout.exists():
            print(f"[build] removing {checkout} (forced rebuild)")
            shutil.rmtree(checkout)
        print(f"[build] cloning {config.repo} into {checkout}")
        run_command("git-clone", ["git", "clone", config.repo, str(checkout)], f"failed to clone {config.repo}", log_path=log_path)

    if revision_matches(checkout, config.revision) and binary.exists():
        print(f"[build] {name} already built at {config.revision}; skipping")
        store.log_progress(f"[build] {name} up to date at {config.revision}")
        return ToolBuildResult(name=name, path=binary, rebuilt=False)

    print(f"[build] building {name} at {config.revision}")
    run_command("git-clean", ["git", "clean", "-fd"], f"failed to clean {checkout}", log_path=log_path, cwd=checkout)
    run_command("git-reset", ["git", "reset", "--hard", "HEAD"], f"failed to reset {checkout}", log_path=log_path, cwd=checkout)
    run_command(
        "git-checkout",
        ["git", "checkout", config.revision],
        f"failed to check out {config.revision} in {checkout}",
        log_path=log_path,
        cwd=checkout,
    )
    argv = render_command(tool.get("build", ["./build.sh"]), binary=str(binary))
    elapsed = run_command(f"build-{name}", argv, f"failed to build {name}", log_path=log_path, cwd=checkout)
    _require_binary(name, binary)
    store.log_progress(f"[build] rebuilt {name} at {config.revision} in {elapsed:.1f}s")
    return ToolBuildResult(name=name, path=binary, rebuilt=True)


def build_companion_tool(config: PipelineConfig, store: ArtifactStore) -> ToolBuildResult:
    tool = config.section("loadgen")
    name = str(tool.get("name", "loadgen"))
    binary = (config.work_dir / str(tool.get("binary", f"bin/{name}"))).resolve()
    source_dir = (config.work_dir / str(tool.get("source_dir", "."))).resolve()

    if not config.force and binary.exists():
        print(f"[build] {name} present at {binary}; skipping")
        return ToolBuildResult(name=name, path=binary, rebuilt=False)

    print(f"[build] building {name} from {source_dir}")
    binary.parent.mkdir(parents=True, exist_ok=True)
    argv = render_command(tool.get("build", []), binary=str(binary))
    if not argv:
        raise ProcessLaunchError(f"no build command configured for {name}")
    elapsed = run_command(f"build-{name}", argv, f"failed to build {name}", log_path=store.build_log(name), cwd=source_dir)
    _require_binary(name, binary)
    store.log_progress(f"[build] rebuilt {name} in {elapsed:.1f}s")
    return ToolBuildResult(name=name, path=binary, rebuilt=True)


def ensure_tools(config: PipelineConfig, store: ArtifactStore) -> Tuple[ToolBuildResult, ToolBuildResult]:
    replay_tool = build_pinned_tool(config, store)
    loadgen = build_companion_tool(config, store)
    return replay_tool, loadgen
