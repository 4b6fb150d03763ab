#!/usr/bin/env python3
"""Build the tools, then seed/generate/record/replay once per connection count.

Typical usage:
  sudo -E python3 -m replaybench.automation.sweep \
    --repo https://github.com/mongodb/mongo-tools.git --revision r4.0.0 \
    --host localhost --port 27017 --connections 10,20,50 --interface lo

Every stage leaves an artifact in the work dir (see artifacts.py) and is
skipped on the next invocation while that artifact is current, so re-running
the same command resumes where a failed run stopped. ``--force`` rebuilds the
tools and re-runs every stage.

Outputs:
  - <work-dir>/sweep_result.json (plan, builds, per-connection timings)
  - <work-dir>/logs/<stage>-<N>.log and <work-dir>/progress.log
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from replaybench.automation import config as cfg
from replaybench.automation.artifacts import ArtifactStore, remove_artifact
from replaybench.automation.build import ToolBuildResult, ensure_tools
from replaybench.automation.config import PipelineConfig
from replaybench.automation.process_utils import ProcessLaunchError
from replaybench.automation.results import ResultRecorder, RunResult, SweepPoint
from replaybench.automation.stages import (
    StageContext,
    generate,
    plan_stages,
    previous_replay,
    record,
    replay,
    seed,
)


def run_connection(ctx: StageContext, conns: int) -> SweepPoint:
    plan = plan_stages(ctx, conns)
    executed: Dict[str, bool] = {"seed": False, "generate": False, "record": False, "replay": False}

    if plan.seed:
        seed(ctx, conns)
        executed["seed"] = True
    else:
        print(f"[seed] conns={conns}: skipping")
    if plan.generate:
        generate(ctx, conns)
        executed["generate"] = True
    else:
        print(f"[generate] conns={conns}: skipping")
    if plan.record:
        record(ctx, conns)
        executed["record"] = True
    else:
        print(f"[record] conns={conns}: skipping")

    outcome = None if plan.replay else previous_replay(ctx, conns)
    if outcome is None:
        outcome = replay(ctx, conns)
        executed["replay"] = True
    else:
        print(f"[replay] conns={conns}: reusing {ctx.store.replay_result(conns)}")

    # The trace is the durable artifact; a capture must not outlive its record stage.
    remove_artifact(ctx.store.capture(conns))
    return SweepPoint(
        connections=conns,
        duration_s=outcome.duration_s,
        mode=outcome.mode,
        replayed=outcome.ran,
        stages=executed,
    )


def _dry_run_plan(config: PipelineConfig, store: ArtifactStore) -> Dict:
    # Assume the tools are current; a rebuild would turn every stage on.
    placeholder = ToolBuildResult(name="unbuilt", path=Path("-"), rebuilt=False)
    ctx = StageContext(config=config, store=store, replay_tool=placeholder, loadgen=placeholder)
    plan = config.as_plan()
    plan["stages"] = {str(conns): plan_stages(ctx, conns).as_dict() for conns in config.connections}
    return plan


def run_sweep(config: PipelineConfig, dry_run: bool = False, summary: Optional[Path] = None) -> RunResult:
    store = ArtifactStore(config.work_dir)
    result = RunResult()
    if dry_run:
        try:
            print(json.dumps(_dry_run_plan(config, store), indent=2))
        except BrokenPipeError:
            pass
        return result

    config.work_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().isoformat(timespec="seconds")
    print(f"[{ts}] Revision={config.revision} Target={config.host}:{config.port} Connections={list(config.connections)}")
    store.log_progress(f"[sweep] starting connections={list(config.connections)} force={config.force}")

    recorder = ResultRecorder(config.work_dir, config.as_plan())
    replay_tool, loadgen = ensure_tools(config, store)
    for tool in (replay_tool, loadgen):
        recorder.record_build(tool.name, tool.path, tool.rebuilt)
    ctx = StageContext(config=config, store=store, replay_tool=replay_tool, loadgen=loadgen)
    if ctx.rebuilt:
        print("[sweep] tools were rebuilt; every stage will run")

    for conns in config.connections:
        point = run_connection(ctx, conns)
        result.append(point)
        print(f"[sweep] conns={conns} replay={point.duration_s:.3f}s mode={point.mode}")
        store.log_progress(f"[sweep] conns={conns} replay={point.duration_s:.3f}s")

    out_path = recorder.finalize(result, summary)
    print(result.format_table())
    print(f"[sweep] wrote {out_path}")
    return result


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Record and replay a database workload across connection counts")
    parser.add_argument("--repo", default=cfg.DEFAULT_REPO, help="Replay tool repository URL")
    parser.add_argument("--revision", default=cfg.DEFAULT_REVISION, help="Branch, tag or commit to build")
    parser.add_argument("--host", default=cfg.DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=cfg.DEFAULT_PORT)
    parser.add_argument(
        "--connections",
        type=cfg.connections_arg,
        default=cfg.parse_connections(cfg.DEFAULT_CONNECTIONS),
        help=f"Comma-separated connection counts (default: {cfg.DEFAULT_CONNECTIONS})",
    )
    parser.add_argument("--interface", default=cfg.DEFAULT_INTERFACE, help="Network interface to capture on")
    parser.add_argument("--profile", action="store_true", help="Ask the replay tool for a CPU profile")
    parser.add_argument("--force", action="store_true", help="Rebuild the tools and re-run every stage")
    parser.add_argument("--work-dir", default=".", help="Directory holding tools, traces and markers")
    parser.add_argument("--config", help="YAML overriding replaybench/configs/defaults.yaml")
    parser.add_argument("--dry-run", action="store_true", help="Print the stage plan and exit")
    parser.add_argument("--summary", help="Write the JSON result to this path instead of <work-dir>/sweep_result.json")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = PipelineConfig(
            repo=args.repo,
            revision=args.revision,
            host=args.host,
            port=args.port,
            connections=tuple(args.connections),
            interface=args.interface,
            profile=args.profile,
            force=args.force,
            work_dir=Path(args.work_dir),
            settings=cfg.load_settings(args.config),
        )
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"[replaybench] error: {exc}", file=sys.stderr)
        return 1

    try:
        run_sweep(config, dry_run=args.dry_run, summary=Path(args.summary) if args.summary else None)
    except (ProcessLaunchError, ValueError) as exc:
        print(f"[replaybench] error: {exc}", file=sys.stderr)
        print(f"[replaybench] hint: check {config.work_dir / 'logs'} for command output", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
