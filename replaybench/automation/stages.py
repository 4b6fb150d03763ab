#!/usr/bin/env python3
"""Seed, generate, record and replay stages for one connection count."""

from __future__ import annotations

import contextlib
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional

from replaybench.automation.artifacts import ArtifactStore, remove_artifact
from replaybench.automation.build import ToolBuildResult
from replaybench.automation.config import PipelineConfig
from replaybench.automation.process_utils import (
    CommandFailed,
    managed_process,
    render_command,
    run_command,
    wait_for_exit,
    wait_for_stable_file,
)

FULL_SPEED = "full_speed"
DEFAULT_PACING = "default"


@dataclass(frozen=True)
class StageContext:
    config: PipelineConfig
    store: ArtifactStore
    replay_tool: ToolBuildResult
    loadgen: ToolBuildResult

    @property
    def rebuilt(self) -> bool:
        return self.replay_tool.rebuilt or self.loadgen.rebuilt

    @property
    def invalidate(self) -> bool:
        return self.config.force or self.rebuilt


@dataclass(frozen=True)
class StagePlan:
    seed: bool
    generate: bool
    record: bool
    replay: bool

    def as_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass
class ReplayOutcome:
    connections: int
    duration_s: float
    mode: str
    ran: bool


def plan_stages(ctx: StageContext, conns: int) -> StagePlan:
    """Decide which stages must run for ``conns``.

    A stage runs when forced, when a tool was rebuilt, when its own artifact
    is missing, or when the stage feeding it runs. Replay also runs when a
    profile was requested but none is on disk. Seeding is only needed
    when new traffic has to be generated against an unseeded database.
    """
    store = ctx.store
    if ctx.invalidate:
        return StagePlan(seed=True, generate=True, record=True, replay=True)
    has_trace = store.trace(conns).exists()
    generate = not has_trace and not store.capture(conns).exists()
    record = generate or not has_trace
    replay = record or store.load_replay_result(conns) is None
    if ctx.config.profile and not store.profile(conns).exists():
        replay = True
    seed = generate and not store.is_seeded(conns)
    return StagePlan(seed=seed, generate=generate, record=record, replay=replay)


def _loadgen_argv(ctx: StageContext, conns: int, insert: int, update: int, read: int, duration: int) -> List[str]:
    settings = ctx.config.section("loadgen")
    return render_command(
        settings.get("run", []),
        binary=str(ctx.loadgen.path),
        insert=insert,
        update=update,
        read=read,
        conns=conns,
        duration=duration,
        jobs=settings.get("jobs", 1),
        uri=ctx.config.database_uri(),
        host=ctx.config.host,
        port=ctx.config.port,
        database=ctx.config.database_name,
    )


def seed(ctx: StageContext, conns: int) -> float:
    """Drop the target database and load it with an insert-only workload sized by ``conns``.

    Dropping the database is global, so every other connection count's seed
    marker is invalidated along with it.
    """
    config, store = ctx.config, ctx.store
    log_path = store.log("seed", conns)
    reset_argv = render_command(
        config.section("database").get("reset", []),
        uri=config.database_uri(),
        host=config.host,
        port=config.port,
        database=config.database_name,
    )
    print(f"[seed] dropping database {config.database_name} on {config.host}:{config.port}")
    run_command("db-reset", reset_argv, f"failed to drop database {config.database_name}", log_path=log_path)
    epoch = store.reset_database_epoch()
    store.log_progress(f"[seed] database reset; epoch={epoch}")

    duration = int(config.section("loadgen").get("seed_duration_s", 30))
    argv = _loadgen_argv(ctx, conns, insert=100, update=0, read=0, duration=duration)
    print(f"[seed] inserting with {conns} connections for {duration}s")
    elapsed = run_command("loadgen-seed", argv, f"failed to seed database for {conns} connections", log_path=log_path)
    store.mark_seeded(conns)
    store.log_progress(f"[seed] conns={conns} done in {elapsed:.1f}s")
    return elapsed


def generate(ctx: StageContext, conns: int) -> float:
    """Capture the traffic of a concurrent read + write workload into ``traffic-<N>.pcap``."""
    config, store = ctx.config, ctx.store
    pcap = store.capture(conns)
    log_path = store.log("generate", conns)
    remove_artifact(pcap)

    capture_argv = render_command(
        config.section("capture").get("run", []),
        interface=config.interface,
        port=config.port,
        host=config.host,
        pcap=str(pcap.resolve()),
    )
    duration = int(config.section("loadgen").get("generate_duration_s", 30))
    query_argv = _loadgen_argv(ctx, conns, insert=0, update=0, read=100, duration=duration)
    update_argv = _loadgen_argv(ctx, conns, insert=0, update=100, read=0, duration=duration)
    stop_timeout = config.timing("stop_timeout_s", 5.0)

    try:
        with contextlib.ExitStack() as stack:
            print(f"[generate] capturing port {config.port} on {config.interface} into {pcap}")
            stack.enter_context(
                managed_process(
                    "capture",
                    capture_argv,
                    log_path=store.log("capture", conns),
                    ready_wait=config.timing("capture_ready_s", 1.0),
                    stop_timeout=stop_timeout,
                )
            )
            query_proc = stack.enter_context(
                managed_process(
                    "loadgen-query",
                    query_argv,
                    log_path=store.log("query", conns),
                    ready_wait=0.1,
                    stop_timeout=stop_timeout,
                )
            )
            print(f"[generate] running update workload with {conns} connections for {duration}s")
            elapsed = run_command(
                "loadgen-update", update_argv, f"failed to generate traffic for {conns} connections", log_path=log_path
            )
            time.sleep(config.timing("driver_flush_s", 2.0))
            if not wait_for_exit(query_proc, config.timing("background_grace_s", 5.0)):
                store.log_progress(f"[generate] conns={conns} query workload still running; terminating")
        # Capture is stopped by now; wait for the kernel to finish writing it out.
        size = wait_for_stable_file(
            pcap,
            interval=config.timing("capture_stable_interval_s", 1.0),
            timeout=config.timing("capture_stable_timeout_s", 60.0),
        )
    except BaseException:
        # A partial capture must not be recorded by a later run.
        remove_artifact(pcap)
        store.log_progress(f"[generate] conns={conns} failed; partial capture removed")
        raise
    store.log_progress(f"[generate] conns={conns} captured {size} bytes in {elapsed:.1f}s")
    return elapsed


def record(ctx: StageContext, conns: int) -> float:
    """Convert the capture for ``conns`` into a replayable trace, then drop the capture."""
    store = ctx.store
    pcap, trace = store.capture(conns), store.trace(conns)
    remove_artifact(trace)
    argv = render_command(
        ctx.config.section("replay_tool").get("record", []),
        binary=str(ctx.replay_tool.path),
        pcap=str(pcap.resolve()),
        trace=str(trace.resolve()),
    )
    print(f"[record] converting {pcap} -> {trace}")
    elapsed = run_command("record", argv, f"failed to record trace for {conns} connections", log_path=store.log("record", conns))
    remove_artifact(pcap)
    store.log_progress(f"[record] conns={conns} done in {elapsed:.1f}s")
    return elapsed


def _play_argv(ctx: StageContext, conns: int, mode: str) -> List[str]:
    settings = ctx.config.section("replay_tool")
    values = dict(
        binary=str(ctx.replay_tool.path),
        trace=str(ctx.store.trace(conns).resolve()),
        uri=ctx.config.host_uri(),
        host=ctx.config.host,
        port=ctx.config.port,
        profile=str(ctx.store.profile(conns).resolve()),
    )
    argv = render_command(settings.get("play", []), **values)
    if mode == FULL_SPEED:
        argv += render_command(settings.get("full_speed_args", []), **values)
    if ctx.config.profile:
        argv += render_command(settings.get("profile_args", []), **values)
    return argv


def replay(ctx: StageContext, conns: int) -> ReplayOutcome:
    """Time a replay of the trace; full speed first, then the tool's default pacing.

    Any failure of the full-speed attempt triggers the fallback. The reported
    duration is that of the attempt which succeeded.
    """
    store = ctx.store
    log_path = store.log("replay", conns)
    failure = f"failed to replay trace for {conns} connections"
    mode = FULL_SPEED
    print(f"[replay] replaying {store.trace(conns)} against {ctx.config.host_uri()} (full speed)")
    try:
        elapsed = run_command("play-full-speed", _play_argv(ctx, conns, FULL_SPEED), failure, log_path=log_path)
    except CommandFailed as exc:
        print(f"[replay] full-speed replay failed ({exc}); retrying with default pacing")
        store.log_progress(f"[replay] conns={conns} full-speed failed: {exc}")
        mode = DEFAULT_PACING
        elapsed = run_command("play-default", _play_argv(ctx, conns, DEFAULT_PACING), failure, log_path=log_path)

    outcome = ReplayOutcome(connections=conns, duration_s=elapsed, mode=mode, ran=True)
    payload = asdict(outcome)
    payload.pop("ran")
    payload["completed_at"] = datetime.utcnow().isoformat() + "Z"
    store.save_replay_result(conns, payload)
    store.log_progress(f"[replay] conns={conns} mode={mode} duration={elapsed:.3f}s")
    return outcome


def previous_replay(ctx: StageContext, conns: int) -> Optional[ReplayOutcome]:
    payload = ctx.store.load_replay_result(conns)
    if payload is None:
        return None
    try:
        duration = float(payload["duration_s"])
    except (TypeError, ValueError):
        return None
    return ReplayOutcome(connections=conns, duration_s=duration, mode=str(payload.get("mode", "")), ran=False)
