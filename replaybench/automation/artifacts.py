#!/usr/bin/env python3
"""On-disk artifacts that record which stages already completed for a connection count.

Layout under the work dir::

    .db-epoch                 destructive-reset counter for the shared database
    .seeded-<N>               seed marker, holds the epoch it was written under
    traffic-<N>.pcap          raw capture, consumed by the record stage
    traffic-<N>.playback      replayable trace
    replay-<N>.json           timing of the last replay of the trace
    logs/<stage>-<N>.log      per-stage command output
    progress.log              timestamped progress lines
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

SEED_MARKER_PREFIX = ".seeded-"
EPOCH_FILE = ".db-epoch"


class DatabaseEpoch:
    """Counter bumped on every destructive reset of the target database."""

    def __init__(self, path: Path):
        self.path = path

    def current(self) -> int:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return 0
        except ValueError:
            # A corrupt counter can't vouch for any marker; treat as a fresh epoch.
            return -1

    def bump(self) -> int:
        value = max(self.current(), 0) + 1
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{value}\n", encoding="utf-8")
        return value


class ArtifactStore:
    def __init__(self, work_dir: Path):
        self.root = Path(work_dir)
        self.epoch = DatabaseEpoch(self.root / EPOCH_FILE)

    def seed_marker(self, conns: int) -> Path:
        return self.root / f"{SEED_MARKER_PREFIX}{conns}"

    def capture(self, conns: int) -> Path:
        return self.root / f"traffic-{conns}.pcap"

    def trace(self, conns: int) -> Path:
        return self.root / f"traffic-{conns}.playback"

    def replay_result(self, conns: int) -> Path:
        return self.root / f"replay-{conns}.json"

    def profile(self, conns: int) -> Path:
        return self.root / f"profile-{conns}.pprof"

    def log(self, stage: str, conns: int) -> Path:
        return self.root / "logs" / f"{stage}-{conns}.log"

    def build_log(self, tool: str) -> Path:
        return self.root / "logs" / f"build-{tool}.log"

    # Seed markers

    def marker_epoch(self, conns: int) -> Optional[int]:
        try:
            return int(self.seed_marker(conns).read_text(encoding="utf-8").strip())
        except (FileNotFoundError, ValueError):
            return None

    def is_seeded(self, conns: int) -> bool:
        epoch = self.marker_epoch(conns)
        return epoch is not None and epoch == self.epoch.current()

    def mark_seeded(self, conns: int) -> None:
        path = self.seed_marker(conns)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{self.epoch.current()}\n", encoding="utf-8")

    def seeded_connections(self) -> List[int]:
        found = []
        for path in self.root.glob(f"{SEED_MARKER_PREFIX}*"):
            suffix = path.name[len(SEED_MARKER_PREFIX):]
            if suffix.isdigit():
                found.append(int(suffix))
        return sorted(found)

    def reset_database_epoch(self) -> int:
        """Record a destructive reset and drop every marker from earlier epochs."""
        current = self.epoch.bump()
        for conns in self.seeded_connections():
            if self.marker_epoch(conns) != current:
                self.seed_marker(conns).unlink(missing_ok=True)
        return current

    # Replay results

    def load_replay_result(self, conns: int) -> Optional[Dict[str, Any]]:
        path = self.replay_result(conns)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict) or "duration_s" not in payload:
            return None
        return payload

    def save_replay_result(self, conns: int, payload: Dict[str, Any]) -> None:
        path = self.replay_result(conns)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def log_progress(self, message: str) -> None:
        """Append a progress line to the run log so users can follow execution."""
        try:
            log_path = self.root / "progress.log"
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as f:
                ts = datetime.now().isoformat(timespec="seconds")
                f.write(f"[{ts}] {message}\n")
        except OSError:
            # Best-effort only: don't break the sweep if logging fails.
            pass


def remove_artifact(path: Path) -> bool:
    if path.exists():
        path.unlink()
        return True
    return False
