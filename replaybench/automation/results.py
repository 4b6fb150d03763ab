#!/usr/bin/env python3
"""Helpers for accumulating and reporting sweep timings."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple


@dataclass
class SweepPoint:
    connections: int
    duration_s: float
    mode: str
    replayed: bool
    stages: Dict[str, bool] = field(default_factory=dict)


@dataclass
class RunResult:
    points: List[SweepPoint] = field(default_factory=list)

    def append(self, point: SweepPoint) -> None:
        self.points.append(point)

    def pairs(self) -> List[Tuple[int, float]]:
        return [(p.connections, p.duration_s) for p in self.points]

    def stages_executed(self) -> int:
        return sum(1 for p in self.points for ran in p.stages.values() if ran)

    def format_table(self) -> str:
        lines = [f"{'connections':>12}  {'replay_s':>10}  {'mode':<10}  source"]
        for p in self.points:
            source = "replayed" if p.replayed else "cached"
            lines.append(f"{p.connections:>12}  {p.duration_s:>10.3f}  {p.mode:<10}  {source}")
        return "\n".join(lines)


@dataclass
class ResultRecorder:
    work_dir: Path
    plan: Dict
    builds: List[Dict] = field(default_factory=list)

    def record_build(self, name: str, path: Path, rebuilt: bool) -> None:
        self.builds.append({"name": name, "path": str(path), "rebuilt": rebuilt})

    def finalize(self, result: RunResult, summary_path: Optional[Path] = None) -> Path:
        payload = {
            "plan": self.plan,
            "builds": self.builds,
            "results": [asdict(p) for p in result.points],
            "generated_at": datetime.utcnow().isoformat() + "Z",
        }
        out_path = summary_path or (self.work_dir / "sweep_result.json")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return out_path


def load_sweep_result(path: Path) -> List[SweepPoint]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    points = []
    for entry in payload.get("results") or []:
        try:
            points.append(
                SweepPoint(
                    connections=int(entry["connections"]),
                    duration_s=float(entry["duration_s"]),
                    mode=str(entry.get("mode", "")),
                    replayed=bool(entry.get("replayed", True)),
                    stages=dict(entry.get("stages") or {}),
                )
            )
        except (KeyError, TypeError, ValueError):
            continue
    return points
