#!/usr/bin/env python3
"""Plot replay duration against connection count from one or more sweep results.

Example:
  python3 -m replaybench.automation.plot_results \
    --result sweep_result.json --result ../baseline/sweep_result.json \
    --out figures/replay_duration
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional, Sequence

from replaybench.automation.results import load_sweep_result


def _ensure_matplotlib():
    try:
        import matplotlib  # noqa: F401
    except Exception as exc:
        raise RuntimeError(
            "matplotlib import failed. Install via: python3 -m pip install --user matplotlib"
        ) from exc


def _save_fig(fig, out_png: Path, out_pdf: Path) -> None:
    out_png.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_png, dpi=200, bbox_inches="tight")
    fig.savefig(out_pdf, bbox_inches="tight")


def plot_results(result_paths: Sequence[Path], out_stem: Path, labels: Optional[Sequence[str]] = None) -> List[Path]:
    _ensure_matplotlib()
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(6, 4))
    plotted = 0
    for idx, path in enumerate(result_paths):
        points = sorted(load_sweep_result(path), key=lambda p: p.connections)
        if not points:
            continue
        label = labels[idx] if labels and idx < len(labels) else path.parent.name or path.stem
        ax.plot([p.connections for p in points], [p.duration_s for p in points], marker="o", label=label)
        plotted += 1
    if plotted == 0:
        plt.close(fig)
        raise RuntimeError("no sweep points found in the given results")

    ax.set_xlabel("connections")
    ax.set_ylabel("replay duration (s)")
    ax.grid(True, alpha=0.3)
    if plotted > 1:
        ax.legend()
    out_png = out_stem.with_suffix(".png")
    out_pdf = out_stem.with_suffix(".pdf")
    _save_fig(fig, out_png, out_pdf)
    plt.close(fig)
    return [out_png, out_pdf]


def main() -> int:
    ap = argparse.ArgumentParser(description="Plot replay duration vs connection count")
    ap.add_argument("--result", action="append", required=True, help="sweep_result.json (repeatable)")
    ap.add_argument("--label", action="append", help="Legend label per --result, in order")
    ap.add_argument("--out", default="replay_duration", help="Output path without extension")
    args = ap.parse_args()

    written = plot_results([Path(p) for p in args.result], Path(args.out), labels=args.label)
    for path in written:
        print(f"[plot_results] wrote {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
