#!/usr/bin/env python3
"""ResNet34-bi on CIFAR-100: K in {1, 2} x three step sizes, one task per GPU on 8 GPUs.

Extra arguments are forwarded to the launcher, e.g.
`tools/runners/resnet34_bi_grid.py --dry-run num_gpus=2`.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Sequence

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from wavegrid.launcher import main as launch  # noqa: E402

PRESET_OVERRIDES = [
    "model=ResNet34-bi",
    "dataset_name=cifar100",
    "reports_dir_name=ResNet34-bi-cifar100",
    "ks=[1,2]",
    "steps=[0.01,0.001,0.0001]",
    "num_gpus=8",
    "tasks_per_core=1",
    "rounds=3500",
    "batch_size=256",
    "report_rate=20",
]


def main(argv: Sequence[str] | None = None) -> int:
    return launch(sys.argv[1:] if argv is None else argv, preset_overrides=PRESET_OVERRIDES)


if __name__ == "__main__":
    raise SystemExit(main())
