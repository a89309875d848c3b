"""Hyperparameter grid for the K / step-size sweep."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

ENTIRE = "entire"
BLOCKWISE_SEQUENTIAL = "blockwise_sequential"


@dataclass(frozen=True)
class ExperimentConfig:
    k: int
    step_size: float

    @property
    def mode(self) -> str:
        return training_mode(self.k)

    @property
    def label(self) -> str:
        return f"K={self.k}, step_size={self.step_size}"


def training_mode(k: int) -> str:
    """K=1 trains the whole model at once; every other K goes block by block."""
    if k == 1:
        return ENTIRE
    return BLOCKWISE_SEQUENTIAL


def build_grid(steps: Iterable[float], ks: Iterable[int]) -> list[ExperimentConfig]:
    """Cross product of step sizes and K values, step-major."""
    ks = list(ks)
    return [ExperimentConfig(k=int(k), step_size=float(step)) for step in steps for k in ks]
