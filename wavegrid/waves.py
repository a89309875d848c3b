from __future__ import annotations

from typing import Sequence, TypeVar

from .errors import ConfigurationError

T = TypeVar("T")


def chunk_size(num_gpus: int, tasks_per_core: int) -> int:
    if num_gpus < 1 or tasks_per_core < 1:
        raise ConfigurationError(
            f"Chunk size must be at least 1 (num_gpus={num_gpus}, tasks_per_core={tasks_per_core})"
        )
    return num_gpus * tasks_per_core


def num_waves(total: int, size: int) -> int:
    if size < 1:
        raise ConfigurationError(f"Chunk size must be at least 1, got {size}")
    return (total + size - 1) // size


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into contiguous waves of at most ``size`` entries."""
    if size < 1:
        raise ConfigurationError(f"Chunk size must be at least 1, got {size}")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def gpu_for_position(position: int, tasks_per_core: int, num_gpus: int) -> int:
    # Consecutive positions fill one GPU up to tasks_per_core, then wrap.
    return (position // tasks_per_core) % num_gpus
