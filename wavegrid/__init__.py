"""Wave-scheduled launcher for hyperparameter grids of training runs."""

from .errors import ConfigurationError, WavegridError
from .grid import ExperimentConfig, build_grid, training_mode
from .launcher import RunResult, main, run_grid
from .supervisor import CancellationToken, ProcessSupervisor

__all__ = [
    "CancellationToken",
    "ConfigurationError",
    "ExperimentConfig",
    "ProcessSupervisor",
    "RunResult",
    "WavegridError",
    "build_grid",
    "main",
    "run_grid",
    "training_mode",
]
