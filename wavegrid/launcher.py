"""Wave-by-wave launcher for the K / step-size training grid.

Every grid point becomes one `python -m <train_module> ...` child process.
Children are started in waves of ``num_gpus * tasks_per_core``; a wave has to
finish completely before the next one starts. Child failures are logged in
the final summary and never stop the batch. SIGINT/SIGTERM terminate the
children of the current wave and end the run with exit status 1.
"""

from __future__ import annotations

import argparse
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from prettytable import PrettyTable
from tqdm import tqdm

from .config import load_config
from .dispatch import Task, TaskDispatcher
from .errors import ConfigurationError
from .grid import build_grid
from .supervisor import ProcessSupervisor
from .utils import get_logger, should_disable_tqdm
from .waves import chunk_size, partition

COMPLETED = "completed"
CANCELLED = "cancelled"


@dataclass
class RunResult:
    status: str
    total: int
    waves: int
    tasks: list[Task] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.status == COMPLETED else 1

    @property
    def failed(self) -> list[Task]:
        return [task for task in self.tasks if task.spawn_error is not None or task.returncode not in (0, None)]


def prepare_reports_dir(reports_root, name: str, logger) -> Path:
    """Create ``reports_root/name`` and delete everything already inside it."""
    path = Path(reports_root) / name
    logger.info("Cleaning up reports directory %s...", path)
    path.mkdir(parents=True, exist_ok=True)
    for entry in path.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
    return path


def run_grid(
    cfg,
    logger,
    spawn: Callable[..., Any] | None = None,
    supervisor: ProcessSupervisor | None = None,
) -> RunResult:
    size = chunk_size(cfg.num_gpus, cfg.tasks_per_core)
    experiments = build_grid(cfg.steps, cfg.ks)
    total = len(experiments)
    waves = partition(experiments, size)

    logger.info("Total experiments to run: %d", total)
    logger.info("Batch chunk size: %d", size)
    logger.info("Number of batches: %d", len(waves))
    if not experiments:
        logger.info("Empty grid, nothing to launch.")
        return RunResult(status=COMPLETED, total=0, waves=0)

    supervisor = supervisor or ProcessSupervisor(logger)
    if cfg.dry_run:
        logger.info("Dry run: commands are logged, nothing is launched or deleted.")
    else:
        prepare_reports_dir(cfg.reports_root, cfg.reports_dir_name, logger)

    logger.info("Starting %s grid with dynamic batching...", cfg.reports_dir_name)
    dispatcher = TaskDispatcher(cfg, supervisor, logger, spawn=spawn)
    tasks: list[Task] = []
    launched = 0
    try:
        for wave_index, wave in enumerate(waves, start=1):
            if supervisor.cancelled:
                break
            supervisor.begin_wave()
            logger.info(
                "-- Starting batch %d (experiments %d to %d out of %d) --",
                wave_index,
                launched,
                launched + len(wave) - 1,
                total,
            )
            wave_tasks = dispatcher.dispatch(wave_index, wave, launched, total)
            tasks.extend(wave_tasks)
            launched += len(wave)

            if not cfg.dry_run:
                logger.info("Waiting for batch to complete (%d tasks)...", len(wave_tasks))
                _wait_for_wave(supervisor, wave_tasks, wave_index, cfg.poll_interval)
            if supervisor.cancelled:
                break
            logger.info("Batch complete.")
    except Exception:
        # Leave no child of the current wave running behind an unexpected error.
        supervisor.terminate_all()
        raise

    status = CANCELLED if supervisor.cancelled else COMPLETED
    result = RunResult(status=status, total=total, waves=len(waves), tasks=tasks)
    log_summary(result, logger)
    if status == CANCELLED:
        logger.warning("Grid cancelled after launching %d of %d experiments.", len(tasks), total)
    else:
        logger.info("All %d %s/%s experiments completed.", total, cfg.dataset_name, cfg.model)
        logger.info("Reports are in the %s/ directory.", Path(cfg.reports_root) / cfg.reports_dir_name)
    return result


def _wait_for_wave(supervisor: ProcessSupervisor, wave_tasks: list[Task], wave_index: int, poll_interval: float):
    running = [task for task in wave_tasks if task.process is not None]
    with tqdm(
        total=len(running),
        desc=f"Batch {wave_index}",
        unit="task",
        leave=False,
        disable=should_disable_tqdm(),
    ) as progress:
        codes = supervisor.wait_all(poll_interval, progress=progress)
    for task, code in zip(running, codes):
        task.returncode = code


def log_summary(result: RunResult, logger) -> None:
    if not result.tasks:
        logger.info("Summary: (no experiments launched)")
        return
    table = PrettyTable()
    table.field_names = ["#", "batch", "K", "step_size", "mode", "gpu", "status"]
    for task in result.tasks:
        table.add_row(
            [
                task.index,
                task.wave,
                task.config.k,
                task.config.step_size,
                task.mode,
                task.gpu,
                task.status,
            ]
        )
    logger.info("\nSummary:\n%s", table.get_string())
    if result.failed:
        logger.warning("%d experiment(s) exited with a non-zero status.", len(result.failed))


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", default=None, help="YAML launch config (default: packaged conf/default.yaml)")
    parser.add_argument("--dry-run", action="store_true", help="Log commands without executing them")
    parser.add_argument("--python", default=None, help="Python executable for the children (default: current interpreter)")
    parser.add_argument("--train-module", default=None, help="Training module passed to -m")
    parser.add_argument("--log-file", default=None, help="Also write DEBUG logs to this file")
    parser.add_argument(
        "overrides",
        nargs="*",
        metavar="KEY=VALUE",
        help="Config overrides applied on top of the YAML file (e.g. num_gpus=2 'ks=[1,2]')",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None, preset_overrides: Sequence[str] = ()) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logger = get_logger(args.log_file)

    try:
        cfg = load_config(
            args.config,
            [*preset_overrides, *args.overrides],
            dry_run=True if args.dry_run else None,
            python=args.python,
            train_module=args.train_module,
        )
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2

    supervisor = ProcessSupervisor(logger)
    with supervisor.install_signal_handlers():
        try:
            result = run_grid(cfg, logger, supervisor=supervisor)
        except ConfigurationError as exc:
            logger.error("%s", exc)
            return 2
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
