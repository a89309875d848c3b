"""Turns one wave of grid points into launched training processes."""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from .grid import ExperimentConfig
from .supervisor import ProcessSupervisor
from .waves import gpu_for_position


@dataclass
class Task:
    index: int
    total: int
    wave: int
    position: int
    config: ExperimentConfig
    gpu: int
    command: list[str] = field(default_factory=list)
    process: Any = None
    returncode: int | None = None
    spawn_error: str | None = None

    @property
    def mode(self) -> str:
        return self.config.mode

    @property
    def status(self) -> str:
        if self.spawn_error is not None:
            return "SPAWN FAILED"
        if self.returncode is None:
            return "RUNNING"
        return "OK" if self.returncode == 0 else f"FAIL({self.returncode})"


def build_command(cfg, experiment: ExperimentConfig, gpu: int) -> list[str]:
    cmd = [
        cfg.python,
        "-m",
        cfg.train_module,
        "--model",
        cfg.model,
        "--dataset_name",
        cfg.dataset_name,
        "--training_mode",
        experiment.mode,
        "--step_size",
        str(experiment.step_size),
        "--batch_size",
        str(cfg.batch_size),
        "--rounds",
        str(cfg.rounds),
        "--K",
        str(experiment.k),
        "--cuda_core",
        str(gpu),
        "--communication_delay",
        str(cfg.communication_delay),
        "--report_sampling_rate",
        str(cfg.report_rate),
        "--reports_dir",
        cfg.reports_dir_name,
    ]
    cmd.extend(str(arg) for arg in cfg.extra_args)
    return cmd


class TaskDispatcher:
    def __init__(
        self,
        cfg,
        supervisor: ProcessSupervisor,
        logger,
        spawn: Callable[..., Any] | None = None,
    ):
        self.cfg = cfg
        self.supervisor = supervisor
        self.logger = logger
        self.spawn = spawn or subprocess.Popen

    def dispatch(
        self, wave_index: int, wave: Sequence[ExperimentConfig], start_index: int, total: int
    ) -> list[Task]:
        """Launch every experiment of ``wave`` without waiting for any of them.

        ``start_index`` is the number of experiments dispatched by earlier
        waves; it only feeds the ``[n/total]`` progress counter.
        """
        tasks = []
        for position, experiment in enumerate(wave):
            if self.supervisor.cancelled:
                self.logger.info("Cancellation requested; %d task(s) of this batch not launched.", len(wave) - position)
                break
            gpu = gpu_for_position(position, self.cfg.tasks_per_core, self.cfg.num_gpus)
            task = Task(
                index=start_index + position + 1,
                total=total,
                wave=wave_index,
                position=position,
                config=experiment,
                gpu=gpu,
                command=build_command(self.cfg, experiment, gpu),
            )
            self.logger.info(
                "[%d/%d] Launching %s on GPU %d (Task index in batch: %d)",
                task.index,
                total,
                experiment.label,
                gpu,
                position,
            )
            self.logger.debug("Command: %s", shlex.join(task.command))
            if self.cfg.dry_run:
                task.returncode = 0
            else:
                try:
                    task.process = self._launch(task)
                except OSError as exc:
                    task.spawn_error = str(exc)
                    self.logger.error("[%d/%d] Could not launch %s: %s", task.index, total, experiment.label, exc)
                    tasks.append(task)
                    continue
                self.supervisor.register(task.process)
                if self.supervisor.cancelled:
                    # Signal landed between spawn and register.
                    self.supervisor.terminate_all()
            tasks.append(task)
        return tasks

    def task_log_path(self, task: Task) -> Path:
        name = f"{task.wave}_{task.position}_K{task.config.k}_step{task.config.step_size}.log"
        return Path(self.cfg.task_log_dir) / name

    def _launch(self, task: Task):
        if not self.cfg.task_log_dir:
            return self.spawn(task.command)
        log_path = self.task_log_path(task)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("w") as handle:
            return self.spawn(task.command, stdout=handle, stderr=subprocess.STDOUT)
