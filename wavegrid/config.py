"""Launch configuration: YAML defaults, structured schema, dotlist overrides."""

import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

import yaml
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException

from .errors import ConfigurationError
from .utils import detect_gpus

CONF_DIR = Path(__file__).resolve().parent / "conf"
DEFAULT_CONFIG = CONF_DIR / "default.yaml"


@dataclass
class LaunchConfig:
    steps: List[float] = field(default_factory=lambda: [0.01, 0.001, 0.0001])
    ks: List[int] = field(default_factory=lambda: [1, 2])
    # int or "auto"
    num_gpus: Any = 8
    tasks_per_core: int = 1
    rounds: int = 3500
    batch_size: int = 256
    report_rate: int = 20
    communication_delay: int = 0
    model: str = "ResNet34-bi"
    dataset_name: str = "cifar100"
    reports_root: str = "reports"
    reports_dir_name: str = "ResNet34-bi-cifar100"
    python: Optional[str] = None
    train_module: str = "src.dol1"
    extra_args: List[str] = field(default_factory=list)
    task_log_dir: Optional[str] = None
    poll_interval: float = 0.5
    dry_run: bool = False


def load_config(path: Optional[Path] = None, overrides: Sequence[str] = (), **fields) -> DictConfig:
    """Merge schema defaults, the YAML file and ``key=value`` overrides.

    ``fields`` are set last, after the overrides; ``None`` values are skipped
    so unset command-line flags keep the configured value.
    """
    path = Path(path) if path is not None else DEFAULT_CONFIG
    schema = OmegaConf.structured(LaunchConfig)
    try:
        file_cfg = OmegaConf.load(path)
        cli_cfg = OmegaConf.from_dotlist(list(overrides))
        cfg = OmegaConf.merge(schema, file_cfg, cli_cfg)
        for key, value in fields.items():
            if value is not None:
                cfg[key] = value
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Malformed YAML in config or overrides: {exc}") from exc
    except OmegaConfBaseException as exc:
        raise ConfigurationError(f"Invalid launch config: {exc}") from exc
    return resolve_config(cfg)


def resolve_config(cfg: DictConfig) -> DictConfig:
    cfg.python = resolve_python(cfg.python)
    cfg.num_gpus = resolve_num_gpus(cfg.num_gpus)
    if cfg.tasks_per_core < 1:
        raise ConfigurationError(f"tasks_per_core must be at least 1, got {cfg.tasks_per_core}")
    if cfg.poll_interval <= 0:
        raise ConfigurationError(f"poll_interval must be positive, got {cfg.poll_interval}")
    bad_steps = [step for step in cfg.steps if step <= 0]
    if bad_steps:
        raise ConfigurationError(f"steps must be positive, got {bad_steps}")
    bad_ks = [k for k in cfg.ks if k < 1]
    if bad_ks:
        raise ConfigurationError(f"ks must be positive integers, got {bad_ks}")
    return cfg


def resolve_python(value: Optional[str]) -> str:
    if not value:
        return sys.executable
    found = shutil.which(value)
    if found is None:
        raise ConfigurationError(f"Python executable not found or not executable: {value}")
    return value


def resolve_num_gpus(value) -> int:
    if isinstance(value, str) and value.strip().lower() == "auto":
        count = detect_gpus()
        if count <= 0:
            raise ConfigurationError("num_gpus=auto but no CUDA device is visible")
        return count
    try:
        count = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"num_gpus must be an integer or 'auto', got {value!r}") from exc
    if count < 1:
        raise ConfigurationError(f"num_gpus must be at least 1, got {count}")
    return count
