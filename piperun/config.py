import os
from dataclasses import dataclass, field

import yaml

from piperun.errors import ConfigurationError

CONFIG_FILENAME = ".piperun.yml"

EXECUTORS = ("local", "docker")
MODES = ("sequential", "concurrent")

IMAGE_MAP = {
    "ubuntu-latest": "ubuntu:22.04",
    "ubuntu-24.04": "ubuntu:24.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "ubuntu-20.04": "ubuntu:20.04",
}

ENV_VARS = {
    "PIPERUN_EXECUTOR": "executor",
    "PIPERUN_MODE": "mode",
    "PIPERUN_MAX_WORKERS": "max_workers",
    "PIPERUN_STEP_TIMEOUT": "step_timeout",
}


@dataclass
class RunnerConfig:
    executor: str = "local"
    mode: str = "concurrent"
    max_workers: int | None = None
    step_timeout: float | None = None
    workdir: str = "."
    skip_unknown_actions: bool = True
    actions: dict = field(default_factory=dict)
    images: dict = field(default_factory=lambda: dict(IMAGE_MAP))

    def validate(self) -> "RunnerConfig":
        if self.executor not in EXECUTORS:
            raise ConfigurationError(f"executor must be one of {', '.join(EXECUTORS)}, got '{self.executor}'")
        if self.mode not in MODES:
            raise ConfigurationError(f"mode must be one of {', '.join(MODES)}, got '{self.mode}'")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ConfigurationError("step_timeout must be positive")
        return self


def load_config(
    path: str | None = None,
    workdir: str = ".",
    environ: dict | None = None,
    overrides: dict | None = None,
) -> RunnerConfig:
    """Build the runner config: defaults < config file < environment < overrides."""
    environ = os.environ if environ is None else environ
    values = {"workdir": workdir}

    if path is None:
        candidate = os.path.join(workdir, CONFIG_FILENAME)
        if os.path.isfile(candidate):
            path = candidate
    if path is not None:
        values.update(_read_file(path))

    for var, key in ENV_VARS.items():
        if environ.get(var):
            values[key] = environ[var]

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    return _build(values).validate()


def _read_file(path: str) -> dict:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e.strerror}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path}: expected a mapping")

    values = {}
    for key, value in raw.items():
        attr = str(key).replace("-", "_")
        if attr not in RunnerConfig.__dataclass_fields__ or attr == "workdir":
            raise ConfigurationError(f"Config file {path}: unknown setting '{key}'")
        values[attr] = value
    return values


def _build(values: dict) -> RunnerConfig:
    config = RunnerConfig()
    for key, value in values.items():
        if key in ("max_workers",):
            value = _number(key, value, int)
        elif key == "step_timeout":
            value = _number(key, value, float)
        elif key == "skip_unknown_actions":
            value = _flag(key, value)
        elif key in ("actions", "images"):
            if not isinstance(value, dict):
                raise ConfigurationError(f"'{key}' must be a mapping")
            value = {str(k): str(v) for k, v in value.items()}
            if key == "images":
                value = {**IMAGE_MAP, **value}
        else:
            value = str(value)
        setattr(config, key, value)
    return config


def _number(key: str, value, kind):
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"'{key}' must be a number, got '{value}'") from None


def _flag(key: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"'{key}' must be true or false, got '{value}'")
