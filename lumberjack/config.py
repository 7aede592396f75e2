"""Configuration loading from defaults, optional YAML file, env vars and CLI args."""

import logging
import os
from dataclasses import dataclass, field, fields, replace

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "patterns")

EXECUTORS = ("thread", "process")
SINKS = ("sqlite", "json", "memory")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ENV_PREFIX = "LUMBERJACK_"
DEFAULT_JSON_OUTPUT = "parsed_logs"


def _default_workers() -> int:
    return os.cpu_count() or 1


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    catalog_dir: str = DEFAULT_CATALOG_DIR
    workers: int = field(default_factory=_default_workers)
    chunk_size: int = 2000       # lines per extraction task
    batch_size: int = 500        # lines per sink write
    scan_window: int = 100       # leading lines searched for a version header
    executor: str = "thread"     # "thread" or "process"
    sink: str = "sqlite"         # "sqlite", "json" or "memory"
    output: str = "lumberjack.sqlite"
    reduce_lines: bool = False
    report_path: str | None = None
    log_level: str = "INFO"


_INT_FIELDS = ("workers", "chunk_size", "batch_size", "scan_window")
_BOOL_FIELDS = ("reduce_lines",)


def _coerce(name: str, value):
    if value is None:
        return None
    if name in _INT_FIELDS:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be an integer, got {value!r}") from None
    if name in _BOOL_FIELDS:
        return _parse_bool(value)
    return str(value)


def validate(config: Config) -> Config:
    """Raise ValueError for values the pipeline cannot run with."""
    for name in _INT_FIELDS:
        if getattr(config, name) < 1:
            raise ValueError(f"{name} must be positive, got {getattr(config, name)}")
    if config.executor not in EXECUTORS:
        raise ValueError(f"executor must be one of {', '.join(EXECUTORS)}, got '{config.executor}'")
    if config.sink not in SINKS:
        raise ValueError(f"sink must be one of {', '.join(SINKS)}, got '{config.sink}'")
    if config.log_level.upper() not in LOG_LEVELS:
        raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got '{config.log_level}'")
    return config


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Config file %s not found, using defaults", path)
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def load_config(cli_overrides: dict | None = None, yaml_data: dict | None = None, env=None) -> Config:
    """Build Config: defaults < YAML < LUMBERJACK_* env vars < CLI overrides.

    ``cli_overrides`` holds only the options the user actually passed; None
    values are ignored.
    """
    env = os.environ if env is None else env
    known = {f.name for f in fields(Config)}
    values = {}

    for name, value in (yaml_data or {}).items():
        if name not in known:
            logger.warning("Ignoring unknown config key '%s'", name)
            continue
        values[name] = _coerce(name, value)

    for name in known:
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = _coerce(name, raw)

    for name, value in (cli_overrides or {}).items():
        if name in known and value is not None:
            values[name] = _coerce(name, value)

    config = replace(Config(), **{k: v for k, v in values.items() if v is not None or k == "report_path"})
    if "output" not in values and config.sink == "json":
        config = replace(config, output=DEFAULT_JSON_OUTPUT)
    return validate(config)
