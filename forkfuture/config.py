"""TOML-based pool and logging configuration.

Loads ~/.forkfuture/defaults.toml (global) and forkfuture.toml (project),
merges them, and builds a ForkPool from the ``[pool]`` and ``[logging]``
sections:

    [pool]
    max_tasks = 4
    compress = true

    [logging]
    level = "DEBUG"
    file = "forkfuture.log"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from forkfuture.constants import GLOBAL_CONFIG_PATH, PROJECT_CONFIG_NAME
from forkfuture.exceptions import ConfigurationError
from forkfuture.logging import LogConfig

if TYPE_CHECKING:
    from forkfuture.pool import ForkPool

type RawConfig = dict[str, Any]


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """Settings for a ForkPool.

    Attributes:
        max_tasks: Concurrency ceiling. None means the number of CPUs;
            zero or negative means no limit.
        compress: Whether results are zlib-compressed on the wire.
    """

    max_tasks: int | None = None
    compress: bool = True


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("pool", {})
    merged.setdefault("logging", {})
    return merged


def _check_keys(section: str, raw: RawConfig, allowed: tuple[str, ...]) -> None:
    unknown = sorted(set(raw) - set(allowed))
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(unknown)}. "
            f"Valid: {', '.join(allowed)}"
        )


def pool_config(raw: RawConfig) -> PoolConfig:
    section = raw.get("pool", {})
    _check_keys("pool", section, tuple(f.name for f in fields(PoolConfig)))

    max_tasks = section.get("max_tasks")
    # bool is an int subclass; `max_tasks = true` is a mistake, not 1.
    if max_tasks is not None and (not isinstance(max_tasks, int) or isinstance(max_tasks, bool)):
        raise ConfigurationError(f"pool.max_tasks must be an integer, got {max_tasks!r}")

    compress = section.get("compress", True)
    if not isinstance(compress, bool):
        raise ConfigurationError(f"pool.compress must be a boolean, got {compress!r}")

    return PoolConfig(max_tasks=max_tasks, compress=compress)


def log_config(raw: RawConfig) -> LogConfig | None:
    """Build a LogConfig from the ``[logging]`` section, or None if it is empty."""
    section = raw.get("logging", {})
    if not section:
        return None
    _check_keys("logging", section, tuple(f.name for f in fields(LogConfig)))
    return LogConfig(**{**section, "level": str(section.get("level", "INFO")).upper()})


def resolve_pool(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ForkPool:
    """Build a ForkPool from the merged ``[pool]`` and ``[logging]`` sections.

    Logging, when configured, is switched on while the pool is used as a
    context manager.
    """
    from forkfuture.pool import ForkPool

    raw = load_config(project_dir=project_dir, global_path=global_path)
    config = pool_config(raw)
    return ForkPool(
        max_tasks=config.max_tasks,
        compress=config.compress,
        logging=log_config(raw) or False,
    )
