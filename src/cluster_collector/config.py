"""Config file loading and auto-discovery for cluster-collector.

``cluster-collector.yaml`` is looked up in the working directory and then in
each parent.  Path-valued keys (``catalog``, ``store``, ``kubeconfig``) are
relative to the directory holding the config file.

Example::

    backend: local
    catalog: fleet/targets.yaml
    store: state/requests.json
    workers: 10
    resync_seconds: 300
    log_level: INFO
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from cluster_collector.collector.dispatcher import DEFAULT_WORKERS
from cluster_collector.controller.manager import DEFAULT_MAX_CONCURRENT_RECONCILES

CONFIG_FILENAME = "cluster-collector.yaml"
BACKENDS = ("local", "kubernetes")
DEFAULT_RESYNC_SECONDS = 300
_PATH_KEYS = ("catalog", "store", "kubeconfig")


class ConfigError(Exception):
    """Raised when the config file has invalid values."""


@dataclass(frozen=True)
class CollectorConfig:
    """Parsed cluster-collector configuration."""

    config_path: Path | None = None
    backend: str = "local"
    catalog: str | None = None
    store: str | None = None
    workers: int = DEFAULT_WORKERS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    resync_seconds: int = DEFAULT_RESYNC_SECONDS
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    log_level: str = "INFO"


def find_config(start: Path | None = None) -> Path | None:
    """Return the nearest ``cluster-collector.yaml`` at or above *start*."""
    origin = (start or Path.cwd()).resolve()
    for directory in (origin, *origin.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> CollectorConfig:
    """Load a cluster-collector config file.

    An explicit *path* must exist.  Without one, the file is discovered
    with :func:`find_config` (unless *auto_discover* is False); when
    nothing is found every setting keeps its default.

    Raises:
        FileNotFoundError: If an explicit *path* does not exist.
        ValueError: If the file is not a YAML mapping.
        ConfigError: If a value is invalid.
    """
    if path is None:
        found = find_config() if auto_discover else None
        return _parse_config(found) if found is not None else CollectorConfig()

    explicit = Path(path).resolve()
    if not explicit.is_file():
        raise FileNotFoundError(f"Config file not found: {explicit}")
    return _parse_config(explicit)


def _positive_int(data: dict[str, Any], key: str, default: int) -> int:
    val = data.get(key, default)
    if isinstance(val, bool) or not isinstance(val, int) or val < 1:
        raise ConfigError(f"'{key}' must be a positive integer, got {val!r}")
    return val


def _parse_config(config_path: Path) -> CollectorConfig:
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        )

    paths = {
        key: str((config_path.parent / data[key]).resolve())
        for key in _PATH_KEYS
        if data.get(key) is not None
    }

    backend = data.get("backend", "local")
    if backend not in BACKENDS:
        raise ConfigError(f"'backend' must be one of {', '.join(BACKENDS)}, got {backend!r}")

    log_level = str(data.get("log_level", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"Unknown log_level: {log_level!r}")

    return CollectorConfig(
        config_path=config_path,
        backend=backend,
        catalog=paths.get("catalog"),
        store=paths.get("store"),
        workers=_positive_int(data, "workers", DEFAULT_WORKERS),
        max_concurrent_reconciles=_positive_int(
            data, "max_concurrent_reconciles", DEFAULT_MAX_CONCURRENT_RECONCILES,
        ),
        resync_seconds=_positive_int(data, "resync_seconds", DEFAULT_RESYNC_SECONDS),
        kubeconfig=paths.get("kubeconfig"),
        context=data.get("context"),
        in_cluster=bool(data.get("in_cluster", False)),
        log_level=log_level,
    )
