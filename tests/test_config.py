"""Tests for config file loading and auto-discovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from cluster_collector.config import (
    CONFIG_FILENAME,
    DEFAULT_RESYNC_SECONDS,
    CollectorConfig,
    ConfigError,
    find_config,
    load_config,
)


def _write(directory: Path, text: str) -> Path:
    path = directory / CONFIG_FILENAME
    path.write_text(text, encoding="utf-8")
    return path


class TestFindConfig:
    def test_finds_in_start_dir(self, tmp_path: Path):
        path = _write(tmp_path, "backend: local\n")
        assert find_config(tmp_path) == path.resolve()

    def test_finds_in_parent(self, tmp_path: Path):
        path = _write(tmp_path, "backend: local\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config(nested) == path.resolve()

    def test_discovery_disabled(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        assert load_config(auto_discover=False) == CollectorConfig()


class TestLoadConfig:
    def test_defaults(self, tmp_path: Path):
        cfg = load_config(_write(tmp_path, ""))
        assert cfg.backend == "local"
        assert cfg.workers == 10
        assert cfg.max_concurrent_reconciles == 1
        assert cfg.resync_seconds == DEFAULT_RESYNC_SECONDS
        assert cfg.log_level == "INFO"
        assert cfg.catalog is None

    def test_full(self, tmp_path: Path):
        cfg = load_config(_write(tmp_path, (
            "backend: kubernetes\n"
            "catalog: fleet/targets.yaml\n"
            "store: state/requests.json\n"
            "workers: 4\n"
            "max_concurrent_reconciles: 2\n"
            "resync_seconds: 60\n"
            "kubeconfig: kube/config\n"
            "context: mgmt\n"
            "in_cluster: true\n"
            "log_level: debug\n"
        )))
        assert cfg.backend == "kubernetes"
        assert cfg.catalog == str((tmp_path / "fleet" / "targets.yaml").resolve())
        assert cfg.store == str((tmp_path / "state" / "requests.json").resolve())
        assert cfg.kubeconfig == str((tmp_path / "kube" / "config").resolve())
        assert cfg.workers == 4
        assert cfg.max_concurrent_reconciles == 2
        assert cfg.resync_seconds == 60
        assert cfg.context == "mgmt"
        assert cfg.in_cluster is True
        assert cfg.log_level == "DEBUG"

    def test_explicit_missing_path(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_not_a_mapping(self, tmp_path: Path):
        with pytest.raises(ValueError, match="YAML mapping"):
            load_config(_write(tmp_path, "- a\n- b\n"))

    def test_unknown_backend(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="backend"):
            load_config(_write(tmp_path, "backend: etcd\n"))

    @pytest.mark.parametrize("value", ["0", "-3", "two", "true"])
    def test_invalid_workers(self, tmp_path: Path, value: str):
        with pytest.raises(ConfigError, match="workers"):
            load_config(_write(tmp_path, f"workers: {value}\n"))

    def test_unknown_log_level(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="log_level"):
            load_config(_write(tmp_path, "log_level: chatty\n"))

    def test_auto_discover(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        _write(tmp_path, "workers: 3\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().workers == 3
