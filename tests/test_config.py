import pytest
from pathlib import Path
from pydantic import ValidationError

from docqueue.config import DocQueueConfig, get_config_value, load_yaml, merge_dicts, resolve_config


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, DocQueueConfig)
    assert config.store.job_ttl_s == 7 * 24 * 60 * 60
    assert config.store.processing_ttl_s == 30 * 60
    assert config.worker.max_concurrent_workers == 3
    assert config.worker.max_retries == 3
    assert config.worker.shutdown_grace_s == 60
    assert config.cache.namespace == "pdfs"


def test_cli_override_db():
    """Test CLI args override YAML defaults."""
    config = resolve_config({"db": "/tmp/other.db"})
    assert config.store.path == "/tmp/other.db"


def test_cli_override_workers():
    config = resolve_config({"workers": 5})
    assert config.worker.max_concurrent_workers == 5


def test_workers_upper_bound():
    """Test the pool size is capped at five slots."""
    with pytest.raises(ValidationError):
        resolve_config({"workers": 6})


def test_multiple_cli_overrides():
    """Test multiple CLI overrides work together."""
    config = resolve_config({
        "max_retries": 5,
        "artifacts": "out",
        "log_level": "DEBUG",
    })
    assert config.worker.max_retries == 5
    assert config.cache.local_root == "out"
    assert config.log_level == "DEBUG"


def test_unrelated_cli_args_ignored():
    config = resolve_config({"command": "stats", "job_id": "abc"})
    assert isinstance(config, DocQueueConfig)


def test_explicit_config_file(tmp_path):
    """Test an extra YAML file is layered over the defaults."""
    path = tmp_path / "custom.yaml"
    path.write_text("worker:\n  poll_interval_s: 0.25\ncache:\n  backend: s3\n  s3_bucket: docs\n")

    config = resolve_config(config_path=path)
    assert config.worker.poll_interval_s == 0.25
    assert config.worker.max_retries == 3
    assert config.cache.backend == "s3"
    assert config.cache.s3_bucket == "docs"


def test_cli_wins_over_config_file(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text("worker:\n  max_concurrent_workers: 2\n")

    config = resolve_config({"workers": 4}, config_path=path)
    assert config.worker.max_concurrent_workers == 4


def test_defaults_without_yaml(tmp_path, monkeypatch):
    """Test model defaults apply when no config directory exists."""
    monkeypatch.chdir(tmp_path)
    config = resolve_config()
    assert config.worker.reclaim_interval_s == 3600
    assert config.auto_start is True


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_merge_dicts_is_recursive():
    base = {"worker": {"max_retries": 3, "poll_interval_s": 1.0}}
    merged = merge_dicts(base, {"worker": {"max_retries": 5}})
    assert merged == {"worker": {"max_retries": 5, "poll_interval_s": 1.0}}
    assert base["worker"]["max_retries"] == 3


def test_get_config_value_with_pydantic():
    """Test get_config_value helper with Pydantic model."""
    config = resolve_config()
    value = get_config_value(config, "worker.max_retries")
    assert value == 3


def test_get_config_value_with_dict():
    """Test get_config_value helper with dict."""
    config_dict = {"worker": {"max_retries": 7}}
    value = get_config_value(config_dict, "worker.max_retries")
    assert value == 7


def test_get_config_value_missing_returns_default():
    """Test get_config_value returns default for missing keys."""
    config_dict = {"worker": {}}
    value = get_config_value(config_dict, "worker.nonexistent", default="default_val")
    assert value == "default_val"
