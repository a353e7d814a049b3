import logging
import sys
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

DAY_S = 24 * 60 * 60


class StoreConfig(BaseModel):
    """Shared key-value store and job record settings."""

    path: str = Field(default="docqueue.db", description="SQLite database shared by all processes")
    key_prefix: str = Field(default="docqueue", description="Namespace for every store key")
    job_ttl_s: int = Field(default=7 * DAY_S, gt=0, description="Job record retention")
    processing_ttl_s: int = Field(
        default=30 * 60, gt=0, description="Expiry of the processing marker"
    )
    reclaim_after_s: int = Field(
        default=30 * 60, gt=0, description="Processing jobs started longer ago are reclaimed"
    )
    busy_timeout_s: float = Field(default=5.0, gt=0.0, description="SQLite lock wait")


class WorkerConfig(BaseModel):
    """Worker pool scheduling parameters."""

    max_concurrent_workers: int = Field(
        default=3, ge=1, le=5, description="Concurrent execution slots"
    )
    max_retries: int = Field(default=3, ge=1, description="Attempts before a job fails terminally")
    processing_timeout_s: float = Field(
        default=30 * 60, gt=0.0, description="Hard limit for a single render call"
    )
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Scheduler tick")
    shutdown_grace_s: float = Field(
        default=60.0, ge=0.0, description="Wait for active workers on stop"
    )
    reclaim_interval_s: Optional[float] = Field(
        default=60 * 60, gt=0.0, description="Periodic stuck-job scan (None = start-up only)"
    )


class CacheConfig(BaseModel):
    """Artifact storage used for deduplication."""

    backend: Literal["local", "s3"] = Field(default="local", description="Object store backend")
    namespace: str = Field(default="pdfs", description="Top-level folder for artifacts")
    extension: str = Field(default="pdf", description="Artifact file extension")
    content_type: str = Field(default="application/pdf", description="Artifact MIME type")
    local_root: str = Field(default="artifacts", description="Directory for the local backend")
    public_base_url: Optional[str] = Field(
        default=None, description="Base URL (e.g. CDN) prepended to artifact keys"
    )
    s3_bucket: Optional[str] = Field(default=None, description="Bucket for the s3 backend")
    s3_region: Optional[str] = Field(default=None, description="AWS region")
    s3_endpoint_url: Optional[str] = Field(
        default=None, description="Custom endpoint (MinIO, localstack)"
    )


class DocQueueConfig(BaseModel):
    """Complete application configuration with validation."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    auto_start: bool = Field(default=True, description="Start the pool on first queued job")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @classmethod
    def from_dict(cls, data: dict) -> "DocQueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "DocQueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["store"]["path"] = cli_args["db"]
        if cli_args.get("workers") is not None:
            config_dict["worker"]["max_concurrent_workers"] = cli_args["workers"]
        if cli_args.get("max_retries") is not None:
            config_dict["worker"]["max_retries"] = cli_args["max_retries"]
        if cli_args.get("artifacts") is not None:
            config_dict["cache"]["local_root"] = cli_args["artifacts"]
        if cli_args.get("log_level") is not None:
            config_dict["log_level"] = cli_args["log_level"]

        return DocQueueConfig.from_dict(config_dict)


def get_config_value(config: Union[DocQueueConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: DocQueueConfig model or dict
        path: Dot-separated path like "worker.max_retries"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, DocQueueConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[Path] = None,
) -> DocQueueConfig:
    """
    Resolve config: Default < Local < explicit file < CLI
    Returns validated Pydantic DocQueueConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    if config_path is not None:
        config_data = merge_dicts(config_data, load_yaml(Path(config_path)))

    config = DocQueueConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)


def setup_logging(level: str = "INFO") -> None:
    """Configure standard library logging for command-line use."""
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )
