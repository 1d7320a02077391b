"""
Configuration management for the crawl engine.

Uses pydantic-settings to load configuration from environment variables
and YAML files with proper validation.
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TRACKING_PARAMS = [
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "fbclid",
    "gclid",
    "ref",
    "ref_src",
    "mc_cid",
    "mc_eid",
]


class EngineSettings(BaseSettings):
    """
    Main settings class that loads configuration from environment variables
    and configuration files.
    """

    model_config = SettingsConfigDict(
        env_prefix="CRAWL_ENGINE_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Environment
    environment: str = Field("dev", description="Environment name (dev/devlocal/staging/prod)")
    worker_id: Optional[str] = Field(None, description="Unique dispatcher instance ID")

    # Persistence
    store_backend: str = Field("local", description="Job/queue store backend (local/dynamodb)")
    state_dir: Optional[Path] = Field(None, description="Directory for local JSON stores (None keeps state in memory)")
    aws_region: str = Field("ap-northeast-1")
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    localstack_endpoint: Optional[str] = Field(None, description="LocalStack endpoint for local development")
    jobs_table: str = Field("crawl-jobs")
    queue_table: str = Field("crawl-queue-items")

    # Artifact storage
    artifact_bucket: Optional[str] = Field(None, description="S3 bucket for downloaded artifacts")
    artifact_dir: Path = Field(Path(".crawl_artifacts"))

    # Progress delivery
    redis_url: Optional[str] = Field(None, description="Redis URL for progress pub/sub (None to disable)")
    progress_channel_prefix: str = Field("crawl:progress")
    progress_queue_size: int = Field(1000, ge=1)
    progress_history_size: int = Field(50, ge=0)
    progress_history_jobs: int = Field(1000, ge=0)

    # Retry policy
    max_retries: int = Field(3, ge=0, le=10)
    base_backoff_seconds: float = Field(5.0, gt=0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(300.0, gt=0)
    timeout_backoff_factor: float = Field(1.5, ge=1.0)
    max_timeout_seconds: float = Field(300.0, gt=0)

    # Dispatch
    batch_size: int = Field(10, ge=1, le=100)
    poll_interval_seconds: float = Field(5.0, gt=0)
    lease_timeout_seconds: int = Field(300, ge=1)
    lease_renew_interval_seconds: int = Field(60, ge=1)
    max_workers: int = Field(10, ge=1, le=200)
    per_admin_limit: int = Field(5, ge=1)
    per_server_limit: int = Field(25, ge=1)
    ceiling_mode: str = Field("persisted", description="persisted (count live queue state) or in_process")

    # Duplicate detection
    check_content_hash: bool = Field(False, description="Enable the expensive content-digest duplicate check")
    mirror_groups: List[List[str]] = Field(default_factory=list)
    tracking_params: List[str] = Field(default_factory=lambda: list(DEFAULT_TRACKING_PARAMS))

    # Retention
    retention_days: int = Field(30, ge=0)
    cleanup_storage: bool = Field(True)

    # HTTP
    request_timeout: int = Field(30, ge=1, le=300)
    user_agent: str = Field("CrawlEngine/1.0")
    max_content_length: int = Field(50 * 1024 * 1024, ge=1024)  # 50MB

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    json_logs: bool = Field(True, description="Whether to output JSON format logs")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        valid_envs = ["dev", "devlocal", "staging", "prod", "test"]
        if v not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        if v not in ("local", "dynamodb"):
            raise ValueError(f"Invalid store backend: {v}. Must be 'local' or 'dynamodb'")
        return v

    @field_validator("ceiling_mode")
    @classmethod
    def validate_ceiling_mode(cls, v: str) -> str:
        if v not in ("persisted", "in_process"):
            raise ValueError(f"Invalid ceiling mode: {v}. Must be 'persisted' or 'in_process'")
        return v

    @field_validator("mirror_groups", mode="before")
    @classmethod
    def validate_mirror_groups(cls, v: Union[str, list, None]) -> List[List[str]]:
        """Parse mirror domain groups from JSON string or return list"""
        if v is None or v == "":
            return []
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON string for mirror_groups: {e}")
        if not isinstance(v, list) or not all(isinstance(group, list) for group in v):
            raise ValueError("mirror_groups must be a list of domain lists")
        return [[str(domain).lower() for domain in group] for group in v]

    @field_validator("tracking_params", mode="before")
    @classmethod
    def validate_tracking_params(cls, v: Union[str, list, None]) -> List[str]:
        if v is None:
            return list(DEFAULT_TRACKING_PARAMS)
        if isinstance(v, str):
            return [param.strip().lower() for param in v.split(",") if param.strip()]
        return [str(param).lower() for param in v]

    @model_validator(mode="after")
    def validate_limits(self) -> "EngineSettings":
        """Validate cross-field constraints"""
        if self.per_admin_limit > self.per_server_limit:
            raise ValueError("per_admin_limit cannot exceed per_server_limit")
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= base_backoff_seconds")
        if self.lease_renew_interval_seconds >= self.lease_timeout_seconds:
            raise ValueError("lease_renew_interval_seconds must be shorter than lease_timeout_seconds")
        if self.environment == "devlocal" and self.store_backend == "dynamodb" and not self.localstack_endpoint:
            raise ValueError("localstack_endpoint is required for devlocal environment")
        return self


def _expand_env_variables(obj: Any) -> Any:
    """Recursively expand environment variables in configuration values."""
    if isinstance(obj, str):
        # Match ${VAR_NAME} or ${VAR_NAME:default_value} patterns
        def replace_env_var(match):
            var_with_default = match.group(1)
            if ":" in var_with_default:
                var_name, default_value = var_with_default.split(":", 1)
                return os.getenv(var_name, default_value)
            return os.getenv(var_with_default, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, obj)
    elif isinstance(obj, dict):
        return {key: _expand_env_variables(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_variables(item) for item in obj]
    return obj


def load_config_from_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML file with environment variable expansion.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML file is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
        return _expand_env_variables(config)


def get_config_file_path(environment: str) -> Path:
    """Get the path to the configuration file for the given environment."""
    return Path(__file__).parent / f"{environment}.yaml"


def load_settings(
    environment: Optional[str] = None, config_file: Optional[Path] = None, **overrides: Any
) -> EngineSettings:
    """
    Load engine settings from environment variables and configuration files.

    Args:
        environment: Environment name. If None, read from CRAWL_ENGINE_ENVIRONMENT
        config_file: Path to configuration file. If None, use the per-environment default
        **overrides: Additional configuration overrides

    Returns:
        Configured EngineSettings instance
    """
    if environment is None:
        environment = os.getenv("CRAWL_ENGINE_ENVIRONMENT", "dev")

    config_data: Dict[str, Any] = {}

    if config_file:
        config_data = load_config_from_yaml(config_file)
    else:
        default_config_file = get_config_file_path(environment)
        if default_config_file.exists():
            config_data = load_config_from_yaml(default_config_file)

    config_data["environment"] = environment
    config_data.update({key: value for key, value in overrides.items() if value is not None})

    return EngineSettings(**config_data)


# Global settings instance (lazy-loaded)
_settings: Optional[EngineSettings] = None


def get_cached_settings() -> EngineSettings:
    """Get cached settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings_cache() -> None:
    """Reset the cached settings instance (useful for testing)"""
    global _settings
    _settings = None
