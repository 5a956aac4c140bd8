"""
Configuration management (SSOT).

This module defines ALL configuration for the cash clearing engine.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The pattern catalog lives in its own YAML file (catalog_path)
- Secrets (source token, LLM key) may come from the environment only
- Batch defaults mirror the CLI defaults of the batch processor
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class SourceConfig:
    """Transaction source configuration.

    kind:
    - sqlite: read unresolved rows from the local state database
    - http: page through a remote transactions API
    """

    kind: str = "sqlite"
    base_url: str | None = None
    token: str = ""
    timeout_seconds: int = 30
    max_retries: int = 3


@dataclass
class LLMConfig:
    """LLM matcher configuration.

    SSOT for LLM settings:
    - enabled: Master switch (default OFF, rule engine is used)
    - base_url: OpenAI-compatible endpoint or Ollama server
    - api_style: "openai" (/chat/completions) or "ollama" (/api/chat)
    - max_concurrent: Concurrency limiter shared by all batch workers
    """

    enabled: bool = False
    base_url: str = "http://localhost:11434"
    api_style: str = "ollama"
    model: str = "qwen2.5:7b-instruct-q4_K_M"
    # Optional auth header: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    timeout_seconds: int = 60
    max_retries: int = 2
    max_concurrent: int = 2
    temperature: float = 0.1


@dataclass
class BatchConfig:
    """Batch orchestration settings."""

    batch_size: int = 100
    concurrency: int = 3
    # Maximum transactions handled by a single run
    daily_limit: int = 50_000
    # Page-level retry for transient source/sink failures
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    output_dir: Path = field(default_factory=lambda: Path("results"))


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    source: SourceConfig = field(default_factory=SourceConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    catalog_path: Path = field(default_factory=lambda: Path("catalog.yaml"))
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.source.kind not in ("sqlite", "http"):
            errors.append(f"source.kind must be 'sqlite' or 'http', got '{self.source.kind}'")
        if self.source.kind == "http" and not self.source.base_url:
            errors.append("source.base_url is required when source.kind is 'http'")

        if self.llm.enabled:
            if not self.llm.base_url:
                errors.append("llm.base_url is required when LLM is enabled")
            if self.llm.api_style not in ("openai", "ollama"):
                errors.append("llm.api_style must be 'openai' or 'ollama'")

        if self.batch.batch_size < 1:
            errors.append("batch.batch_size must be >= 1")
        if self.batch.concurrency < 1:
            errors.append("batch.concurrency must be >= 1")
        if self.batch.daily_limit < 1:
            errors.append("batch.daily_limit must be >= 1")
        if self.batch.max_retries < 0:
            errors.append("batch.max_retries must be >= 0")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default  # Keep default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - CASH_CLEARING_SOURCE_URL
    - CASH_CLEARING_SOURCE_TOKEN
    - CASH_CLEARING_LLM_ENABLED (true/false)
    - LLM_BASE_URL
    - LLM_MODEL
    - LLM_API_KEY (sent as "Bearer <key>")
    - PATTERN_BATCH_SIZE
    - PATTERN_CONCURRENCY
    - PATTERN_MAX_DAILY_LIMIT
    - PATTERN_OUTPUT_DIR
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Source config
    source_data = data.get("source", {})
    source = SourceConfig(
        kind=source_data.get("kind", "sqlite"),
        base_url=os.environ.get("CASH_CLEARING_SOURCE_URL", source_data.get("base_url")),
        token=os.environ.get("CASH_CLEARING_SOURCE_TOKEN", source_data.get("token", "")),
        timeout_seconds=source_data.get("timeout_seconds", 30),
        max_retries=source_data.get("max_retries", 3),
    )

    # LLM config
    llm_data = data.get("llm", {})
    llm_enabled_env = os.environ.get("CASH_CLEARING_LLM_ENABLED", "").lower()
    llm_enabled = llm_data.get("enabled", False)
    if llm_enabled_env == "true":
        llm_enabled = True
    elif llm_enabled_env == "false":
        llm_enabled = False

    auth_header = llm_data.get("auth_header")
    api_key = os.environ.get("LLM_API_KEY")
    if api_key:
        auth_header = f"Bearer {api_key}"

    llm = LLMConfig(
        enabled=llm_enabled,
        base_url=os.environ.get("LLM_BASE_URL", llm_data.get("base_url", "http://localhost:11434")),
        api_style=llm_data.get("api_style", "ollama"),
        model=os.environ.get("LLM_MODEL", llm_data.get("model", "qwen2.5:7b-instruct-q4_K_M")),
        auth_header=auth_header,
        timeout_seconds=int(llm_data.get("timeout_seconds", 60)),
        max_retries=llm_data.get("max_retries", 2),
        max_concurrent=llm_data.get("max_concurrent", 2),
        temperature=llm_data.get("temperature", 0.1),
    )

    # Batch config
    batch_data = data.get("batch", {})
    batch = BatchConfig(
        batch_size=_env_int("PATTERN_BATCH_SIZE", batch_data.get("batch_size", 100)),
        concurrency=_env_int("PATTERN_CONCURRENCY", batch_data.get("concurrency", 3)),
        daily_limit=_env_int("PATTERN_MAX_DAILY_LIMIT", batch_data.get("daily_limit", 50_000)),
        max_retries=batch_data.get("max_retries", 3),
        retry_backoff_seconds=float(batch_data.get("retry_backoff_seconds", 1.0)),
        output_dir=Path(
            os.environ.get("PATTERN_OUTPUT_DIR", batch_data.get("output_dir", "results"))
        ),
    )

    return Config(
        source=source,
        llm=llm,
        batch=batch,
        catalog_path=Path(data.get("catalog_path", "catalog.yaml")),
        state_db_path=Path(data.get("state_db_path", "data/state.db")),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Cash Clearing Engine Configuration
#
# Transactions with pattern T_NOTFOUND are matched against the pattern
# catalog (catalog_path) and mapped to GL accounts.

# Where unresolved transactions come from
source:
  kind: "sqlite"                           # sqlite (local state db) or http
  base_url: null                           # Required for kind: http
  token: ""                                # Bearer token for kind: http
  timeout_seconds: 30
  max_retries: 3

# LLM-backed matcher (replaces the rule engine when enabled)
llm:
  enabled: false                           # Set to true (or pass --use-ai) to use the LLM
  base_url: "http://localhost:11434"       # Ollama or OpenAI-compatible endpoint
  api_style: "ollama"                      # ollama or openai
  model: "qwen2.5:7b-instruct-q4_K_M"
  auth_header: null                        # Optional, e.g. "Bearer <token>"
  timeout_seconds: 60
  max_retries: 2
  max_concurrent: 2                        # Max concurrent LLM requests
  temperature: 0.1

# Batch processing
batch:
  batch_size: 100                          # Transactions per page
  concurrency: 3                           # Pages processed in parallel
  daily_limit: 50000                       # Max transactions per run
  max_retries: 3                           # Retries for transient I/O per page
  retry_backoff_seconds: 1.0
  output_dir: "results"                    # CSV exports

# Pattern + GL catalog
catalog_path: "catalog.yaml"

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
