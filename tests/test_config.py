"""Tests for configuration loading."""

from pathlib import Path

import pytest

from cash_clearing.config import Config, create_default_config, load_config
from cash_clearing.services import BatchOptions


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "CASH_CLEARING_SOURCE_URL",
        "CASH_CLEARING_SOURCE_TOKEN",
        "CASH_CLEARING_LLM_ENABLED",
        "LLM_BASE_URL",
        "LLM_MODEL",
        "LLM_API_KEY",
        "PATTERN_BATCH_SIZE",
        "PATTERN_CONCURRENCY",
        "PATTERN_MAX_DAILY_LIMIT",
        "PATTERN_OUTPUT_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.source.kind == "sqlite"
        assert config.llm.enabled is False
        assert config.batch.batch_size == 100
        assert config.batch.concurrency == 3
        assert config.batch.daily_limit == 50_000
        assert config.catalog_path == Path("catalog.yaml")
        assert config.validate() == []

    def test_default_config_file_round_trips(self, tmp_path):
        path = tmp_path / "config.yaml"
        create_default_config(path)

        config = load_config(path)

        assert config.batch.output_dir == Path("results")
        assert config.llm.api_style == "ollama"
        assert config.state_db_path == Path("data/state.db")
        assert config.validate() == []

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
source:
  kind: http
  base_url: https://recon.example.com/api
  token: abc
llm:
  enabled: true
  api_style: openai
batch:
  batch_size: 25
  concurrency: 4
  daily_limit: 1000
  retry_backoff_seconds: 0.5
catalog_path: /etc/cash/catalog.yaml
"""
        )

        config = load_config(path)

        assert config.source.kind == "http"
        assert config.source.token == "abc"
        assert config.llm.enabled is True
        assert config.llm.api_style == "openai"
        assert config.batch.batch_size == 25
        assert config.batch.retry_backoff_seconds == 0.5
        assert config.catalog_path == Path("/etc/cash/catalog.yaml")

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATTERN_BATCH_SIZE", "7")
        monkeypatch.setenv("PATTERN_CONCURRENCY", "2")
        monkeypatch.setenv("PATTERN_MAX_DAILY_LIMIT", "500")
        monkeypatch.setenv("PATTERN_OUTPUT_DIR", str(tmp_path / "out"))
        monkeypatch.setenv("CASH_CLEARING_LLM_ENABLED", "true")
        monkeypatch.setenv("LLM_MODEL", "gpt-test")
        monkeypatch.setenv("LLM_API_KEY", "sk-123")
        monkeypatch.setenv("CASH_CLEARING_SOURCE_TOKEN", "from-env")

        config = load_config(tmp_path / "missing.yaml")

        assert config.batch.batch_size == 7
        assert config.batch.concurrency == 2
        assert config.batch.daily_limit == 500
        assert config.batch.output_dir == tmp_path / "out"
        assert config.llm.enabled is True
        assert config.llm.model == "gpt-test"
        assert config.llm.auth_header == "Bearer sk-123"
        assert config.source.token == "from-env"

    def test_invalid_env_int_keeps_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATTERN_BATCH_SIZE", "lots")
        assert load_config(tmp_path / "missing.yaml").batch.batch_size == 100


class TestValidate:
    """Tests for Config.validate."""

    def test_http_source_needs_url(self):
        config = Config()
        config.source.kind = "http"
        assert "source.base_url is required when source.kind is 'http'" in config.validate()

    def test_unknown_source_kind(self):
        config = Config()
        config.source.kind = "ftp"
        assert any("source.kind" in e for e in config.validate())

    def test_llm_api_style_checked_when_enabled(self):
        config = Config()
        config.llm.api_style = "grpc"
        assert config.validate() == []

        config.llm.enabled = True
        assert "llm.api_style must be 'openai' or 'ollama'" in config.validate()

    def test_batch_bounds(self):
        config = Config()
        config.batch.batch_size = 0
        config.batch.concurrency = 0
        errors = config.validate()
        assert "batch.batch_size must be >= 1" in errors
        assert "batch.concurrency must be >= 1" in errors


class TestBatchOptionsFromConfig:
    """CLI flags override the batch section."""

    def test_overrides_ignore_none(self):
        config = Config()
        options = BatchOptions.from_config(config.batch, batch_size=10, concurrency=None, dry_run=True)

        assert options.batch_size == 10
        assert options.concurrency == 3
        assert options.dry_run is True
        assert options.daily_limit == 50_000
