"""Tests for the configuration loader."""

import json
from pathlib import Path

import pytest

from mystara_gateway.config import (
    ConfigurationError,
    GatewayConfig,
    load_config,
    load_config_or_default,
)


def test_load_config_success(test_config_path: str) -> None:
    """Loading a valid config file returns a populated GatewayConfig."""
    config = load_config(test_config_path)

    assert config.upstream.base_url == "https://upstream.example.com/v1beta"
    assert config.upstream.model == "gemini-test"
    assert config.upstream.max_output_tokens == 256
    assert config.upstream.temperature == 0.9
    assert config.quota.standard_limit == 3
    assert config.quota.elevated_limit == 6
    assert config.quota.max_tracked_callers == 10000
    assert config.streaming.chunk_size_chars == 10
    assert config.response_mode == "buffered"
    assert not config.is_streaming


def test_defaults() -> None:
    """Defaults match the documented tiers and streaming parameters."""
    config = GatewayConfig()
    assert config.quota.standard_limit == 10
    assert config.quota.elevated_limit == 100
    assert config.quota.window_seconds == 60.0
    assert config.quota.refund_on_upstream_failure is False
    assert config.streaming.chunk_size_chars == 20
    assert config.max_message_chars == 2000


def test_load_config_missing_file() -> None:
    """Loading from a nonexistent path raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_config("/tmp/nonexistent_config.json")


def test_load_config_or_default_missing_file() -> None:
    config = load_config_or_default("/tmp/nonexistent_config.json")
    assert config == GatewayConfig()


def test_invalid_response_mode(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"response_mode": "carrier-pigeon"}))
    with pytest.raises(ValueError, match="response_mode"):
        load_config(path)


def test_invalid_chunk_size(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"streaming": {"chunk_size_chars": 0}}))
    with pytest.raises(ValueError, match="chunk_size_chars"):
        load_config(path)


def test_api_key_from_env(
    test_config: GatewayConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The upstream API key resolves from the configured environment variable."""
    monkeypatch.setenv("TEST_GEMINI_KEY", "secret-123")
    assert test_config.upstream.api_key == "secret-123"
    assert test_config.upstream.require_api_key() == "secret-123"


def test_api_key_missing(
    test_config: GatewayConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A missing key resolves to None and require_api_key raises."""
    monkeypatch.delenv("TEST_GEMINI_KEY", raising=False)
    assert test_config.upstream.api_key is None
    with pytest.raises(ConfigurationError, match="TEST_GEMINI_KEY"):
        test_config.upstream.require_api_key()
