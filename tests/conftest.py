"""Shared test fixtures for the Mystara gateway tests."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from mystara_gateway.config import (
    ConfigurationError,
    GatewayConfig,
    QuotaConfig,
    StreamingConfig,
    load_config,
)


class FakeGenerator:
    """Stand-in for the upstream client that records every prompt."""

    supports_streaming = True

    def __init__(
        self,
        text: str = "Las cartas revelan un nuevo comienzo.",
        chunks: Optional[List[str]] = None,
        response: Any = None,
        configured: bool = True,
        generate_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        stream_error_after: int = 0,
    ) -> None:
        self.text = text
        if chunks is None:
            chunks = ["Las cartas ", "revelan ", "luz."]
        self.chunks = chunks
        self.response = response
        self.configured = configured
        self.generate_error = generate_error
        self.stream_error = stream_error
        self.stream_error_after = stream_error_after
        self.prompts: List[str] = []
        self.stream_closed = False

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("Environment variable GEMINI_API_KEY is not set.")

    async def generate(self, prompt: str) -> Any:
        self.prompts.append(prompt)
        if self.generate_error is not None:
            raise self.generate_error
        if self.response is not None:
            return self.response
        return {"text": self.text}

    async def stream(self, prompt: str):
        self.prompts.append(prompt)
        try:
            for index, chunk in enumerate(self.chunks):
                if self.stream_error is not None and index == self.stream_error_after:
                    raise self.stream_error
                yield {"candidates": [{"content": {"parts": [{"text": chunk}]}}]}
            if self.stream_error is not None and self.stream_error_after >= len(
                self.chunks
            ):
                raise self.stream_error
        finally:
            self.stream_closed = True


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "upstream": {
            "base_url": "https://upstream.example.com/v1beta",
            "model": "gemini-test",
            "api_key_env": "TEST_GEMINI_KEY",
            "max_output_tokens": 256,
        },
        "quota": {
            "standard_limit": 3,
            "elevated_limit": 6,
            "window_seconds": 60,
        },
        "streaming": {
            "upstream_streaming": False,
            "chunk_size_chars": 10,
            "inter_chunk_delay_ms": 0,
        },
        "response_mode": "buffered",
        "max_message_chars": 2000,
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> GatewayConfig:
    """Return a loaded test GatewayConfig."""
    return load_config(test_config_path)


@pytest.fixture()
def buffered_config() -> GatewayConfig:
    """Default limits (10 / 100 per minute) in buffered mode."""
    return GatewayConfig(response_mode="buffered")


@pytest.fixture()
def streaming_config() -> GatewayConfig:
    """Default limits in streaming mode with deterministic re-chunking."""
    return GatewayConfig(
        response_mode="streaming",
        quota=QuotaConfig(),
        streaming=StreamingConfig(
            upstream_streaming=False, chunk_size_chars=20, inter_chunk_delay_ms=0
        ),
    )


@pytest.fixture()
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
def generator_factory():
    """Return the FakeGenerator class for tests that need a variant."""
    return FakeGenerator
