"""Configuration loader for the Mystara gateway.

Reads a JSON config file containing the upstream model settings, quota
tiers, and response-mode parameters. The upstream API key is resolved from
an environment variable and never stored in the config file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

RESPONSE_MODES = ("buffered", "streaming")


class ConfigurationError(Exception):
    """Raised when a required server-side setting is missing."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


@dataclass
class UpstreamConfig:
    """Settings for the hosted text-generation API."""

    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-1.5-flash"
    api_key_env: str = "GEMINI_API_KEY"
    timeout_seconds: float = 60.0
    max_output_tokens: int = 500
    temperature: float = 0.9
    top_p: float = 0.95
    top_k: int = 40

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env) or None

    def require_api_key(self) -> str:
        """Return the API key or raise ConfigurationError if it is unset."""
        key = self.api_key
        if not key:
            raise ConfigurationError(
                "Environment variable {} is not set.".format(self.api_key_env)
            )
        return key


@dataclass
class QuotaConfig:
    """Per-caller fixed-window quota parameters."""

    standard_limit: int = 10
    elevated_limit: int = 100
    window_seconds: float = 60.0
    max_tracked_callers: int = 10000
    refund_on_upstream_failure: bool = False


@dataclass
class StreamingConfig:
    """Incremental delivery parameters (streaming mode only)."""

    upstream_streaming: bool = True
    chunk_size_chars: int = 20
    inter_chunk_delay_ms: int = 30


@dataclass
class GatewayConfig:
    """Top-level gateway configuration."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    response_mode: str = "buffered"
    max_message_chars: int = 2000
    cors_allow_origin: str = "*"
    filter_file: Optional[str] = None
    log_file: Optional[str] = None

    @property
    def is_streaming(self) -> bool:
        return self.response_mode == "streaming"


def _validate(config: GatewayConfig) -> GatewayConfig:
    if config.response_mode not in RESPONSE_MODES:
        raise ValueError(
            "response_mode must be one of {}, got {!r}".format(
                ", ".join(RESPONSE_MODES), config.response_mode
            )
        )
    if config.quota.standard_limit < 1 or config.quota.elevated_limit < 1:
        raise ValueError("Quota limits must be positive")
    if config.quota.window_seconds <= 0:
        raise ValueError("quota.window_seconds must be positive")
    if config.streaming.chunk_size_chars < 1:
        raise ValueError("streaming.chunk_size_chars must be positive")
    if config.streaming.inter_chunk_delay_ms < 0:
        raise ValueError("streaming.inter_chunk_delay_ms must not be negative")
    if config.max_message_chars < 1:
        raise ValueError("max_message_chars must be positive")
    return config


def load_config(path: Union[str, Path]) -> GatewayConfig:
    """Load gateway configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved GatewayConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object at the top level")

    upstream_defaults = UpstreamConfig()
    upstream_raw = raw.get("upstream", {})
    upstream = UpstreamConfig(
        base_url=upstream_raw.get("base_url", upstream_defaults.base_url),
        model=upstream_raw.get("model", upstream_defaults.model),
        api_key_env=upstream_raw.get("api_key_env", upstream_defaults.api_key_env),
        timeout_seconds=float(
            upstream_raw.get("timeout_seconds", upstream_defaults.timeout_seconds)
        ),
        max_output_tokens=int(
            upstream_raw.get("max_output_tokens", upstream_defaults.max_output_tokens)
        ),
        temperature=float(
            upstream_raw.get("temperature", upstream_defaults.temperature)
        ),
        top_p=float(upstream_raw.get("top_p", upstream_defaults.top_p)),
        top_k=int(upstream_raw.get("top_k", upstream_defaults.top_k)),
    )

    quota_raw = raw.get("quota", {})
    quota = QuotaConfig(
        standard_limit=int(quota_raw.get("standard_limit", 10)),
        elevated_limit=int(quota_raw.get("elevated_limit", 100)),
        window_seconds=float(quota_raw.get("window_seconds", 60.0)),
        max_tracked_callers=int(quota_raw.get("max_tracked_callers", 10000)),
        refund_on_upstream_failure=bool(
            quota_raw.get("refund_on_upstream_failure", False)
        ),
    )

    streaming_raw = raw.get("streaming", {})
    streaming = StreamingConfig(
        upstream_streaming=bool(streaming_raw.get("upstream_streaming", True)),
        chunk_size_chars=int(streaming_raw.get("chunk_size_chars", 20)),
        inter_chunk_delay_ms=int(streaming_raw.get("inter_chunk_delay_ms", 30)),
    )

    return _validate(
        GatewayConfig(
            upstream=upstream,
            quota=quota,
            streaming=streaming,
            response_mode=raw.get("response_mode", "buffered"),
            max_message_chars=int(raw.get("max_message_chars", 2000)),
            cors_allow_origin=raw.get("cors_allow_origin", "*"),
            filter_file=raw.get("filter_file"),
            log_file=raw.get("log_file"),
        )
    )


def load_config_or_default(path: Union[str, Path]) -> GatewayConfig:
    """Load the config file if present, otherwise return the defaults."""
    if not Path(path).exists():
        return GatewayConfig()
    return load_config(path)
