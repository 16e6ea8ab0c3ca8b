"""Configuration management for the chat stream proxy."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Upstream targets (comma-separated base URLs)
    upstream_api_urls: str
    user_agent: str

    # Deadlines
    request_timeout_s: float
    upstream_response_timeout_s: float
    aggregation_timeout_s: float
    error_body_timeout_s: float
    error_snippet_chars: int

    # Connection pool (one per scheme)
    pool_max_sockets: int
    pool_max_free_sockets: int
    pool_socket_timeout_s: float
    pool_free_socket_timeout_s: float

    # Request limits
    max_messages: int
    max_content_chars: int
    max_request_bytes: int
    max_buffered_sse_bytes: int

    # Synthesized response defaults
    fallback_model: str

    # Server settings
    port: int
    log_level: str
    log_path: str
    log_color: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            upstream_api_urls=_env_str("UPSTREAM_API_URL", ""),
            user_agent=_env_str("USER_AGENT", "OpenAI-Proxy/1.0"),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 180.0),
            upstream_response_timeout_s=_env_float("UPSTREAM_RESPONSE_TIMEOUT_S", 120.0),
            aggregation_timeout_s=_env_float("AGGREGATION_TIMEOUT_S", 120.0),
            error_body_timeout_s=_env_float("ERROR_BODY_TIMEOUT_S", 5.0),
            error_snippet_chars=_env_int("ERROR_SNIPPET_CHARS", 200),
            pool_max_sockets=_env_int("POOL_MAX_SOCKETS", 100),
            pool_max_free_sockets=_env_int("POOL_MAX_FREE_SOCKETS", 50),
            pool_socket_timeout_s=_env_float("POOL_SOCKET_TIMEOUT_S", 30.0),
            pool_free_socket_timeout_s=_env_float("POOL_FREE_SOCKET_TIMEOUT_S", 15.0),
            max_messages=_env_int("MAX_MESSAGES", 100),
            max_content_chars=_env_int("MAX_CONTENT_CHARS", 1_000_000),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 10 * 1024 * 1024),  # 10 MiB
            max_buffered_sse_bytes=_env_int("MAX_BUFFERED_SSE_BYTES", 20_000_000),
            fallback_model=_env_str("FALLBACK_MODEL", "gpt-3.5-turbo"),
            port=_env_int("PORT", 3000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", ""),
            log_color=_env_bool("LOG_COLOR", True),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.upstream_response_timeout_s <= 0:
            raise ValueError("UPSTREAM_RESPONSE_TIMEOUT_S must be > 0")
        if self.aggregation_timeout_s <= 0:
            raise ValueError("AGGREGATION_TIMEOUT_S must be > 0")
        if self.error_body_timeout_s <= 0:
            raise ValueError("ERROR_BODY_TIMEOUT_S must be > 0")
        if self.error_snippet_chars < 0:
            raise ValueError("ERROR_SNIPPET_CHARS must be >= 0")
        if self.pool_max_sockets <= 0:
            raise ValueError("POOL_MAX_SOCKETS must be > 0")
        if self.pool_max_free_sockets < 0:
            raise ValueError("POOL_MAX_FREE_SOCKETS must be >= 0")
        if self.pool_max_free_sockets > self.pool_max_sockets:
            raise ValueError("POOL_MAX_FREE_SOCKETS must be <= POOL_MAX_SOCKETS")
        if self.pool_socket_timeout_s <= 0:
            raise ValueError("POOL_SOCKET_TIMEOUT_S must be > 0")
        if self.pool_free_socket_timeout_s <= 0:
            raise ValueError("POOL_FREE_SOCKET_TIMEOUT_S must be > 0")
        if self.max_messages <= 0:
            raise ValueError("MAX_MESSAGES must be > 0")
        if self.max_content_chars <= 0:
            raise ValueError("MAX_CONTENT_CHARS must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if self.max_buffered_sse_bytes <= 0:
            raise ValueError("MAX_BUFFERED_SSE_BYTES must be > 0")
        if not self.fallback_model:
            raise ValueError("FALLBACK_MODEL must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be in 1..65535")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
