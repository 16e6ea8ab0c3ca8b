"""Startup helpers for the chat stream proxy."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from logger import mask_secret

log = logging.getLogger("chat_proxy")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config, upstream_urls) -> None:
    """Log effective configuration at startup."""
    log.info("=== Chat proxy startup config ===")
    log.info("UPSTREAM_API_URL=%s", config.upstream_api_urls)
    log.info("Valid upstreams=%d %s", len(upstream_urls), upstream_urls)
    if not upstream_urls:
        log.warning("No valid upstream API configured; every chat request will fail with 500.")
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("UPSTREAM_RESPONSE_TIMEOUT_S=%s", config.upstream_response_timeout_s)
    log.info("AGGREGATION_TIMEOUT_S=%s", config.aggregation_timeout_s)
    log.info("ERROR_BODY_TIMEOUT_S=%s", config.error_body_timeout_s)
    log.info(
        "POOL max_sockets=%s max_free_sockets=%s socket_timeout_s=%s free_socket_timeout_s=%s",
        config.pool_max_sockets,
        config.pool_max_free_sockets,
        config.pool_socket_timeout_s,
        config.pool_free_socket_timeout_s,
    )
    log.info(
        "LIMITS max_messages=%s max_content_chars=%s max_request_bytes=%s max_buffered_sse_bytes=%s",
        config.max_messages,
        config.max_content_chars,
        config.max_request_bytes,
        config.max_buffered_sse_bytes,
    )
    log.info("FALLBACK_MODEL=%s", config.fallback_model)
    log.info("PORT=%s", config.port)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path or "<console>")
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("=================================")


def describe_authorization(value: str) -> str:
    """Short, masked form of an Authorization header for log lines."""
    scheme, _, credential = (value or "").partition(" ")
    if not credential:
        return mask_secret(scheme)
    return f"{scheme} {mask_secret(credential)}"
