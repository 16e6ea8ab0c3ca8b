"""Inbound request checks run before any upstream work."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Optional

from config import AppConfig
from errors import ValidationError
from models import ChatRequest


def check_content_length(header: Optional[str], max_request_bytes: int) -> None:
    """Reject bodies whose declared size is invalid or over the limit."""
    if not header:
        return
    try:
        n = int(header)
    except ValueError:
        raise ValidationError("Invalid request body") from None
    if n < 0:
        raise ValidationError("Invalid request body")
    if n > max_request_bytes:
        raise ValidationError("Request content too large", status_code=413)


async def read_json_body(chunks: AsyncIterator[bytes], max_request_bytes: int) -> Any:
    """
    Read and parse a JSON request body.

    The limit applies to the bytes actually received, so chunked uploads
    without a Content-Length are bounded too.
    """
    buf = bytearray()
    async for chunk in chunks:
        buf += chunk
        if len(buf) > max_request_bytes:
            raise ValidationError("Request content too large", status_code=413)
    try:
        return json.loads(buf)
    except (ValueError, RecursionError):
        # RecursionError: nesting deeper than the parser can follow.
        raise ValidationError("Invalid request body") from None


def utf16_length(text: str) -> int:
    """Length in UTF-16 code units; astral characters count as two."""
    return len(text.encode("utf-16-le")) // 2


def validate_chat_request(
    body: Any,
    authorization: Optional[str],
    config: AppConfig,
) -> ChatRequest:
    """
    Validate a parsed request body and the client's Authorization header.

    Checks run in a fixed order and the first failure wins:
      1. body is a JSON object                     -> 400
      2. messages is present and an array          -> 400
      3. messages is non-empty                     -> 400
      4. at most ``max_messages`` entries          -> 400
      5. Authorization header present              -> 401
      6. string contents total <= max_content_chars -> 413
         (counted in UTF-16 code units)

    The body is not modified; the returned ChatRequest wraps it read-only.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")

    messages = body.get("messages")
    if not isinstance(messages, list):
        raise ValidationError("Messages field is required and must be an array")
    if not messages:
        raise ValidationError("Messages array cannot be empty")
    if len(messages) > config.max_messages:
        raise ValidationError("Too many messages")

    if not authorization:
        raise ValidationError("Authorization header is required", status_code=401)

    total = 0
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        content = msg.get("content")
        if isinstance(content, str):
            total += utf16_length(content)
            if total > config.max_content_chars:
                raise ValidationError("Request content too large", status_code=413)

    return ChatRequest.from_body(body)
