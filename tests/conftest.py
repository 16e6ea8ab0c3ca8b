"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- A fake upstream built on httpx.MockTransport
- Test environment setup
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# The service module builds its app at import time from the environment.
os.environ.setdefault("UPSTREAM_API_URL", "http://upstream-a.test/v1/chat/completions")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "")
os.environ.setdefault("LOG_COLOR", "false")

from config import AppConfig  # noqa: E402


def sse_event(obj) -> bytes:
    """Encode one upstream SSE event."""
    return ("data: " + json.dumps(obj, ensure_ascii=False) + "\n\n").encode("utf-8")


def delta_chunk(content: Optional[str] = None, **extra) -> dict:
    delta = {} if content is None else {"content": content}
    obj = {"object": "chat.completion.chunk", "choices": [{"index": 0, "delta": delta}]}
    obj.update(extra)
    return obj


class ChunkStream(httpx.AsyncByteStream):
    """Upstream body that yields pre-split chunks and records how far it was read."""

    def __init__(
        self,
        chunks: List[bytes],
        delay_s: float = 0.0,
        fail_after: Optional[int] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.delay_s = delay_s
        self.fail_after = fail_after
        self.yielded = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.fail_after is not None and self.yielded >= self.fail_after:
                raise httpx.ReadError("connection reset by peer")
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            self.yielded += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """Records upstream requests and answers with a configurable response."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.chunks: List[bytes] = [
            sse_event(delta_chunk("Hello", id="chatcmpl-up", model="up-model", created=1700000000)),
            sse_event(delta_chunk(", world")),
            sse_event(delta_chunk(usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5})),
            b"data: [DONE]\n\n",
        ]
        self.error_body = b'{"error": {"message": "secret upstream detail"}}'
        self.delay_s = 0.0
        self.fail_after: Optional[int] = None
        self.stream: Optional[ChunkStream] = None
        self.handler_hook: Optional[Callable] = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler_hook is not None:
            await self.handler_hook(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, content=self.error_body)
        self.stream = ChunkStream(self.chunks, delay_s=self.delay_s, fail_after=self.fail_after)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            stream=self.stream,
        )

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def make_config(**overrides) -> AppConfig:
    values = dict(
        upstream_api_urls="http://upstream-a.test/v1/chat/completions",
        user_agent="OpenAI-Proxy/1.0",
        request_timeout_s=5.0,
        upstream_response_timeout_s=5.0,
        aggregation_timeout_s=5.0,
        error_body_timeout_s=1.0,
        error_snippet_chars=200,
        pool_max_sockets=10,
        pool_max_free_sockets=5,
        pool_socket_timeout_s=5.0,
        pool_free_socket_timeout_s=5.0,
        max_messages=100,
        max_content_chars=1_000_000,
        max_request_bytes=10 * 1024 * 1024,
        max_buffered_sse_bytes=20_000_000,
        fallback_model="gpt-3.5-turbo",
        port=3000,
        log_level="DEBUG",
        log_path="",
        log_color=False,
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def test_config():
    """Create test configuration."""
    return make_config()


@pytest.fixture
def fake_upstream():
    return FakeUpstream()
