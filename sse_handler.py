"""Server-Sent Events (SSE) handling: aggregation and passthrough."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Dict, Optional

import httpx

from errors import DeadlineExceeded, StreamError, StreamStartError, StreamTimeout
from models import AggregationState

log = logging.getLogger("chat_proxy")

DATA_PREFIX = b"data: "
DONE_MARKER = "[DONE]"

PASSTHROUGH_HEADERS: Dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}

# Transport failures while reading an already-open upstream body.
_READ_ERRORS = (httpx.HTTPError, httpx.StreamError)


class StreamAggregator:
    """
    Rebuild one assistant message from an upstream SSE byte stream.

    Bytes are buffered at the byte level, so a chunk boundary may fall
    anywhere (inside a line, inside a multi-byte character) without changing
    the result. Only complete, newline-terminated lines are interpreted:

      - lines not starting with ``data: `` are ignored
      - ``data: [DONE]`` ends aggregation; anything after it is dropped
      - payloads that are not valid JSON are skipped

    An instance handles exactly one stream.
    """

    def __init__(self, max_pending_bytes: int = 20_000_000) -> None:
        self.state = AggregationState()
        self._pending = b""
        self._done = False
        self._max_pending = max_pending_bytes

    @property
    def done(self) -> bool:
        return self._done

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, chunk: bytes) -> bool:
        """Consume one chunk. Returns True once ``[DONE]`` has been seen."""
        if self._done:
            return True

        lines = (self._pending + chunk).split(b"\n")
        self._pending = lines.pop()
        for line in lines:
            if self._process_line(line):
                self._done = True
                self._pending = b""
                return True

        if len(self._pending) > self._max_pending:
            raise StreamError("Stream buffer limit exceeded")
        return False

    def _process_line(self, line: bytes) -> bool:
        if not line.startswith(DATA_PREFIX):
            return False
        data = line[len(DATA_PREFIX):].decode("utf-8", errors="replace").strip()
        if data == DONE_MARKER:
            return True
        try:
            payload = json.loads(data)
        except ValueError:
            return False
        self.state.absorb(payload)
        return False

    async def aggregate(self, chunks: AsyncIterator[bytes], timeout_s: float) -> AggregationState:
        """
        Drain ``chunks`` until ``[DONE]`` or end of stream.

        End of stream without ``[DONE]`` is a normal finish. Exceeding
        ``timeout_s`` raises StreamTimeout and the partial state is not
        returned.
        """
        try:
            await asyncio.wait_for(self._consume(chunks), timeout=timeout_s)
        except asyncio.TimeoutError:
            raise StreamTimeout() from None
        return self.state

    async def _consume(self, chunks: AsyncIterator[bytes]) -> None:
        try:
            async for chunk in chunks:
                if self.feed(chunk):
                    return
        except _READ_ERRORS as e:
            log.warning("Upstream stream read failed: %r", e)
            raise StreamError("Upstream stream read failed") from e


def build_completion(state: AggregationState, fallback_model: str) -> Dict[str, Any]:
    """Shape an aggregation result as a non-streaming chat.completion object."""
    return {
        "id": state.id if state.id is not None else f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": state.created if state.created is not None else int(time.time()),
        "model": state.model if state.model is not None else fallback_model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": state.content},
                "finish_reason": "stop",
            }
        ],
        "usage": state.usage if state.usage is not None else {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        },
    }


class SSEPassthrough:
    """Relay an upstream SSE body to the client byte for byte.

    ``prime()`` reads the first chunk while response headers are still
    unsent, so an early failure can still become a proper error response.
    ``relay()`` is the body iterator handed to the server; when the server
    stops iterating (client gone) the upstream response is closed at once.
    """

    def __init__(
        self,
        resp: httpx.Response,
        *,
        deadline: float,
        req_id: str = "-",
        on_close: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self._resp = resp
        self._chunks = resp.aiter_bytes()
        self._deadline = deadline
        self._req_id = req_id
        self._on_close = on_close
        self._first: Optional[bytes] = None
        self._primed = False
        self.bytes_sent = 0

    async def _next_chunk(self) -> Optional[bytes]:
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        try:
            return await asyncio.wait_for(self._chunks.__anext__(), timeout=remaining)
        except StopAsyncIteration:
            return None

    async def prime(self) -> None:
        """Read the first upstream chunk. Raises StreamStartError on failure."""
        try:
            self._first = await self._next_chunk()
            self._primed = True
        except asyncio.TimeoutError:
            await self.close()
            raise DeadlineExceeded() from None
        except _READ_ERRORS as e:
            log.error("Upstream stream error before headers req_id=%s err=%r", self._req_id, e)
            await self.close()
            raise StreamStartError() from e

    async def relay(self) -> AsyncGenerator[bytes, None]:
        outcome = "completed"
        try:
            chunk = self._first if self._primed else await self._next_chunk()
            self._first = None
            while chunk is not None:
                if chunk:
                    self.bytes_sent += len(chunk)
                    yield chunk
                chunk = await self._next_chunk()
        except asyncio.TimeoutError:
            outcome = "timeout"
            log.warning("Request deadline reached mid-stream req_id=%s; closing upstream", self._req_id)
        except _READ_ERRORS as e:
            # Headers are already out; the only option left is to end the stream.
            outcome = "error"
            log.error("Upstream stream error req_id=%s sent=%d err=%r", self._req_id, self.bytes_sent, e)
        except (asyncio.CancelledError, GeneratorExit):
            outcome = "disconnect"
            log.info("Client disconnected mid-stream req_id=%s sent=%d", self._req_id, self.bytes_sent)
            raise
        finally:
            if self._on_close is not None:
                self._on_close(outcome)
            # The server may keep cancelling this task; the close must still finish.
            await asyncio.shield(self.close())

    async def close(self) -> None:
        """Stop reading upstream and release the connection."""
        await self._chunks.aclose()
        await self._resp.aclose()
