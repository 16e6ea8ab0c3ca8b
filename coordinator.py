"""Per-request deadline and terminal-outcome arbitration."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import Response

from errors import DeadlineExceeded, ProxyError

log = logging.getLogger("chat_proxy")

Receive = Callable[[], Awaitable[Dict[str, Any]]]

# Status used when the client went away; nobody will read it.
CLIENT_CLOSED_REQUEST = 499


class TimeoutCoordinator:
    """
    Own one request's deadline and decide which terminal event wins.

    Four events can end a request: the work completes, the work fails, the
    deadline expires, or the client disconnects. ``settle()`` accepts only
    the first one; later calls are no-ops. Once the response has been handed
    to a live stream (``hand_off()``), the stream reports its own outcome.
    """

    def __init__(
        self,
        timeout_s: float,
        *,
        req_id: str = "-",
        on_complete: Optional[Callable[[str, float], None]] = None,
    ) -> None:
        self._started = time.monotonic()
        self.deadline = self._started + timeout_s
        self.req_id = req_id
        self._on_complete = on_complete
        self._outcome: Optional[str] = None
        self._headers_sent = False
        self._upstream: Optional[httpx.Response] = None

    @property
    def outcome(self) -> Optional[str]:
        return self._outcome

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def settle(self, outcome: str) -> bool:
        """Record the terminal outcome. Returns False if one was already recorded."""
        if self._outcome is not None:
            return False
        self._outcome = outcome
        duration_ms = (time.monotonic() - self._started) * 1000
        log.info("Request finished req_id=%s outcome=%s ms=%.1f", self.req_id, outcome, duration_ms)
        if self._on_complete is not None:
            self._on_complete(outcome, duration_ms)
        return True

    def attach(self, resp: httpx.Response) -> None:
        """Register the in-flight upstream response so a timeout can close it."""
        self._upstream = resp

    def hand_off(self) -> None:
        """The response body now belongs to a stream that settles on close."""
        self._headers_sent = True
        self._upstream = None

    async def release(self) -> None:
        """Close the attached upstream response, if any."""
        resp, self._upstream = self._upstream, None
        if resp is not None:
            await resp.aclose()

    async def run(self, work: Awaitable[Response], receive: Optional[Receive] = None) -> Response:
        """
        Race ``work`` against the deadline and a client disconnect.

        Returns the response to send. ProxyError raised by ``work`` becomes its
        error response; anything else becomes a generic 500.
        """
        work_task = asyncio.ensure_future(work)
        waiters = {work_task}
        disconnect_task: Optional[asyncio.Future] = None
        if receive is not None:
            disconnect_task = asyncio.ensure_future(self._wait_disconnect(receive))
            waiters.add(disconnect_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.remaining(), return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._abort(work_task)
            raise
        finally:
            if disconnect_task is not None and not disconnect_task.done():
                disconnect_task.cancel()

        if work_task in done:
            return await self._finish(work_task)

        await self._abort(work_task)
        if disconnect_task is not None and disconnect_task in done:
            self.settle("disconnect")
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        self.settle("timeout")
        return DeadlineExceeded().to_response()

    async def _finish(self, work_task: asyncio.Future) -> Response:
        try:
            response = work_task.result()
        except ProxyError as e:
            await self.release()
            self.settle("timeout" if isinstance(e, DeadlineExceeded) else "error")
            log.warning("Request failed req_id=%s status=%s error=%s", self.req_id, e.status_code, e.message)
            return e.to_response()
        except Exception:
            await self.release()
            self.settle("error")
            log.exception("Unhandled proxy error req_id=%s", self.req_id)
            return ProxyError().to_response()

        if not self._headers_sent:
            self.settle("completed" if response.status_code < 400 else "error")
        return response

    async def _abort(self, work_task: asyncio.Future) -> None:
        work_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await work_task
        await self.release()

    @staticmethod
    async def _wait_disconnect(receive: Receive) -> None:
        while True:
            message = await receive()
            if message.get("type") == "http.disconnect":
                return
