"""Upstream selection and forwarding."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Dict, List, Optional

import httpx

from config import AppConfig
from errors import SelectionError, UpstreamError, UpstreamRequestError
from models import ChatRequest, UpstreamTarget
from utils import describe_authorization

log = logging.getLogger("chat_proxy")

_ALLOWED_PREFIXES = ("http://", "https://")


def parse_upstream_urls(raw: str) -> List[str]:
    """Split a comma-separated URL list, keeping only http(s) entries."""
    out: List[str] = []
    for item in (raw or "").split(","):
        url = item.strip()
        if url and url.startswith(_ALLOWED_PREFIXES):
            out.append(url)
    return out


class UpstreamSelector:
    """Pick one configured upstream per request, uniformly at random."""

    def __init__(self, urls: List[str], rng: Optional[random.Random] = None) -> None:
        self._targets = [UpstreamTarget(u) for u in urls]
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: AppConfig, rng: Optional[random.Random] = None) -> UpstreamSelector:
        return cls(parse_upstream_urls(config.upstream_api_urls), rng=rng)

    @property
    def targets(self) -> List[UpstreamTarget]:
        return list(self._targets)

    def choose(self) -> UpstreamTarget:
        if not self._targets:
            raise SelectionError()
        return self._rng.choice(self._targets)


class UpstreamPools:
    """Keep-alive connection pools, one for plaintext and one for TLS targets.

    Both pools share the same bounds: at most ``pool_max_sockets`` connections,
    at most ``pool_max_free_sockets`` of them idle, idle ones expiring after
    ``pool_free_socket_timeout_s``. Reads are not time-limited here because
    SSE streams may pause for a long time between events.
    """

    def __init__(self, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        limits = httpx.Limits(
            max_connections=config.pool_max_sockets,
            max_keepalive_connections=config.pool_max_free_sockets,
            keepalive_expiry=config.pool_free_socket_timeout_s,
        )
        socket_timeout = config.pool_socket_timeout_s
        timeout = httpx.Timeout(connect=socket_timeout, write=socket_timeout, pool=socket_timeout, read=None)
        self._plain = httpx.AsyncClient(limits=limits, timeout=timeout, transport=transport)
        self._tls = httpx.AsyncClient(limits=limits, timeout=timeout, transport=transport)

    def for_target(self, target: UpstreamTarget) -> httpx.AsyncClient:
        return self._tls if target.is_tls else self._plain

    async def aclose(self) -> None:
        await self._plain.aclose()
        await self._tls.aclose()


class UpstreamClient:
    """Issue the (always streaming) upstream chat completion call."""

    def __init__(self, config: AppConfig, pools: UpstreamPools) -> None:
        self._config = config
        self._pools = pools

    def get_headers(self, authorization: str) -> Dict[str, str]:
        """Headers sent upstream. Authorization is forwarded as-is."""
        return {
            "Content-Type": "application/json",
            "Authorization": authorization,
            "User-Agent": self._config.user_agent,
        }

    async def chat_completion(
        self,
        target: UpstreamTarget,
        request: ChatRequest,
        authorization: str,
        req_id: str = "-",
    ) -> httpx.Response:
        """
        Send the request upstream with ``stream: true`` and return the open response.

        The caller owns the returned response and must close it. Non-success
        statuses are turned into UpstreamError after logging a short slice of
        the error body.
        """
        client = self._pools.for_target(target)
        req = client.build_request(
            "POST",
            target.url,
            headers=self.get_headers(authorization),
            json=request.upstream_payload(),
        )

        log.debug(
            "Upstream request req_id=%s url=%s auth=%s messages=%d",
            req_id,
            target.url,
            describe_authorization(authorization),
            len(request.messages),
        )

        t0 = time.time()
        try:
            resp = await asyncio.wait_for(
                client.send(req, stream=True),
                timeout=self._config.upstream_response_timeout_s,
            )
        except asyncio.TimeoutError:
            log.error(
                "Upstream response timeout req_id=%s url=%s after %.1fs",
                req_id,
                target.url,
                self._config.upstream_response_timeout_s,
            )
            raise UpstreamRequestError("Upstream response timeout") from None
        except httpx.HTTPError as e:
            log.error("Upstream request failed req_id=%s url=%s err=%r", req_id, target.url, e)
            raise UpstreamRequestError("Upstream request failed") from e

        dt = (time.time() - t0) * 1000
        log.info("Upstream chat req_id=%s url=%s status=%s ms=%.1f", req_id, target.url, resp.status_code, dt)

        if not resp.is_success:
            snippet = await self.read_error_snippet(
                resp,
                limit=self._config.error_snippet_chars,
                timeout_s=self._config.error_body_timeout_s,
            )
            await resp.aclose()
            if snippet:
                log.error("Upstream API error (%s) req_id=%s: %s", resp.status_code, req_id, snippet)
            else:
                log.error("Upstream API error (%s) req_id=%s: error body unavailable", resp.status_code, req_id)
            raise UpstreamError(resp.status_code)

        return resp

    @staticmethod
    async def read_error_snippet(
        resp: httpx.Response, limit: int = 200, timeout_s: float = 5.0
    ) -> str:
        """Best-effort: read small error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")[:limit]
