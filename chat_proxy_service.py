"""
Chat completion proxy (OpenAI-compatible) in front of one or more upstream providers.

Every upstream call is made with stream=true:
  - clients asking for stream=true get the upstream SSE bytes unchanged
  - everyone else gets a single chat.completion document rebuilt from the stream

Upstream targets come from UPSTREAM_API_URL (comma-separated); one is picked
at random per request.
"""

from __future__ import annotations

import logging
import random
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from config import AppConfig, load_config
from coordinator import TimeoutCoordinator
from errors import ProxyError
from logger import setup_logging
from metrics import RequestMetrics
from models import ChatRequest
from sse_handler import PASSTHROUGH_HEADERS, SSEPassthrough, StreamAggregator, build_completion
from upstream import UpstreamClient, UpstreamPools, UpstreamSelector
from utils import dump_config, load_env_files
from validation import check_content_length, read_json_body, validate_chat_request

log = logging.getLogger("chat_proxy")


class ChatProxy:
    """Forward one validated request and emit the client response."""

    def __init__(
        self,
        config: AppConfig,
        pools: UpstreamPools,
        selector: UpstreamSelector,
    ) -> None:
        self.config = config
        self.pools = pools
        self.selector = selector
        self.upstream_client = UpstreamClient(config, pools)

    async def handle(
        self,
        request: ChatRequest,
        authorization: str,
        coordinator: TimeoutCoordinator,
    ) -> Response:
        target = self.selector.choose()
        resp = await self.upstream_client.chat_completion(
            target, request, authorization, req_id=coordinator.req_id
        )
        coordinator.attach(resp)

        # Branch on what the client asked for, not on what was sent upstream.
        if request.stream:
            return await self.emit_passthrough(resp, coordinator)
        return await self.emit_buffered(resp, coordinator)

    async def emit_passthrough(self, resp: httpx.Response, coordinator: TimeoutCoordinator) -> Response:
        """Relay the upstream event stream as it arrives."""
        passthrough = SSEPassthrough(
            resp,
            deadline=coordinator.deadline,
            req_id=coordinator.req_id,
            on_close=coordinator.settle,
        )
        await passthrough.prime()
        coordinator.hand_off()
        return StreamingResponse(
            passthrough.relay(),
            media_type="text/event-stream",
            headers=PASSTHROUGH_HEADERS,
        )

    async def emit_buffered(self, resp: httpx.Response, coordinator: TimeoutCoordinator) -> Response:
        """Aggregate the whole upstream stream into one chat.completion."""
        aggregator = StreamAggregator(max_pending_bytes=self.config.max_buffered_sse_bytes)
        try:
            state = await aggregator.aggregate(
                resp.aiter_bytes(), timeout_s=self.config.aggregation_timeout_s
            )
        finally:
            await coordinator.release()

        log.info(
            "Aggregated req_id=%s fragments=%d chars=%d model=%s",
            coordinator.req_id,
            state.fragments,
            len(state.content),
            state.model,
        )
        return JSONResponse(build_completion(state, self.config.fallback_model))


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


def create_app(
    config: Optional[AppConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    """
    Build the proxy application.

    ``transport`` replaces the network for both upstream pools (tests use
    httpx.MockTransport); ``rng`` makes upstream selection reproducible.
    """
    if config is None:
        load_env_files()
        config = load_config()
    config.validate()
    setup_logging(config.log_path, use_color=config.log_color, level=config.log_level)

    pools = UpstreamPools(config, transport=transport)
    selector = UpstreamSelector.from_config(config, rng=rng)
    metrics = RequestMetrics()
    proxy = ChatProxy(config, pools, selector)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        dump_config(config, [t.url for t in selector.targets])

        yield  # Application is running

        await pools.aclose()
        metrics.log_summary()

    app = FastAPI(
        title="chat-stream-proxy",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.proxy = proxy
    app.state.metrics = metrics

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> Response:
        log.info("Rejected %s %s status=%s error=%s", request.method, request.url.path, exc.status_code, exc.message)
        return exc.to_response()

    @app.post("/v1/chat/completions")
    async def v1_chat_completions(
        request: Request,
        authorization: Optional[str] = Header(default=None),
    ) -> Response:
        """Handle chat completion requests."""
        check_content_length(request.headers.get("content-length"), config.max_request_bytes)
        body = await read_json_body(request.stream(), config.max_request_bytes)

        chat_request = validate_chat_request(body, authorization, config)

        req_id = _request_id(request)
        client_ip = request.client.host if request.client else "unknown"
        log.info(
            "Incoming chat req_id=%s from=%s stream=%s messages=%d",
            req_id,
            client_ip,
            chat_request.stream,
            len(chat_request.messages),
        )

        coordinator = TimeoutCoordinator(
            config.request_timeout_s,
            req_id=req_id,
            on_complete=metrics.record,
        )
        return await coordinator.run(
            proxy.handle(chat_request, authorization, coordinator),
            request.receive,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.config.port, reload=False)
