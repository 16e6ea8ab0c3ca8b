"""Per-request error taxonomy.

Every error here is raised and handled inside a single request. None of them
are retried and none of them escape to crash the worker. ``to_response()``
renders the client-facing body; anything diagnostic stays in the log.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi.responses import JSONResponse


class ProxyError(Exception):
    """Base class for errors that terminate a proxied request."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: str | None = None, status_code: int | None = None) -> None:
        self.message = message or self.error
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def body(self) -> Dict[str, Any]:
        return {"error": self.message}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.body())


class ValidationError(ProxyError):
    """Client-caused rejection (400/401/413) raised before any upstream work."""

    status_code = 400
    error = "Invalid request body"


class SelectionError(ProxyError):
    """No usable upstream target is configured."""

    error = "No valid upstream API configured"


class UpstreamError(ProxyError):
    """Upstream answered with a non-success status; the status is relayed."""

    error = "Upstream API error"

    def __init__(self, status_code: int) -> None:
        super().__init__(self.error, status_code=status_code)

    def body(self) -> Dict[str, Any]:
        return {"error": self.error, "status": self.status_code}


class UpstreamRequestError(ProxyError):
    """The upstream call failed before a status line arrived."""

    def body(self) -> Dict[str, Any]:
        # Message is ours (never transport text), safe to return.
        return {"error": self.error, "message": self.message}


class StreamError(ProxyError):
    """Transport-level failure while reading the upstream body."""

    error = "Stream processing error"

    def body(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message}


class StreamTimeout(StreamError):
    """Aggregation did not finish within its own deadline."""

    def __init__(self, message: str = "Stream processing timeout") -> None:
        super().__init__(message)


class DeadlineExceeded(ProxyError):
    """The whole-request deadline expired before a response was sent."""

    status_code = 408
    error = "Request timeout"


class StreamStartError(StreamError):
    """A passthrough stream failed before any byte reached the client."""

    def __init__(self) -> None:
        super().__init__("Stream error")

    def body(self) -> Dict[str, Any]:
        return {"error": self.message}
