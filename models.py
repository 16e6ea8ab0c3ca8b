"""Request, target and aggregation data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class ChatRequest:
    """A validated chat-completion request.

    ``stream`` is what the client asked for. The upstream always gets
    ``stream: true`` (see ``upstream_payload``).
    """

    messages: Tuple[Any, ...]
    stream: bool
    body: Mapping[str, Any]

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> ChatRequest:
        return cls(
            messages=tuple(body["messages"]),
            stream=bool(body.get("stream")),
            body=MappingProxyType(dict(body)),
        )

    def upstream_payload(self) -> Dict[str, Any]:
        """Body for the upstream call: every client field, streaming forced on."""
        payload = {k: v for k, v in self.body.items() if k != "stream"}
        payload["stream"] = True
        return payload


@dataclass(frozen=True)
class UpstreamTarget:
    """One configured upstream chat-completion URL."""

    url: str

    @property
    def is_tls(self) -> bool:
        return self.url.startswith("https://")


@dataclass
class AggregationState:
    """Accumulated view of one upstream SSE stream.

    ``content`` only grows. The metadata fields keep the last present value
    seen; ``{}`` counts as present, ``0`` and ``""`` do not.
    """

    content: str = ""
    usage: Optional[Dict[str, Any]] = None
    model: Optional[str] = None
    id: Optional[str] = None
    created: Optional[int] = None
    fragments: int = field(default=0, repr=False)

    def absorb(self, payload: Any) -> None:
        """Apply one parsed ``data:`` payload."""
        if not isinstance(payload, dict):
            return

        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            delta = choices[0].get("delta")
            if isinstance(delta, dict):
                content = delta.get("content")
                if isinstance(content, str) and content:
                    self.content += content
                    self.fragments += 1

        for name in ("usage", "model", "id", "created"):
            value = payload.get(name)
            if _present(value):
                setattr(self, name, value)


def _present(value: Any) -> bool:
    """JSON truthiness as upstream clients see it: empty objects and arrays count."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == value and value != 0
    if isinstance(value, str):
        return value != ""
    return True
