"""Request completion counters."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict

log = logging.getLogger("chat_proxy")

OK_OUTCOMES = frozenset({"completed", "disconnect"})


@dataclass
class RequestMetrics:
    """Counts finished requests by outcome.

    Fed from completion events only; nothing in the request path reads it.
    """

    requests: int = 0
    errors: int = 0
    outcomes: Counter = field(default_factory=Counter)
    total_ms: float = 0.0

    def record(self, outcome: str, duration_ms: float) -> None:
        self.requests += 1
        if outcome not in OK_OUTCOMES:
            self.errors += 1
        self.outcomes[outcome] += 1
        self.total_ms += duration_ms

    def snapshot(self) -> Dict[str, object]:
        avg = self.total_ms / self.requests if self.requests else 0.0
        return {
            "requests": self.requests,
            "errors": self.errors,
            "outcomes": dict(self.outcomes),
            "avg_ms": round(avg, 1),
        }

    def log_summary(self) -> None:
        snap = self.snapshot()
        log.info(
            "Request totals: requests=%s errors=%s outcomes=%s avg_ms=%s",
            snap["requests"],
            snap["errors"],
            snap["outcomes"],
            snap["avg_ms"],
        )
