from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any

from caption_localizer.errors import CostLimitExceeded


@dataclass(frozen=True, slots=True)
class CostEntry:
    operation: str
    cost_usd: float
    at: float


class CostTracker:
    """
    Accumulates estimated provider spend and refuses calls that would exceed the limit.
    """

    def __init__(self, *, limit_usd: float) -> None:
        self.limit_usd = float(limit_usd)
        self._lock = threading.Lock()
        self._total = 0.0
        self._ledger: list[CostEntry] = []

    @property
    def total_usd(self) -> float:
        with self._lock:
            return self._total

    def reserve(self, cost_usd: float, *, operation: str) -> None:
        """
        Record `cost_usd` before the call is made, or raise CostLimitExceeded.
        """
        cost = max(0.0, float(cost_usd))
        with self._lock:
            if self._total + cost > self.limit_usd:
                raise CostLimitExceeded(
                    f"Estimated cost ${cost:.4f} would exceed limit ${self.limit_usd:.2f} "
                    f"(spent ${self._total:.4f})",
                    details={
                        "estimated_usd": round(cost, 6),
                        "spent_usd": round(self._total, 6),
                        "limit_usd": self.limit_usd,
                    },
                )
            self._total += cost
            self._ledger.append(CostEntry(operation=operation, cost_usd=cost, at=time.time()))

    def ledger(self) -> list[dict[str, Any]]:
        with self._lock:
            return [{"operation": e.operation, "cost_usd": e.cost_usd, "at": e.at} for e in self._ledger]


def estimate_stt_cost(duration_s: float, *, per_minute_usd: float) -> float:
    return max(1.0, float(duration_s or 0.0)) / 60.0 * float(per_minute_usd)
