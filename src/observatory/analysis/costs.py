from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from observatory import artifacts
from observatory.analysis.base import AnalysisJob
from observatory.artifacts import COSTS
from observatory.models import CostBreakdown

COST_WINDOW = timedelta(hours=24)


def rank_breakdown(rows: "Iterable[CostBreakdown]") -> "list[CostBreakdown]":
    return sorted(rows, key=lambda b: (-b.cost, b.label))


def total_cost(breakdown: "Sequence[CostBreakdown]") -> "float":
    return sum((b.cost for b in breakdown), 0.0)


class CostRollupJob(AnalysisJob):
    """
    rolls up the last 24 hours of spend per provider. Unlike the
    other jobs it always writes, so an empty window shows up as an
    empty breakdown rather than stale numbers, and it announces every
    refresh to realtime clients.
    """

    name = "costs"
    artifact = COSTS
    retain_on_empty = False

    async def compute(self) -> "list[CostBreakdown]":
        rows = await self._store.provider_costs(COST_WINDOW)
        return rank_breakdown(rows)

    def envelope(
        self, items: "Sequence[CostBreakdown]", now: "datetime"
    ) -> "dict[str, Any]":
        return artifacts.costs_envelope(items, total_cost(items), now)

    def notification(
        self, items: "Sequence[CostBreakdown]", now: "datetime"
    ) -> "dict[str, Any]":
        return {
            "type": "costs_updated",
            "total_cost": total_cost(items),
            "providers": len(items),
            "timestamp": int(now.timestamp()),
        }
