from datetime import timedelta
from typing import Protocol, Sequence

from observatory.models import CostBreakdown, DuplicateGroup, EndpointStats, HourlyCost


class StoreError(Exception):
    """
    raised when the record store is unreachable, rejects a query
    or does not answer within the configured deadline.
    """


class RecordStore(Protocol):
    """
    RecordStore is the read-only query surface the analysis jobs
    run against. Every method aggregates records newer than
    now() - window and returns typed rows; malformed rows are
    dropped by the implementation rather than failing the batch.
    """

    async def duplicate_groups(
        self,
        window: "timedelta",
        limit: "int",
    ) -> "Sequence[DuplicateGroup]": ...

    async def endpoint_stats(
        self,
        window: "timedelta",
        min_requests: "int",
    ) -> "Sequence[EndpointStats]": ...

    async def hourly_costs(
        self,
        window: "timedelta",
    ) -> "Sequence[HourlyCost]": ...

    async def provider_costs(
        self,
        window: "timedelta",
    ) -> "Sequence[CostBreakdown]": ...

    async def ping(self) -> "None": ...
