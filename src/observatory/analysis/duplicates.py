from datetime import timedelta
from typing import Iterable

from observatory.analysis.base import AnalysisJob
from observatory.artifacts import DUPLICATES
from observatory.models import DuplicateGroup

DUPLICATE_WINDOW = timedelta(hours=1)
MAX_DUPLICATE_GROUPS = 100


def select_duplicates(
    groups: "Iterable[DuplicateGroup]",
    limit: "int" = MAX_DUPLICATE_GROUPS,
) -> "list[DuplicateGroup]":
    """
    keeps groups seen more than once, most expensive first.
    Ties are broken on endpoint, fingerprint and organization so the
    output order does not depend on the order rows came back in.
    """
    kept = [g for g in groups if g.count > 1]
    kept.sort(key=lambda g: (-g.cost, g.endpoint, g.fingerprint, g.organization_id))
    return kept[:limit]


class DuplicateDetectionJob(AnalysisJob):
    """
    finds identical requests (same organization, endpoint and
    fingerprint) repeated within the last hour.
    """

    name = "duplicates"
    artifact = DUPLICATES

    async def compute(self) -> "list[DuplicateGroup]":
        groups = await self._store.duplicate_groups(DUPLICATE_WINDOW, MAX_DUPLICATE_GROUPS)
        return select_duplicates(groups)
