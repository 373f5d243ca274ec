import dataclasses
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

# every artifact change notification goes out on this single channel,
# subscribers receive everything published on it
EVENTS_CHANNEL = "api_events"


@dataclass(frozen=True, slots=True)
class ArtifactSpec:
    """
    ArtifactSpec names one cached derived artifact: the cache key
    it lives under, how long it stays valid, and the value readers
    get when it is absent or expired.
    """

    name: "str"
    key: "str"
    ttl: "timedelta"
    empty: "Callable[[], dict[str, Any]]"


def _empty_items() -> "dict[str, Any]":
    return {"items": [], "count": 0}


def _empty_costs() -> "dict[str, Any]":
    return {"breakdown": [], "total_cost": 0.0}


# ttls span several run cycles
COSTS = ArtifactSpec(
    name="costs",
    key="costs:24h:by_provider",
    ttl=timedelta(minutes=5),
    empty=_empty_costs,
)
DUPLICATES = ArtifactSpec(
    name="duplicates",
    key="analytics:duplicates",
    ttl=timedelta(minutes=10),
    empty=_empty_items,
)
CACHE_RECOMMENDATIONS = ArtifactSpec(
    name="cache_recommendations",
    key="analytics:cache_recommendations",
    ttl=timedelta(minutes=10),
    empty=_empty_items,
)
ANOMALIES = ArtifactSpec(
    name="anomalies",
    key="analytics:anomalies",
    ttl=timedelta(minutes=10),
    empty=_empty_items,
)

ALL_ARTIFACTS: "tuple[ArtifactSpec, ...]" = (
    COSTS,
    DUPLICATES,
    CACHE_RECOMMENDATIONS,
    ANOMALIES,
)


def _default(value: "Any") -> "Any":
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    raise TypeError(f"cannot serialize {type(value).__name__}")


def dumps(payload: "Any") -> "str":
    """
    serializes a payload deterministically: same input, same bytes.
    """
    return json.dumps(payload, default=_default, sort_keys=True, separators=(",", ":"))


def items_envelope(items: "Sequence[Any]", updated_at: "datetime") -> "dict[str, Any]":
    return {
        "items": [dataclasses.asdict(item) for item in items],
        "count": len(items),
        "updated_at": updated_at,
    }


def costs_envelope(
    breakdown: "Sequence[Any]",
    total_cost: "float",
    updated_at: "datetime",
) -> "dict[str, Any]":
    return {
        "breakdown": [dataclasses.asdict(item) for item in breakdown],
        "total_cost": total_cost,
        "updated_at": updated_at,
    }


def decode(raw: "str | bytes | None", spec: "ArtifactSpec") -> "dict[str, Any]":
    """
    decodes a cached value, falling back to the artifact's empty
    default when it is missing or unreadable.
    """
    if raw is None:
        return spec.empty()
    try:
        value = json.loads(raw)
    except ValueError:
        return spec.empty()
    if not isinstance(value, dict):
        return spec.empty()
    return value
