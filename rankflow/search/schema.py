"""Search document schema for the dishes collection and the projection into it.

The projection is a pure function of (dish metadata, aggregate ranking); the index can
always be rebuilt by replaying it, so it is never a second source of truth.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Optional, Union

from rankflow.ranking.models import AggregateRanking

from .catalog import DishRecord


DISH_COLLECTION_SCHEMA: dict[str, Any] = {
    "name": "dishes",
    "fields": [
        {"name": "id", "type": "string"},
        {"name": "name", "type": "string"},
        {"name": "description", "type": "string", "optional": True},
        {"name": "restaurant_id", "type": "string", "facet": True},
        {"name": "restaurant_name", "type": "string", "facet": True},
        {"name": "price", "type": "float", "optional": True},
        {"name": "category", "type": "string", "facet": True, "optional": True},
        {"name": "tags", "type": "string[]", "facet": True, "optional": True},
        {"name": "rating", "type": "float"},
        {"name": "review_count", "type": "int32"},
        {"name": "image_url", "type": "string", "optional": True},
        {"name": "created_at", "type": "int64"},
        {"name": "updated_at", "type": "int64"},
    ],
    "default_sorting_field": "rating",
}


def collection_schema(name: str) -> dict[str, Any]:
    return {**DISH_COLLECTION_SCHEMA, "name": name}


@dataclass(frozen=True)
class SearchDocument:
    id: str
    name: str
    restaurant_id: str
    restaurant_name: str
    rating: float
    review_count: int
    created_at: int
    updated_at: int
    description: str = ""
    price: float = 0.0
    category: str = ""
    tags: list[str] = field(default_factory=list)
    image_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SearchDocument":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            restaurant_id=str(d.get("restaurant_id", "")),
            restaurant_name=str(d.get("restaurant_name", "")),
            rating=float(d.get("rating", 0.0)),
            review_count=int(d.get("review_count", 0)),
            created_at=int(d["created_at"]),
            updated_at=int(d["updated_at"]),
            description=str(d.get("description", "")),
            price=float(d.get("price", 0.0)),
            category=str(d.get("category", "")),
            tags=list(d.get("tags", [])),
            image_url=str(d.get("image_url", "")),
        )


TimestampLike = Union[datetime, date, str, int, float, None]

# Values above this are treated as epoch milliseconds, below as epoch seconds.
_MILLIS_THRESHOLD = 10_000_000_000


def to_epoch_millis(value: TimestampLike, *, default: int = 0) -> int:
    """Normalize datetime / ISO-8601 string / epoch seconds / epoch millis to epoch millis."""

    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        v = float(value)
        return int(v if abs(v) >= _MILLIS_THRESHOLD else v * 1000)
    if isinstance(value, str):
        s = value.strip()
        try:
            return to_epoch_millis(float(s), default=default)
        except ValueError:
            pass
        try:
            value = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return default
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp() * 1000)
    return default


def _clean_tags(tags: Any) -> list[str]:
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return sorted({str(t).strip() for t in tags if str(t).strip()})


def project_dish(dish: DishRecord, aggregate: Optional[AggregateRanking]) -> SearchDocument:
    """Build the search document; missing optional attributes fall back to defaults."""

    created = to_epoch_millis(dish.created_at)
    entity_updated = to_epoch_millis(dish.updated_at, default=created)
    agg_updated = to_epoch_millis(aggregate.updated_at) if aggregate is not None else 0

    return SearchDocument(
        id=dish.dish_id,
        name=dish.name or "",
        description=dish.description or "",
        restaurant_id=dish.restaurant_id or "",
        restaurant_name=dish.restaurant_name or "",
        price=float(dish.price) if dish.price is not None else 0.0,
        category=dish.category or "",
        tags=_clean_tags(dish.tags),
        rating=float(aggregate.average_rank) if aggregate is not None else 0.0,
        review_count=int(aggregate.vote_count) if aggregate is not None else 0,
        image_url=dish.image_url or "",
        created_at=created,
        updated_at=max(entity_updated, agg_updated, created),
    )
