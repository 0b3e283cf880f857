from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from rankflow.ranking.models import AggregateRanking
from rankflow.search.catalog import DishRecord
from rankflow.search.schema import (
    DISH_COLLECTION_SCHEMA,
    SearchDocument,
    collection_schema,
    project_dish,
    to_epoch_millis,
)


MAY_1_MS = 1746057600000  # 2025-05-01T00:00:00Z


@pytest.mark.parametrize(
    "value",
    [
        datetime(2025, 5, 1, tzinfo=timezone.utc),
        datetime(2025, 5, 1),
        date(2025, 5, 1),
        "2025-05-01T00:00:00Z",
        "2025-05-01T08:00:00+08:00",
        1746057600,
        1746057600.0,
        MAY_1_MS,
        str(MAY_1_MS),
    ],
)
def test_timestamps_normalize_to_epoch_millis(value) -> None:
    assert to_epoch_millis(value) == MAY_1_MS


@pytest.mark.parametrize("value", [None, "", "not a date", True])
def test_unparseable_timestamps_fall_back_to_default(value) -> None:
    assert to_epoch_millis(value, default=7) == 7


def test_schema_sorts_by_rating() -> None:
    schema = collection_schema("dishes_test")
    assert schema["name"] == "dishes_test"
    assert schema["default_sorting_field"] == "rating"
    assert DISH_COLLECTION_SCHEMA["name"] == "dishes"
    names = {f["name"] for f in schema["fields"]}
    assert {"id", "rating", "review_count", "created_at", "updated_at"} <= names


def test_projection_fills_defaults_for_missing_attributes() -> None:
    dish = DishRecord(dish_id="dish-a", name="Nasi Lemak", created_at="2025-05-01T00:00:00Z")
    doc = project_dish(dish, None)

    assert doc == SearchDocument(
        id="dish-a",
        name="Nasi Lemak",
        restaurant_id="",
        restaurant_name="",
        rating=0.0,
        review_count=0,
        created_at=MAY_1_MS,
        updated_at=MAY_1_MS,
    )


def test_projection_carries_aggregate_and_latest_update() -> None:
    dish = DishRecord(
        dish_id="dish-a",
        name="Nasi Lemak",
        restaurant_id="resto-1",
        restaurant_name="Warung Ana",
        price=12.5,
        tags=("spicy", " sambal ", "spicy", ""),
        created_at=datetime(2025, 5, 1, tzinfo=timezone.utc),
        updated_at=datetime(2025, 5, 2, tzinfo=timezone.utc),
    )
    agg = AggregateRanking(
        dish_id="dish-a",
        vote_count=3,
        average_rank=1.6667,
        updated_at=datetime(2025, 5, 3, tzinfo=timezone.utc),
    )

    doc = project_dish(dish, agg)

    assert doc.rating == 1.6667
    assert doc.review_count == 3
    assert doc.tags == ["sambal", "spicy"]
    assert doc.price == 12.5
    assert doc.updated_at == MAY_1_MS + 2 * 86_400_000
    assert SearchDocument.from_dict(doc.to_dict()) == doc
