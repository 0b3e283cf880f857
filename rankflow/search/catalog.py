"""Dish entity metadata, read by the aggregator (existence checks) and the synchronizer."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, Union

from rankflow.core.postgres import PostgresConnection


@dataclass(frozen=True)
class DishRecord:
    dish_id: str
    name: str
    restaurant_id: str = ""
    restaurant_name: str = ""
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    image_url: Optional[str] = None
    is_available: bool = True
    created_at: Union[datetime, str, int, float, None] = None
    updated_at: Union[datetime, str, int, float, None] = None


class DishCatalog(Protocol):
    def get_dish(self, dish_id: str) -> Optional[DishRecord]:
        ...

    def dish_ids(self) -> list[str]:
        ...


class InMemoryDishCatalog:
    def __init__(self, dishes: Optional[list[DishRecord]] = None) -> None:
        self._dishes: dict[str, DishRecord] = {d.dish_id: d for d in dishes or []}
        self._lock = threading.Lock()

    def put(self, dish: DishRecord) -> None:
        with self._lock:
            self._dishes[dish.dish_id] = dish

    def remove(self, dish_id: str) -> None:
        with self._lock:
            self._dishes.pop(dish_id, None)

    def get_dish(self, dish_id: str) -> Optional[DishRecord]:
        with self._lock:
            return self._dishes.get(dish_id)

    def dish_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._dishes)


class PostgresDishCatalog:
    """Reads the application's dish and restaurant tables (owned elsewhere)."""

    _SELECT = """
        SELECT d.id, d.name, d.restaurant_id, r.name, d.description, d.price, d.dish_type,
               d.tags, d.image_url, d.is_available, d.created_at, d.updated_at
        FROM dishes d
        LEFT JOIN restaurants r ON r.id = d.restaurant_id
    """

    def __init__(self, dsn: Union[str, PostgresConnection]) -> None:
        self._db = dsn if isinstance(dsn, PostgresConnection) else PostgresConnection(dsn)

    def get_dish(self, dish_id: str) -> Optional[DishRecord]:
        with self._db.transaction() as cur:
            cur.execute(self._SELECT + " WHERE d.id = %s", (dish_id,))
            row = cur.fetchone()
        return self._row_to_dish(row) if row else None

    def dish_ids(self) -> list[str]:
        with self._db.transaction() as cur:
            cur.execute("SELECT id FROM dishes ORDER BY id")
            return [str(r[0]) for r in cur.fetchall()]

    def _row_to_dish(self, row: tuple[Any, ...]) -> DishRecord:
        (
            dish_id,
            name,
            restaurant_id,
            restaurant_name,
            description,
            price,
            dish_type,
            tags,
            image_url,
            is_available,
            created_at,
            updated_at,
        ) = row
        return DishRecord(
            dish_id=str(dish_id),
            name=name or "",
            restaurant_id=str(restaurant_id) if restaurant_id is not None else "",
            restaurant_name=restaurant_name or "",
            description=description,
            price=float(price) if price is not None else None,
            category=dish_type,
            tags=tuple(tags or ()),
            image_url=image_url,
            is_available=bool(is_available) if is_available is not None else True,
            created_at=created_at,
            updated_at=updated_at,
        )
