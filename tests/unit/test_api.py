from __future__ import annotations

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from rankflow.api.main import create_app
from rankflow.core.errors import FailureClass
from rankflow.core.message_bus import InMemoryBus
from rankflow.core.settings import settings_from_dict
from rankflow.deadletter.coordinator import InMemoryDeadLetterSink
from rankflow.pipeline.service import build_pipeline
from rankflow.ranking.store import InMemoryVoteStore
from rankflow.search.catalog import DishRecord, InMemoryDishCatalog
from rankflow.search.index import InMemorySearchIndex
from rankflow.users.registry import InMemoryUserStore


T0 = datetime(2025, 5, 1, tzinfo=timezone.utc)


def _pipeline():
    catalog = InMemoryDishCatalog(
        [
            DishRecord(dish_id="dish-a", name="Nasi Lemak Biasa", created_at=T0),
            DishRecord(dish_id="dish-b", name="Nasi Lemak Ayam", created_at=T0),
        ]
    )
    return build_pipeline(
        settings_from_dict({}),
        bus=InMemoryBus(),
        dead_letter_sink=InMemoryDeadLetterSink(),
        votes=InMemoryVoteStore(clock=lambda: T0),
        catalog=catalog,
        index=InMemorySearchIndex(),
        user_store=InMemoryUserStore(),
        sleep=lambda _s: None,
    )


def test_health_without_pipeline() -> None:
    client = TestClient(create_app())
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_operational_endpoints_require_pipeline() -> None:
    client = TestClient(create_app())
    assert client.get("/dead-letters").status_code == 503
    assert client.post("/search/reindex").status_code == 503


def test_dead_letters_listing_and_filter() -> None:
    p = _pipeline()
    p.dead_letters.capture(FailureClass.VALIDATION, body="{}", error="event_type is required", stream="votes")
    p.dead_letters.capture(FailureClass.BUSINESS_RULE, body="{}", error="dish does not exist: x", stream="votes")
    client = TestClient(create_app(p))

    all_letters = client.get("/dead-letters").json()
    assert len(all_letters) == 2

    r = client.get("/dead-letters", params={"failure_class": "business-rule"})
    assert [d["error"] for d in r.json()] == ["dish does not exist: x"]

    assert client.get("/dead-letters", params={"failure_class": "nope"}).status_code == 422


def test_reindex_syncs_every_catalog_dish() -> None:
    p = _pipeline()
    client = TestClient(create_app(p))

    r = client.post("/search/reindex", params={"batch_size": 1})

    assert r.status_code == 200
    assert r.json() == {"collection": "dishes", "synced": 2, "removed": 0}
    assert set(p.index.documents("dishes")) == {"dish-a", "dish-b"}


def test_reconcile_and_health_report_ranking_stats() -> None:
    p = _pipeline()
    client = TestClient(create_app(p))

    assert client.post("/ranking/reconcile").json() == {"reconciled": 0, "aggregates": {}}
    body = client.get("/health").json()
    assert body["env"] == "dev"
    assert body["ranking"] == {}
