"""Search index synchronizer.

Projects dish metadata plus the aggregate ranking view into search documents and
upserts them by dish id. It only reads aggregates; the ranking aggregator owns them.
Runs behind its own stream, so the index may lag the aggregate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from rankflow.core.errors import ValidationError
from rankflow.core.models import Acknowledgement, AggregateUpdated, DatabaseChange
from rankflow.ranking.store import VoteStore

from .catalog import DishCatalog
from .index import SearchIndex
from .schema import SearchDocument, collection_schema, project_dish


logger = logging.getLogger(__name__)

DISH_TABLES = frozenset({"dishes", "dish", "Dish"})
RANKING_TABLES = frozenset({"dish_votes", "dish_rankings", "DishRanking"})


@dataclass(frozen=True)
class SyncReport:
    synced: int
    removed: int


class SearchSynchronizer:
    def __init__(
        self,
        catalog: DishCatalog,
        aggregates: VoteStore,
        index: SearchIndex,
        *,
        collection: str = "dishes",
    ) -> None:
        self._catalog = catalog
        self._aggregates = aggregates
        self._index = index
        self.collection = collection
        self._collection_ready = False

    def ensure_collection(self) -> None:
        if self._collection_ready:
            return
        created = self._index.ensure_collection(collection_schema(self.collection))
        if created:
            logger.info("search_collection_created", extra={"collection": self.collection})
        self._collection_ready = True

    def build_document(self, dish_id: str) -> Optional[SearchDocument]:
        dish = self._catalog.get_dish(dish_id)
        if dish is None:
            return None
        return project_dish(dish, self._aggregates.get_aggregate(dish_id))

    def sync_dish(self, dish_id: str) -> Optional[SearchDocument]:
        """Upsert the current projection; a dish gone from the catalog is removed instead."""

        self.ensure_collection()
        doc = self.build_document(dish_id)
        if doc is None:
            self.remove_dish(dish_id)
            return None
        self._index.upsert(self.collection, doc)
        logger.debug("search_document_upserted", extra={"dish_id": dish_id, "rating": doc.rating})
        return doc

    def sync_many(self, dish_ids: Iterable[str]) -> SyncReport:
        synced = removed = 0
        for dish_id in dict.fromkeys(dish_ids):
            if self.sync_dish(dish_id) is None:
                removed += 1
            else:
                synced += 1
        return SyncReport(synced=synced, removed=removed)

    def sync_all(self, *, batch_size: int = 100) -> SyncReport:
        """Full resync of every catalog dish, imported in batches.

        Documents whose dish is no longer in the catalog are deleted afterwards.
        """

        self.ensure_collection()
        synced = 0
        live: set[str] = set()
        batch: list[SearchDocument] = []
        for dish_id in self._catalog.dish_ids():
            doc = self.build_document(dish_id)
            if doc is None:
                continue
            live.add(doc.id)
            batch.append(doc)
            if len(batch) >= batch_size:
                synced += self._index.import_documents(self.collection, batch)
                logger.info("search_batch_imported", extra={"count": len(batch), "total": synced})
                batch = []
        if batch:
            synced += self._index.import_documents(self.collection, batch)
        removed = 0
        for document_id in self._index.document_ids(self.collection):
            if document_id not in live and self._index.delete(self.collection, document_id):
                removed += 1
        logger.info(
            "search_full_sync_done",
            extra={"synced": synced, "removed": removed, "collection": self.collection},
        )
        return SyncReport(synced=synced, removed=removed)

    def remove_dish(self, dish_id: str) -> bool:
        existed = self._index.delete(self.collection, dish_id)
        if not existed:
            logger.debug("search_document_already_absent", extra={"dish_id": dish_id})
        return existed

    def handle(self, ctx) -> Acknowledgement:
        """Handler for ranking.aggregate_updated events."""

        event = ctx.event
        if not isinstance(event, AggregateUpdated):
            raise ValidationError([f"event_type is not handled by search sync: {ctx.envelope.event_type}"])
        report = self.sync_many(event.dish_ids)
        return Acknowledgement(
            event_id=ctx.envelope.event_id,
            event_type=ctx.envelope.event_type,
            outcome="synced",
            detail={"synced": report.synced, "removed": report.removed, "dish_ids": list(event.dish_ids)},
        )

    def handle_change(self, change: DatabaseChange) -> Acknowledgement:
        """Handler for database-mutation notices delivered through the queue."""

        dish_id = change.record_id or _str_or_none(change.data.get("dish_id"))
        if change.table in RANKING_TABLES:
            dish_id = _str_or_none(change.data.get("dish_id")) or dish_id
        elif change.table not in DISH_TABLES:
            return Acknowledgement(
                event_id=change.message_id,
                event_type="db.change",
                outcome="ignored",
                detail={"table": change.table},
            )
        if not dish_id:
            raise ValidationError([f"data.id is required for {change.table} changes"])

        if change.table in DISH_TABLES and change.operation == "DELETE":
            self.remove_dish(dish_id)
            outcome = "removed"
        else:
            outcome = "synced" if self.sync_dish(dish_id) is not None else "removed"
        return Acknowledgement(
            event_id=change.message_id,
            event_type="db.change",
            outcome=outcome,
            detail={"table": change.table, "operation": change.operation, "dish_id": dish_id},
        )


def _str_or_none(v) -> Optional[str]:
    return str(v) if v not in (None, "") else None
