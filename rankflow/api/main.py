from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
import uvicorn

from rankflow.core.errors import FailureClass, TransientStorageError
from rankflow.core.settings import load_settings
from rankflow.pipeline.service import Pipeline, pipeline_from_settings


logger = logging.getLogger(__name__)


def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    app = FastAPI(title="rankflow API")
    app.state.pipeline = pipeline

    @app.get("/health")
    def health(request: Request) -> dict:
        p: Optional[Pipeline] = request.app.state.pipeline
        if p is None:
            return {"status": "ok"}
        return {"status": "ok", "env": p.settings.env, "ranking": p.aggregator.stats.snapshot()}

    @app.get("/dead-letters")
    def dead_letters(
        limit: int = Query(100, ge=1, le=1000),
        failure_class: Optional[FailureClass] = None,
        p: Pipeline = Depends(_pipeline),
    ) -> list[dict]:
        try:
            letters = p.dead_letters.sink.list(limit=limit)
        except TransientStorageError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        if failure_class is not None:
            letters = [d for d in letters if d.failure_class == failure_class]
        return [
            {
                "failure_class": d.failure_class.value,
                "error": d.error,
                "stream": d.stream,
                "delivery_id": d.delivery_id,
                "event_id": d.event_id,
                "attempts": d.attempts,
                "failed_at": d.failed_at.isoformat(),
                "body": d.body,
            }
            for d in letters
        ]

    @app.post("/search/reindex")
    def reindex(batch_size: int = Query(100, ge=1, le=1000), p: Pipeline = Depends(_pipeline)) -> dict:
        try:
            report = p.synchronizer.sync_all(batch_size=batch_size)
        except TransientStorageError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        logger.info("search_reindex_requested", extra={"synced": report.synced, "removed": report.removed})
        return {"collection": p.synchronizer.collection, "synced": report.synced, "removed": report.removed}

    @app.post("/ranking/reconcile")
    def reconcile(p: Pipeline = Depends(_pipeline)) -> dict:
        try:
            aggregates = p.aggregator.reconcile()
        except TransientStorageError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return {
            "reconciled": len(aggregates),
            "aggregates": {a.dish_id: {"vote_count": a.vote_count, "average_rank": a.average_rank} for a in aggregates},
        }

    return app


def _pipeline(request: Request) -> Pipeline:
    p = request.app.state.pipeline
    if p is None:
        raise HTTPException(status_code=503, detail="pipeline not configured")
    return p


app = create_app()


def main() -> None:
    s = load_settings()
    logging.basicConfig(level=s.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    app.state.pipeline = pipeline_from_settings(s)
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
