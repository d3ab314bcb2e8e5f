from __future__ import annotations

from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException

from receipt_pipeline.ledger import LedgerError
from receipt_pipeline.processing_queue import ItemNotFoundError, ItemStateError, ProcessingQueue
from receipt_pipeline.review import decide_review
from schemas.queue_schema import QueueItem


def create_monitoring_app(
    queue: ProcessingQueue,
    *,
    manage_lifecycle: bool = False,
    review_confidence_threshold: float = 0.5,
) -> FastAPI:
    lifespan = None
    if manage_lifecycle:

        @asynccontextmanager
        async def lifespan(_: FastAPI) -> AsyncIterator[None]:
            await queue.initialize()
            queue.start()
            try:
                yield
            finally:
                await queue.shutdown()

    app = FastAPI(title="Receipt Pipeline Queue API", version="0.1.0", lifespan=lifespan)

    def _serialize(item: QueueItem) -> dict[str, Any]:
        payload = item.model_dump(mode="json")
        if item.result is not None:
            decision = decide_review(item.result, confidence_threshold=review_confidence_threshold)
            payload["review"] = {"status": decision.status, "reason_codes": list(decision.reason_codes)}
        return payload

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        by_status = Counter(item.status for item in queue.list_items())
        counters: dict[str, Any] = dict(queue.metrics.snapshot())
        for status in ("pending", "processing", "completed", "failed"):
            counters[f"{status}_items"] = by_status.get(status, 0)
        counters["attention_total"] = by_status.get("completed", 0) + by_status.get("failed", 0)
        return counters

    @app.get("/items")
    def items(status: str | None = None, limit: int = 50) -> dict[str, Any]:
        rows = queue.list_items(status)
        return {"count": len(rows), "items": [_serialize(item) for item in rows[-limit:]]}

    @app.get("/items/{item_id}")
    def item_detail(item_id: str) -> dict[str, Any]:
        item = queue.get_item(item_id)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Queue item not found: {item_id}")
        return _serialize(item)

    @app.post("/items/{item_id}/retry")
    async def retry(item_id: str) -> dict[str, Any]:
        try:
            item = await queue.retry_item(item_id)
        except ItemNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ItemStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except LedgerError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return _serialize(item)

    @app.delete("/items/{item_id}")
    async def discard(item_id: str) -> dict[str, Any]:
        try:
            removed = await queue.remove_item(item_id)
        except LedgerError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"id": item_id, "removed": removed}

    return app
