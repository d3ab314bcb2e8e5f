from __future__ import annotations

import asyncio
import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Final
from uuid import uuid4

from receipt_pipeline.config import Settings
from receipt_pipeline.credentials import CredentialStore, EnvCredentialStore
from receipt_pipeline.expense_store import ExpenseRepository, candidate_to_expense
from receipt_pipeline.extraction_service import ExtractionClient, ExtractionError, NetworkError
from receipt_pipeline.ledger import LedgerError, QueueLedger
from receipt_pipeline.logger import log_item_event
from receipt_pipeline.metrics import MetricsCollector
from receipt_pipeline.normalization import NormalizationError, ResponseNormalizer
from receipt_pipeline.providers import UnknownProviderError, get_provider
from receipt_pipeline.retry_utils import RetryPolicy
from receipt_pipeline.state_machine import transition_state
from schemas.expense_schema import ExpenseCandidate
from schemas.queue_schema import QueueError, QueueItem

logger = logging.getLogger(__name__)

PRIORITY_RANK: Final[dict[str, int]] = {"immediate": 0, "background": 1}

USER_MESSAGES: Final[dict[str, str]] = {
    "unknown_provider": "The selected AI provider is not supported.",
    "auth_error": "The API key for this provider is missing or was rejected. Update it and retry.",
    "rate_limited": "The AI service is limiting requests right now. Try again in a few minutes.",
    "network_error": "Could not reach the AI service. Check your connection and retry.",
    "provider_error": "The AI service could not process the request. Try again later.",
    "malformed_response": "The AI service returned unreadable data.",
    "invalid_syntax": "The AI service returned unreadable receipt data.",
    "no_structured_data": "No receipt data could be extracted from this image.",
    "image_unavailable": "The receipt image could not be read.",
    "pipeline_error": "Processing failed unexpectedly.",
}

QueueListener = Callable[[str, "QueueItem | None"], None]


class ItemNotFoundError(KeyError):
    def __init__(self, item_id: str) -> None:
        super().__init__(item_id)
        self.item_id = item_id
        self.code = "item_not_found"

    def __str__(self) -> str:
        return f"Queue item not found: {self.item_id}"


class ItemStateError(ValueError):
    def __init__(self, item_id: str, status: str, expected: str) -> None:
        super().__init__(f"Queue item {item_id} is {status}, expected {expected}")
        self.item_id = item_id
        self.status = status
        self.code = "invalid_item_state"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _evolve(item: QueueItem, **changes: Any) -> QueueItem:
    data = item.model_dump()
    data.update(changes)
    return QueueItem.model_validate(data)


def classify_failure(exc: BaseException) -> QueueError:
    if isinstance(exc, ExtractionError):
        kind, retryable = exc.kind, exc.retryable
        detail = f"{exc.code}: {exc}"
    elif isinstance(exc, NormalizationError):
        kind, retryable = exc.kind, False
        detail = str(exc)
    elif isinstance(exc, UnknownProviderError):
        kind, retryable = "unknown_provider", False
        detail = str(exc)
    else:
        kind, retryable = "pipeline_error", False
        detail = f"{type(exc).__name__}: {exc}"
    return QueueError(kind=kind, message=USER_MESSAGES[kind], detail=detail, retryable=retryable)


class ProcessingQueue:
    """Persistent receipt job queue with a single asyncio dispatcher.

    All item mutations happen under one lock and are written to the ledger
    before the in-memory copy is replaced, so a failed write leaves the
    previous state untouched.
    """

    def __init__(
        self,
        ledger: QueueLedger,
        client: ExtractionClient,
        normalizer: ResponseNormalizer,
        credentials: CredentialStore,
        *,
        max_concurrent: int = 2,
        retry_policy: RetryPolicy | None = None,
        processing_timeout_seconds: float = 60.0,
        metrics: MetricsCollector | None = None,
        autostart: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._ledger = ledger
        self._client = client
        self._normalizer = normalizer
        self._credentials = credentials
        self._max_concurrent = max_concurrent
        self._retry_policy = retry_policy or RetryPolicy()
        self._processing_timeout = processing_timeout_seconds
        self.metrics = metrics or MetricsCollector()
        self._autostart = autostart
        self._clock = clock

        self._items: dict[str, QueueItem] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._not_before: dict[str, float] = {}
        self._listeners: list[QueueListener] = []
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._dispatcher: asyncio.Task[None] | None = None
        self._initialized = False
        self._closing = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        credentials: CredentialStore | None = None,
        autostart: bool = True,
    ) -> "ProcessingQueue":
        return cls(
            ledger=QueueLedger(settings.queue_db_path),
            client=ExtractionClient(settings),
            normalizer=ResponseNormalizer(),
            credentials=credentials or EnvCredentialStore(),
            max_concurrent=settings.max_concurrent,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay_seconds=settings.retry_base_delay_seconds,
                max_delay_seconds=settings.retry_max_delay_seconds,
            ),
            processing_timeout_seconds=settings.processing_timeout_seconds,
            autostart=autostart,
        )

    # -- public operations -------------------------------------------------

    async def initialize(self) -> None:
        items = await asyncio.to_thread(self._ledger.load_all)
        loaded: dict[str, QueueItem] = {}
        async with self._lock:
            for item in items:
                if item.status == "processing":
                    # Interrupted mid-flight by a previous run.
                    item = _evolve(
                        item,
                        status=transition_state(item.status, "pending"),
                        updated_at=self._clock(),
                    )
                    await asyncio.to_thread(self._ledger.upsert, item)
                    log_item_event(
                        logger,
                        logging.WARNING,
                        "Recovered interrupted item",
                        item_id=item.id,
                        provider=item.provider,
                        state=item.status,
                        attempt=item.attempts,
                        stage="initialize",
                    )
                loaded[item.id] = item
            self._items = loaded
            self._sequence = {item_id: next(self._counter) for item_id in loaded}
            self._not_before.clear()
            self._initialized = True
        logger.info("Queue initialized with %d items", len(loaded))
        if self.pending_count():
            self._kick()

    async def add_item(self, image_uri: str, provider_id: str, priority: str = "background") -> str:
        self._require_initialized()
        descriptor = get_provider(provider_id)
        if priority not in PRIORITY_RANK:
            raise ValueError(f"Unknown priority: {priority}")
        now = self._clock()
        item = QueueItem(
            id=uuid4().hex,
            image_uri=image_uri,
            provider=descriptor.id,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            await asyncio.to_thread(self._ledger.upsert, item)
            self._items[item.id] = item
            self._sequence[item.id] = next(self._counter)
        self.metrics.increment("items_enqueued_total")
        log_item_event(
            logger,
            logging.INFO,
            "Item enqueued",
            item_id=item.id,
            provider=item.provider,
            state=item.status,
            stage="enqueue",
        )
        self._notify(item.id, item)
        self._kick()
        return item.id

    def get_item(self, item_id: str) -> QueueItem | None:
        return self._items.get(item_id)

    def list_items(self, status: str | None = None) -> list[QueueItem]:
        items = sorted(self._items.values(), key=lambda item: (item.created_at, self._sequence.get(item.id, 0)))
        if status is None:
            return items
        return [item for item in items if item.status == status]

    def pending_count(self) -> int:
        return sum(1 for item in self._items.values() if item.status == "pending")

    async def remove_item(self, item_id: str) -> bool:
        self._require_initialized()
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return False
            await asyncio.to_thread(self._ledger.delete, item_id)
            del self._items[item_id]
            self._sequence.pop(item_id, None)
            self._not_before.pop(item_id, None)
        self.metrics.increment("items_discarded_total")
        log_item_event(
            logger,
            logging.INFO,
            "Item removed",
            item_id=item_id,
            provider=item.provider,
            state=item.status,
            stage="remove",
            outcome="in_flight" if item_id in self._in_flight else None,
        )
        self._notify(item_id, None)
        return True

    async def retry_item(self, item_id: str) -> QueueItem:
        self._require_initialized()
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            if item.status != "failed":
                raise ItemStateError(item_id, item.status, "failed")
            updated = _evolve(
                item,
                status=transition_state(item.status, "pending"),
                error=None,
                attempts=0,
                updated_at=self._clock(),
            )
            await asyncio.to_thread(self._ledger.upsert, updated)
            self._items[item_id] = updated
            self._not_before.pop(item_id, None)
        log_item_event(
            logger,
            logging.INFO,
            "Item re-queued by user",
            item_id=item_id,
            provider=updated.provider,
            state=updated.status,
            stage="retry",
        )
        self._notify(item_id, updated)
        self._kick()
        return updated

    async def finalize(
        self,
        item_id: str,
        repository: ExpenseRepository,
        overrides: dict[str, Any] | None = None,
    ) -> str:
        """Persist a verified expense for a completed item, then retire the item."""
        self._require_initialized()
        async with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFoundError(item_id)
            if item.status != "completed":
                raise ItemStateError(item_id, item.status, "completed")
            expense = candidate_to_expense(item, overrides)
            # Idempotent per item: finalizing again reuses the saved expense.
            expense_id = await asyncio.to_thread(repository.create_expense, expense, source_item_id=item_id)
            await asyncio.to_thread(self._ledger.delete, item_id)
            del self._items[item_id]
            self._sequence.pop(item_id, None)
        self.metrics.increment("items_finalized_total")
        log_item_event(
            logger,
            logging.INFO,
            "Item finalized",
            item_id=item_id,
            provider=item.provider,
            stage="finalize",
            outcome=expense_id,
        )
        self._notify(item_id, None)
        return expense_id

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def start(self) -> None:
        self._require_initialized()
        self._closing = False
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._run_dispatcher())
        self._wakeup.set()

    async def run_until_idle(self) -> None:
        """Dispatch until no item is pending or in flight."""
        self.start()
        assert self._dispatcher is not None
        await self._dispatcher

    async def shutdown(self, *, cancel_in_flight: bool = False) -> None:
        self._closing = True
        self._wakeup.set()
        if self._dispatcher is not None:
            await self._dispatcher
            self._dispatcher = None
        tasks = list(self._in_flight.values())
        if cancel_in_flight:
            # Cancelled items stay "processing" in the ledger and recover on the next initialize().
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- dispatcher --------------------------------------------------------

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("ProcessingQueue.initialize() must be awaited first")

    def _kick(self) -> None:
        if self._autostart and not self._closing:
            self.start()
        else:
            self._wakeup.set()

    def _eligible(self, now: float) -> list[QueueItem]:
        candidates = [
            item
            for item in self._items.values()
            if item.status == "pending"
            and item.id not in self._in_flight
            and self._not_before.get(item.id, 0.0) <= now
        ]
        candidates.sort(
            key=lambda item: (PRIORITY_RANK[item.priority], item.created_at, self._sequence.get(item.id, 0))
        )
        return candidates

    def _launch_eligible(self, loop: asyncio.AbstractEventLoop) -> None:
        slots = self._max_concurrent - len(self._in_flight)
        if slots <= 0:
            return
        for item in self._eligible(loop.time())[:slots]:
            self._in_flight[item.id] = loop.create_task(self._process(item.id))

    def _seconds_until_next_retry(self, now: float) -> float | None:
        waiting = [
            not_before
            for item_id, not_before in self._not_before.items()
            if item_id in self._items and self._items[item_id].status == "pending"
        ]
        if not waiting:
            return None
        return max(min(waiting) - now, 0.0)

    async def _run_dispatcher(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closing:
            self._wakeup.clear()
            self._launch_eligible(loop)
            timeout = self._seconds_until_next_retry(loop.time())
            if not self._in_flight and timeout is None:
                return
            waiter = loop.create_task(self._wakeup.wait())
            try:
                await asyncio.wait(
                    {waiter, *self._in_flight.values()},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                waiter.cancel()

    async def _process(self, item_id: str) -> None:
        try:
            item = await self._begin_attempt(item_id)
            if item is None:
                return
            started = time.perf_counter()
            try:
                candidate = await asyncio.wait_for(self._attempt(item), timeout=self._processing_timeout)
            except asyncio.TimeoutError:
                timeout_error = NetworkError(
                    f"No response within {self._processing_timeout:g}s",
                    code="timeout",
                )
                await self._record_failure(item_id, timeout_error, started)
            except (ExtractionError, NormalizationError, UnknownProviderError) as exc:
                await self._record_failure(item_id, exc, started)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected failure while processing item %s", item_id)
                await self._record_failure(item_id, exc, started)
            else:
                await self._record_success(item_id, candidate, started)
        except LedgerError:
            logger.exception("Ledger write failed for item %s; backing off", item_id)
            current = self._items.get(item_id)
            if current is None:
                return
            if current.status == "processing":
                # The ledger still says processing, which initialize() recovers to pending.
                current = _evolve(current, status=transition_state(current.status, "pending"))
                self._items[item_id] = current
                self._notify(item_id, current)
            delay = self._retry_policy.next_delay(current.attempts)
            self._not_before[item_id] = asyncio.get_running_loop().time() + delay
        finally:
            self._in_flight.pop(item_id, None)
            self._wakeup.set()

    async def _attempt(self, item: QueueItem) -> ExpenseCandidate:
        descriptor = get_provider(item.provider)
        credential = self._credentials.get_api_key(descriptor.id)
        raw = await self._client.submit(item.image_uri, descriptor, credential)
        return self._normalizer.normalize(descriptor.id, raw, captured_at=item.created_at)

    async def _begin_attempt(self, item_id: str) -> QueueItem | None:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != "pending":
                return None
            updated = _evolve(
                item,
                status=transition_state(item.status, "processing"),
                attempts=item.attempts + 1,
                updated_at=self._clock(),
            )
            await asyncio.to_thread(self._ledger.upsert, updated)
            self._items[item_id] = updated
            self._not_before.pop(item_id, None)
        self.metrics.increment("extraction_attempts_total")
        log_item_event(
            logger,
            logging.INFO,
            "Extraction attempt started",
            item_id=item_id,
            provider=updated.provider,
            state=updated.status,
            stage="dispatch",
            attempt=updated.attempts,
        )
        self._notify(item_id, updated)
        return updated

    async def _record_success(self, item_id: str, candidate: ExpenseCandidate, started: float) -> None:
        latency_ms = int((time.perf_counter() - started) * 1000)
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != "processing":
                log_item_event(
                    logger,
                    logging.INFO,
                    "Dropping result for removed item",
                    item_id=item_id,
                    stage="complete",
                    outcome="dropped",
                )
                return
            updated = _evolve(
                item,
                status=transition_state(item.status, "completed"),
                result=candidate,
                error=None,
                updated_at=self._clock(),
            )
            await asyncio.to_thread(self._ledger.upsert, updated)
            self._items[item_id] = updated
        self.metrics.increment("items_completed_total")
        self.metrics.observe_latency(latency_ms)
        log_item_event(
            logger,
            logging.INFO,
            "Extraction completed",
            item_id=item_id,
            provider=updated.provider,
            state=updated.status,
            stage="complete",
            attempt=updated.attempts,
            latency_ms=latency_ms,
            outcome="success",
        )
        self._notify(item_id, updated)

    async def _record_failure(self, item_id: str, exc: BaseException, started: float) -> None:
        latency_ms = int((time.perf_counter() - started) * 1000)
        error = classify_failure(exc)
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != "processing":
                log_item_event(
                    logger,
                    logging.INFO,
                    "Dropping failure for removed item",
                    item_id=item_id,
                    stage="fail",
                    outcome="dropped",
                )
                return
            retrying = self._retry_policy.should_retry(item.attempts, error.retryable)
            if retrying:
                updated = _evolve(item, status=transition_state(item.status, "pending"), updated_at=self._clock())
            else:
                updated = _evolve(
                    item,
                    status=transition_state(item.status, "failed"),
                    error=error,
                    result=None,
                    updated_at=self._clock(),
                )
            await asyncio.to_thread(self._ledger.upsert, updated)
            self._items[item_id] = updated
            if retrying:
                delay = self._retry_policy.next_delay(item.attempts, getattr(exc, "retry_after", None))
                self._not_before[item_id] = asyncio.get_running_loop().time() + delay

        self.metrics.observe_latency(latency_ms)
        if retrying:
            self.metrics.increment("retries_scheduled_total")
            level, message, outcome = logging.WARNING, "Extraction failed; retry scheduled", "retry"
        else:
            self.metrics.increment("items_failed_total")
            level, message, outcome = logging.ERROR, "Extraction failed", "failed"
        log_item_event(
            logger,
            level,
            f"{message}: {error.kind} ({error.detail})",
            item_id=item_id,
            provider=updated.provider,
            state=updated.status,
            stage="fail",
            attempt=updated.attempts,
            latency_ms=latency_ms,
            outcome=outcome,
        )
        self._notify(item_id, updated)

    def _notify(self, item_id: str, item: QueueItem | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(item_id, item)
            except Exception:  # noqa: BLE001
                logger.exception("Queue listener failed for item %s", item_id)
