from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Sequence

from receipt_pipeline.config import Settings, load_dotenv
from receipt_pipeline.credentials import EnvCredentialStore, mask_api_key
from receipt_pipeline.expense_store import SqliteExpenseRepository
from receipt_pipeline.extraction_service import ExtractionClient
from receipt_pipeline.ledger import LedgerError
from receipt_pipeline.logger import configure_logging
from receipt_pipeline.metrics import JsonlMetricsSink
from receipt_pipeline.monitoring_main import main as serve_main
from receipt_pipeline.normalization import to_cents
from receipt_pipeline.processing_queue import ItemNotFoundError, ProcessingQueue
from receipt_pipeline.providers import list_providers
from receipt_pipeline.review import decide_review
from schemas.queue_schema import QueueItem

logger = logging.getLogger(__name__)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2, default=str))


def _item_summary(item: QueueItem, settings: Settings) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "id": item.id,
        "status": item.status,
        "provider": item.provider,
        "priority": item.priority,
        "attempts": item.attempts,
        "image_uri": item.image_uri,
        "updated_at": item.updated_at.isoformat(),
    }
    if item.result is not None:
        decision = decide_review(item.result, confidence_threshold=settings.review_confidence_threshold)
        summary["merchant"] = item.result.merchant
        summary["amount"] = item.result.amount
        summary["confidence"] = item.result.confidence
        summary["review"] = decision.status
    if item.error is not None:
        summary["error"] = f"{item.error.kind}: {item.error.message}"
    return summary


def _collect_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.merchant:
        overrides["merchant"] = args.merchant
    if args.amount:
        cents, problem = to_cents(args.amount)
        if problem is not None or cents is None:
            raise ValueError(f"Invalid amount: {args.amount}")
        overrides["amount"] = cents
    if args.date:
        overrides["date"] = args.date
    if args.category:
        overrides["category"] = args.category
    if args.notes:
        overrides["notes"] = args.notes
    return overrides


async def _run_queue_command(args: argparse.Namespace, settings: Settings) -> int:
    queue = ProcessingQueue.from_settings(settings, autostart=False)
    await queue.initialize()

    if args.command == "enqueue":
        provider = args.provider or settings.default_provider
        ids = [await queue.add_item(uri, provider, args.priority) for uri in args.images]
        _emit({"enqueued": ids})
        if not args.run:
            return 0
        args.command = "run"

    if args.command == "run":
        await queue.run_until_idle()
        await queue.shutdown()
        snapshot = queue.metrics.snapshot()
        JsonlMetricsSink(settings.metrics_path).emit_snapshot(queue.metrics, stage="run")
        logger.info("Run summary: %s", snapshot)
        _emit({"summary": snapshot, "items": [_item_summary(item, settings) for item in queue.list_items()]})
        return 0 if snapshot["failed_total"] == 0 else 2

    if args.command == "list":
        _emit([_item_summary(item, settings) for item in queue.list_items(args.status)])
        return 0

    if args.command == "show":
        item = queue.get_item(args.item_id)
        if item is None:
            logger.error("Queue item not found: %s", args.item_id)
            return 1
        _emit(item.model_dump(mode="json"))
        return 0

    if args.command == "retry":
        item = await queue.retry_item(args.item_id)
        _emit(_item_summary(item, settings))
        return 0

    if args.command == "discard":
        removed = await queue.remove_item(args.item_id)
        _emit({"id": args.item_id, "removed": removed})
        return 0

    if args.command == "finalize":
        repository = SqliteExpenseRepository(settings.expense_db_path)
        expense_id = await queue.finalize(args.item_id, repository, _collect_overrides(args))
        _emit({"id": args.item_id, "expense_id": expense_id})
        return 0

    return 1


def run_providers() -> int:
    _emit(
        [
            {
                "id": descriptor.id,
                "name": descriptor.name,
                "description": descriptor.description,
                "documentation_url": descriptor.documentation_url,
                "api_key_env": list(descriptor.api_key_env),
                "default_model": descriptor.default_model,
            }
            for descriptor in list_providers()
        ]
    )
    return 0


def run_check_key(args: argparse.Namespace, settings: Settings) -> int:
    provider = args.provider or settings.default_provider
    api_key = args.key or EnvCredentialStore().get_api_key(provider)
    result = ExtractionClient(settings).check_connection(provider, api_key)
    _emit(
        {
            "provider": provider,
            "api_key": mask_api_key(api_key),
            "ok": result.ok,
            "error": result.error,
            "message": result.message,
        }
    )
    return 0 if result.ok else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Receipt Processing Pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("providers", help="List supported AI providers")

    check = subparsers.add_parser("check-key", help="Validate an API key and test the connection")
    check.add_argument("--provider")
    check.add_argument("--key", help="API key to test; defaults to the provider's environment variable")

    enqueue = subparsers.add_parser("enqueue", help="Queue receipt images for extraction")
    enqueue.add_argument("images", nargs="+")
    enqueue.add_argument("--provider")
    enqueue.add_argument("--priority", choices=["immediate", "background"], default="background")
    enqueue.add_argument("--run", action="store_true", help="Process the queue right away")

    subparsers.add_parser("run", help="Process pending items until the queue is idle")

    list_cmd = subparsers.add_parser("list", help="List queue items")
    list_cmd.add_argument("--status", choices=["pending", "processing", "completed", "failed"])

    for name, help_text in (
        ("show", "Show one queue item"),
        ("retry", "Re-queue a failed item"),
        ("discard", "Remove an item from the queue"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("item_id")

    finalize = subparsers.add_parser("finalize", help="Save a completed item as an expense")
    finalize.add_argument("item_id")
    finalize.add_argument("--merchant")
    finalize.add_argument("--amount", help="Corrected total, e.g. 12.50")
    finalize.add_argument("--date", help="Corrected date as YYYY-MM-DD")
    finalize.add_argument("--category", choices=["meal", "transport", "accommodation", "office", "other"])
    finalize.add_argument("--notes")

    serve = subparsers.add_parser("serve", help="Run the queue status API")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    if args.command == "providers":
        return run_providers()
    if args.command == "serve":
        serve_main(host=args.host, port=args.port)
        return 0
    try:
        if args.command == "check-key":
            return run_check_key(args, settings)
        return asyncio.run(_run_queue_command(args, settings))
    except (ItemNotFoundError, LedgerError, ValueError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
