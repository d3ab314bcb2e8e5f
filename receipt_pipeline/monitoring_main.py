from __future__ import annotations

import os

import uvicorn
from fastapi import FastAPI

from receipt_pipeline.config import Settings, load_dotenv
from receipt_pipeline.logger import configure_logging
from receipt_pipeline.monitoring_api import create_monitoring_app
from receipt_pipeline.processing_queue import ProcessingQueue


def build_app() -> FastAPI:
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    queue = ProcessingQueue.from_settings(settings)
    return create_monitoring_app(
        queue,
        manage_lifecycle=True,
        review_confidence_threshold=settings.review_confidence_threshold,
    )


def main(host: str | None = None, port: int | None = None) -> None:
    uvicorn.run(
        "receipt_pipeline.monitoring_main:build_app",
        factory=True,
        host=host or os.getenv("API_HOST", "0.0.0.0"),
        port=port or int(os.getenv("API_PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    main()
