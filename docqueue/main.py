"""Main entry point for the job engine service."""

import asyncio
import logging
import signal
import sys
from typing import List

import structlog

from docqueue.config import settings
from docqueue.database import SessionLocal, init_db
from docqueue.documents import DocumentStore
from docqueue.health_server import HealthServer
from docqueue.integrations import ClaudeClient, EmbeddingClient, S3Service
from docqueue.processors import (
    AnalysisProcessor,
    AuditReportProcessor,
    BulkUploadProcessor,
    ContentExtractionProcessor,
    DataCleanupProcessor,
    DataExportProcessor,
    EmbeddingGenerationProcessor,
)
from docqueue.scheduler import Scheduler

# Configure stdlib logging level (required for structlog.stdlib.filter_by_level)
logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.LOG_FORMAT == "json" else structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class EngineService:
    """Main service wiring the scheduler, processors and health server."""

    def __init__(self):
        self.scheduler = Scheduler(SessionLocal)
        self.health = HealthServer(
            status_callback=self.scheduler.get_status,
            lag_callback=self.scheduler.get_queue_lag,
            lag_sla_seconds=settings.QUEUE_LAG_SLA_SECONDS,
            port=settings.HEALTH_PORT,
        )
        self.running = False
        self.tasks: List[asyncio.Task] = []

    def _register_processors(self) -> None:
        """Register all job processors."""
        documents = DocumentStore(SessionLocal)
        s3 = S3Service()
        claude = ClaudeClient()
        embeddings = EmbeddingClient()

        processors = [
            ContentExtractionProcessor(documents, s3),
            AnalysisProcessor(documents, claude),
            EmbeddingGenerationProcessor(documents, embeddings, max_chars=settings.EMBEDDING_MAX_CHARS),
            BulkUploadProcessor(documents),
            DataExportProcessor(documents, s3),
            DataCleanupProcessor(documents, self.scheduler.jobs, s3),
            AuditReportProcessor(self.scheduler.organizations, s3),
        ]
        for processor in processors:
            self.scheduler.register_processor(processor.job_type, processor)

    async def start(self) -> None:
        """Start all engine components."""
        self.running = True
        logger.info("Starting job engine")

        init_db()
        self._register_processors()

        if settings.SCHEDULER_ENABLED:
            self.tasks.append(self.scheduler.start())
        else:
            logger.info("Scheduler disabled by configuration")

        if settings.HEALTH_SERVER_ENABLED:
            self.tasks.append(asyncio.create_task(self.health.run(), name="health"))

        logger.info(
            "Job engine started",
            components=[t.get_name() for t in self.tasks],
        )

        # Wait for all tasks
        try:
            await asyncio.gather(*self.tasks)
        except asyncio.CancelledError:
            logger.info("Tasks cancelled")

    async def stop(self) -> None:
        """Stop all components gracefully."""
        logger.info("Stopping job engine")
        self.running = False

        await asyncio.gather(
            self.scheduler.stop(),
            self.health.stop(),
        )

        # Cancel any remaining tasks
        for task in self.tasks:
            if not task.done():
                task.cancel()

        logger.info("Job engine stopped")


async def main() -> None:
    """Main entry point."""
    service = EngineService()

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        await service.start()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        await service.stop()
    except Exception as e:
        logger.error("Job engine error", error=str(e), exc_info=True)
        await service.stop()
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
