"""Content extraction processor: stored file bytes to document text."""

import asyncio
from concurrent.futures import Executor, ProcessPoolExecutor
from functools import partial
from typing import Optional

from docqueue.documents import DocumentStore
from docqueue.errors import ProcessorError
from docqueue.integrations.s3 import S3Service
from docqueue.models import Job
from docqueue.payloads import ContentExtractionPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult
from docqueue.utils.pdf_extractor import extract_text_from_file

# Process pool for CPU-bound text extraction
_process_pool: Optional[ProcessPoolExecutor] = None


def _get_process_pool() -> ProcessPoolExecutor:
    """Get or create the process pool for CPU-bound tasks."""
    global _process_pool
    if _process_pool is None:
        _process_pool = ProcessPoolExecutor(max_workers=2)
    return _process_pool


class ContentExtractionProcessor(BaseProcessor):
    """Downloads a document and extracts its text. Makes no AI calls."""

    job_type = "content_extraction"
    payload_model = ContentExtractionPayload
    consumes_provider_quota = False
    default_priority = 3

    def __init__(
        self,
        documents: DocumentStore,
        s3: S3Service,
        executor: Optional[Executor] = None,
    ):
        super().__init__()
        self.documents = documents
        self.s3 = s3
        self.executor = executor

    async def process(self, payload: ContentExtractionPayload, job: Job) -> ProcessorResult:
        document = self.documents.require_document(payload.document_id)

        if document.content_extracted:
            self.logger.info("Content already extracted", document_id=document.id)
            if document.content:
                self._chain_analysis(job, payload)
            return ProcessorResult(result={"document_id": document.id, "skipped": True})

        if not document.storage_key:
            raise ProcessorError(
                f"Document {document.id} has no stored file",
                details={"document_id": document.id},
            )

        raw = await self.s3.download(document.storage_key)

        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(
            self.executor or _get_process_pool(),
            partial(extract_text_from_file, raw, document.name, document.mime_type),
        )
        text = text.strip()

        self.documents.update_document(document.id, content=text, content_extracted=True)
        self.logger.info("Content extracted", document_id=document.id, chars=len(text))

        if text:
            self._chain_analysis(job, payload)

        return ProcessorResult(
            result={"document_id": document.id, "chars": len(text), "skipped": False}
        )

    def _chain_analysis(self, job: Job, payload: ContentExtractionPayload) -> None:
        if not payload.auto_analyze:
            return
        self.enqueue_next(
            job,
            "analysis",
            {"document_id": payload.document_id},
            idempotency_key=f"analysis:{payload.document_id}",
        )
