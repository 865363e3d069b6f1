"""Bulk upload processor: registers many uploaded files as documents."""

import math

from sqlalchemy.exc import SQLAlchemyError

from docqueue.documents import DocumentStore
from docqueue.errors import ProcessorError
from docqueue.models import Job
from docqueue.payloads import BulkUploadPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult

BYTES_PER_MB = 1024 * 1024


class BulkUploadProcessor(BaseProcessor):
    job_type = "bulk_upload"
    payload_model = BulkUploadPayload
    default_priority = 6

    def __init__(self, documents: DocumentStore):
        super().__init__()
        self.documents = documents

    async def process(self, payload: BulkUploadPayload, job: Job) -> ProcessorResult:
        successful = 0
        total_bytes = 0
        errors = []
        document_ids = []

        for upload in payload.files:
            try:
                document = self.documents.create_document(
                    organization_id=job.organization_id,
                    user_id=job.user_id,
                    name=upload.name,
                    storage_key=upload.storage_key,
                    mime_type=upload.mime_type,
                    size_bytes=upload.size_bytes,
                )
            except SQLAlchemyError as e:
                self.logger.warning("Bulk upload file failed", file=upload.name, error=str(e))
                errors.append({"file": upload.name, "error": str(e)})
                continue

            successful += 1
            total_bytes += upload.size_bytes
            document_ids.append(document.id)

            if payload.auto_extract:
                self.enqueue_next(
                    job,
                    "content_extraction",
                    {"document_id": document.id},
                    idempotency_key=f"content_extraction:{document.id}",
                )

        if successful == 0:
            raise ProcessorError(
                "Bulk upload failed for every file",
                details={"errors": errors},
            )

        self.logger.info(
            "Bulk upload processed",
            total=len(payload.files),
            successful=successful,
            failed=len(errors),
        )
        return ProcessorResult(
            result={
                "total": len(payload.files),
                "successful": successful,
                "failed": len(errors),
                "errors": errors,
                "document_ids": document_ids,
            },
            usage={
                "document_count": successful,
                "storage_used_mb": math.ceil(total_bytes / BYTES_PER_MB),
            },
        )
