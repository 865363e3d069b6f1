"""Data cleanup processor: purges old trashed documents and finished jobs."""

import math
from typing import Optional

from docqueue.documents import DocumentStore
from docqueue.integrations.s3 import S3Error, S3Service
from docqueue.models import Job
from docqueue.payloads import DataCleanupPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult
from docqueue.processors.bulk_upload import BYTES_PER_MB
from docqueue.queue_manager import JobStore


class DataCleanupProcessor(BaseProcessor):
    job_type = "data_cleanup"
    payload_model = DataCleanupPayload
    default_priority = 9

    def __init__(self, documents: DocumentStore, jobs: JobStore, s3: Optional[S3Service] = None):
        super().__init__()
        self.documents = documents
        self.jobs = jobs
        self.s3 = s3

    async def process(self, payload: DataCleanupPayload, job: Job) -> ProcessorResult:
        purged_documents = []
        if payload.purge_documents:
            purged_documents = self.documents.purge_trashed(
                job.organization_id, older_than_days=payload.retention_days
            )

        orphaned_files = 0
        if self.s3 is not None:
            for document in purged_documents:
                if not document.storage_key:
                    continue
                try:
                    await self.s3.delete(document.storage_key)
                except S3Error as e:
                    # Row is already gone; leave the object for a storage lifecycle rule
                    orphaned_files += 1
                    self.logger.warning(
                        "Stored file not deleted",
                        document_id=document.id,
                        error=e.message,
                    )

        cleared_jobs = 0
        if payload.purge_jobs:
            cleared_jobs = self.jobs.clear_finished(
                older_than_hours=payload.retention_days * 24,
                organization_id=job.organization_id,
            )

        freed_bytes = sum(doc.size_bytes or 0 for doc in purged_documents)
        usage = {}
        if purged_documents:
            usage = {
                "document_count": -len(purged_documents),
                "storage_used_mb": -math.floor(freed_bytes / BYTES_PER_MB),
            }

        self.logger.info(
            "Cleanup complete",
            organization_id=job.organization_id,
            documents=len(purged_documents),
            jobs=cleared_jobs,
        )
        return ProcessorResult(
            result={
                "documents_purged": len(purged_documents),
                "jobs_cleared": cleared_jobs,
                "orphaned_files": orphaned_files,
            },
            usage=usage,
        )
