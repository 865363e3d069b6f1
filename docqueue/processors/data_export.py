"""Data export processor: writes a tenant's documents to S3 as JSON or CSV."""

import csv
import io
import json
from typing import Any, Dict, List

from docqueue.documents import DocumentStore
from docqueue.integrations.s3 import S3Service
from docqueue.models import Document, Job
from docqueue.payloads import DataExportPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult

EXPORT_FIELDS = [
    "id",
    "name",
    "mime_type",
    "size_bytes",
    "ai_summary",
    "ai_key_topics",
    "ai_document_type",
    "ai_category",
    "created_at",
    "updated_at",
]


class DataExportProcessor(BaseProcessor):
    job_type = "data_export"
    payload_model = DataExportPayload
    default_priority = 7

    def __init__(self, documents: DocumentStore, s3: S3Service):
        super().__init__()
        self.documents = documents
        self.s3 = s3

    async def process(self, payload: DataExportPayload, job: Job) -> ProcessorResult:
        documents = self.documents.list_documents(job.organization_id)
        fields = EXPORT_FIELDS + (["content"] if payload.include_content else [])
        records = [_record(doc, fields) for doc in documents]

        if payload.format == "csv":
            content = _to_csv(records, fields)
        else:
            content = json.dumps(
                {"organization_id": job.organization_id, "documents": records},
                default=str,
                indent=2,
            ).encode("utf-8")

        key = await self.s3.upload_export(
            job.organization_id,
            content,
            payload.format,
            generated_at=self.documents.clock(),
        )

        self.logger.info(
            "Export written",
            organization_id=job.organization_id,
            records=len(records),
            key=key,
        )
        return ProcessorResult(
            result={"key": key, "format": payload.format, "records": len(records)},
            usage={"exports_this_month": 1},
        )


def _record(document: Document, fields: List[str]) -> Dict[str, Any]:
    record = {name: getattr(document, name) for name in fields}
    record["ai_key_topics"] = document.key_topics
    return record


def _to_csv(records: List[Dict[str, Any]], fields: List[str]) -> bytes:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fields)
    writer.writeheader()
    for record in records:
        row = dict(record)
        row["ai_key_topics"] = "; ".join(record["ai_key_topics"])
        writer.writerow(row)
    return buffer.getvalue().encode("utf-8")
