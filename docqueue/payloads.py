"""Typed job payloads, one model per job type.

Payloads accept camelCase or snake_case keys and are stored as snake_case JSON.
"""

from datetime import datetime
from typing import List, Literal, Optional

from humps import camelize
from pydantic import BaseModel, ConfigDict, Field, model_validator


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    return camelize(string)


class CamelModel(BaseModel):
    """
    Base model that accepts camelCase aliases as well as field names.

    Usage:
        class MyPayload(CamelModel):
            document_id: str  # JSON: documentId
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        extra="forbid",
    )


class DocumentPayload(CamelModel):
    """Payload for jobs that act on a single document."""

    document_id: str = Field(min_length=1)


class ContentExtractionPayload(DocumentPayload):
    auto_analyze: bool = True


class AnalysisPayload(DocumentPayload):
    force: bool = False


class EmbeddingGenerationPayload(DocumentPayload):
    pass


class UploadedFile(CamelModel):
    name: str = Field(min_length=1)
    storage_key: str = Field(min_length=1)
    mime_type: Optional[str] = None
    size_bytes: int = Field(default=0, ge=0)


class BulkUploadPayload(CamelModel):
    files: List[UploadedFile] = Field(min_length=1)
    auto_extract: bool = True


class DataExportPayload(CamelModel):
    format: Literal["json", "csv"] = "json"
    include_content: bool = False


class DataCleanupPayload(CamelModel):
    retention_days: int = Field(default=30, ge=1)
    purge_documents: bool = True
    purge_jobs: bool = True


class AuditReportPayload(CamelModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def check_range(self) -> "AuditReportPayload":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class EmptyPayload(CamelModel):
    """Payload for job types that take no arguments."""

    model_config = ConfigDict(extra="allow")
