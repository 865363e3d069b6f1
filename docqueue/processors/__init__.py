"""Job processors.

1. ContentExtractionProcessor - Extracts text from stored files (no AI calls)
2. AnalysisProcessor - Summarizes and classifies content via Claude
3. EmbeddingGenerationProcessor - Embeds title, content, summary and topics
4. BulkUploadProcessor - Registers uploaded files and queues extraction
5. DataExportProcessor - Exports a tenant's documents to S3
6. DataCleanupProcessor - Purges old trashed documents and finished jobs
7. AuditReportProcessor - Summarizes the activity log to S3
"""

from .base import BaseProcessor, FunctionProcessor, ProcessorResult
from .content_extraction import ContentExtractionProcessor
from .analysis import AnalysisProcessor
from .embedding_generation import EmbeddingGenerationProcessor
from .bulk_upload import BulkUploadProcessor
from .data_export import DataExportProcessor
from .data_cleanup import DataCleanupProcessor
from .audit_report import AuditReportProcessor

__all__ = [
    "BaseProcessor",
    "FunctionProcessor",
    "ProcessorResult",
    "ContentExtractionProcessor",
    "AnalysisProcessor",
    "EmbeddingGenerationProcessor",
    "BulkUploadProcessor",
    "DataExportProcessor",
    "DataCleanupProcessor",
    "AuditReportProcessor",
]
