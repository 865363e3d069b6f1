"""Analysis processor: summarizes and classifies document content with Claude."""

import json

from docqueue.documents import DocumentStore
from docqueue.errors import NotFoundError, ProcessorError
from docqueue.integrations.claude import ClaudeClient
from docqueue.models import Job
from docqueue.payloads import AnalysisPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult

EMBEDDING_PRIORITY = 8


class AnalysisProcessor(BaseProcessor):
    """Runs one Claude analysis per document and chains embedding generation."""

    job_type = "analysis"
    payload_model = AnalysisPayload
    consumes_provider_quota = True
    default_priority = 5

    def __init__(self, documents: DocumentStore, claude: ClaudeClient):
        super().__init__()
        self.documents = documents
        self.claude = claude

    async def process(self, payload: AnalysisPayload, job: Job) -> ProcessorResult:
        document = self.documents.require_document(payload.document_id)

        if document.ai_analyzed_at is not None and not payload.force:
            self.logger.info("Document already analyzed", document_id=document.id)
            if not document.embeddings_generated:
                self._chain_embeddings(job, document.id)
            return ProcessorResult(result={"document_id": document.id, "skipped": True})

        if not document.content or not document.content.strip():
            raise ProcessorError(
                f"Document {document.id} has no extracted content",
                details={"document_id": document.id},
            )

        self.logger.info("Starting document analysis", document_id=document.id)
        analysis = await self.claude.analyze_document(document.content, name=document.name)

        try:
            self.documents.update_document(
                document.id,
                ai_summary=analysis.summary,
                ai_key_topics=json.dumps(analysis.key_topics),
                ai_document_type=analysis.document_type,
                ai_category=analysis.category,
                ai_concise_name=analysis.concise_name,
                ai_category_confidence=analysis.category_confidence,
                ai_document_type_confidence=analysis.document_type_confidence,
                ai_word_count=analysis.word_count,
                ai_analyzed_at=self.documents.clock(),
            )
        except NotFoundError as e:
            # Document deleted mid-analysis; the provider call still happened
            e.provider_calls = 1
            raise

        if not document.embeddings_generated:
            self._chain_embeddings(job, document.id)

        return ProcessorResult(
            result={"document_id": document.id, **analysis.to_dict()},
            provider_calls=1,
            usage={"ai_analyses_this_month": 1},
        )

    def _chain_embeddings(self, job: Job, document_id: str) -> None:
        self.enqueue_next(
            job,
            "embedding_generation",
            {"document_id": document_id},
            priority=EMBEDDING_PRIORITY,
            idempotency_key=f"embedding_generation:{document_id}",
        )
