"""Embedding generation processor."""

import json
from typing import Dict, List

from docqueue.documents import DocumentStore
from docqueue.errors import JobEngineError
from docqueue.integrations.embeddings import EmbeddingClient
from docqueue.models import Job
from docqueue.payloads import EmbeddingGenerationPayload
from docqueue.processors.base import BaseProcessor, ProcessorResult


class EmbeddingGenerationProcessor(BaseProcessor):
    """Embeds a document's title, content, summary and key topics.

    One provider call per non-empty field. Documents that already have
    embeddings are skipped without any call.
    """

    job_type = "embedding_generation"
    payload_model = EmbeddingGenerationPayload
    consumes_provider_quota = True
    default_priority = 8

    def __init__(self, documents: DocumentStore, embeddings: EmbeddingClient, max_chars: int = 8000):
        super().__init__()
        self.documents = documents
        self.embeddings = embeddings
        self.max_chars = max_chars

    async def process(self, payload: EmbeddingGenerationPayload, job: Job) -> ProcessorResult:
        document = self.documents.require_document(payload.document_id)

        if document.embeddings_generated:
            self.logger.info("Embeddings already generated", document_id=document.id)
            return ProcessorResult(result={"document_id": document.id, "skipped": True})

        if not document.content:
            self.logger.info("No content to embed", document_id=document.id)
            return ProcessorResult(
                result={"document_id": document.id, "skipped": True, "note": "no content"}
            )

        sources = {
            "title": document.ai_concise_name or document.name,
            "content": document.content[: self.max_chars],
            "summary": document.ai_summary,
            "key_topics": ", ".join(document.key_topics),
        }

        vectors: Dict[str, List[float]] = {}
        calls = 0
        try:
            for purpose, text in sources.items():
                if not text or not text.strip():
                    continue
                vectors[purpose] = await self.embeddings.embed(text, purpose)
                calls += 1
        except JobEngineError as e:
            # Count calls that succeeded before the failure
            e.provider_calls = calls + getattr(e, "provider_calls", 0)
            raise

        self.documents.update_document(
            document.id,
            embeddings_generated=True,
            embeddings_generated_at=self.documents.clock(),
            **{f"{purpose}_embedding": json.dumps(vector) for purpose, vector in vectors.items()},
        )

        self.logger.info("Embeddings generated", document_id=document.id, fields=list(vectors))
        return ProcessorResult(
            result={"document_id": document.id, "fields": list(vectors), "skipped": False},
            provider_calls=calls,
        )
