"""Document records processed by the AI jobs."""

import uuid
from datetime import datetime, timedelta
from typing import Any, List, Optional

import structlog
from sqlalchemy import delete, select, update

from docqueue.database import SessionFactory, session_scope
from docqueue.errors import NotFoundError
from docqueue.models import Document
from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()


class DocumentStore:
    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def create_document(
        self,
        organization_id: str,
        name: str,
        user_id: Optional[str] = None,
        storage_key: Optional[str] = None,
        mime_type: Optional[str] = None,
        size_bytes: int = 0,
        content: Optional[str] = None,
    ) -> Document:
        now = self.clock()
        document = Document(
            id=uuid.uuid4().hex,
            organization_id=organization_id,
            user_id=user_id,
            name=name,
            storage_key=storage_key,
            mime_type=mime_type,
            size_bytes=size_bytes,
            status="active",
            content=content,
            content_extracted=content is not None,
            embeddings_generated=False,
            created_at=now,
            updated_at=now,
        )
        with session_scope(self.session_factory) as db:
            db.add(document)

        logger.info("Document created", document_id=document.id, organization_id=organization_id)
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        with session_scope(self.session_factory) as db:
            return db.get(Document, document_id)

    def require_document(self, document_id: str) -> Document:
        """Like get_document, but raise NotFoundError when missing."""
        document = self.get_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    def update_document(self, document_id: str, **fields: Any) -> None:
        fields["updated_at"] = self.clock()
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("Document", document_id)

    def list_documents(self, organization_id: str, include_trashed: bool = False) -> List[Document]:
        query = select(Document).where(Document.organization_id == organization_id)
        if not include_trashed:
            query = query.where(Document.status == "active")
        query = query.order_by(Document.created_at.asc(), Document.id.asc())

        with session_scope(self.session_factory) as db:
            return list(db.scalars(query))

    def trash_document(self, document_id: str) -> None:
        now = self.clock()
        self.update_document(document_id, status="trashed", trashed_at=now)

    def purge_trashed(self, organization_id: str, older_than_days: int = 30) -> List[Document]:
        """Delete documents trashed before the cutoff; returns what was removed."""
        cutoff: datetime = self.clock() - timedelta(days=older_than_days)
        condition = (
            (Document.organization_id == organization_id)
            & (Document.status == "trashed")
            & (Document.trashed_at < cutoff)
        )

        with session_scope(self.session_factory) as db:
            purged = list(db.scalars(select(Document).where(condition)))
            if purged:
                db.execute(delete(Document).where(condition).execution_options(synchronize_session=False))

        if purged:
            logger.info("Purged trashed documents", organization_id=organization_id, count=len(purged))
        return purged
