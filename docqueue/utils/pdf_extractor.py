"""Text extraction for uploaded documents (PDF, DOCX and plain-text formats)."""

import io
from typing import Optional

import structlog

from docqueue.errors import ProcessorError

logger = structlog.get_logger()

PDF_TYPES = {"application/pdf"}
WORD_TYPES = {
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
TEXT_TYPES = {"text/plain", "text/csv", "text/markdown", "application/json", "application/rtf"}
TEXT_EXTENSIONS = {"txt", "csv", "md", "json", "log"}


class ExtractionError(ProcessorError):
    """Raised when text extraction fails."""

    pass


def extract_text_from_file(
    content: bytes,
    filename: str,
    content_type: Optional[str] = None,
) -> str:
    """Extract text content from a stored document.

    Runs inside a process pool, so it must stay a module-level function.

    Args:
        content: File content as bytes
        filename: Original filename (for extension detection)
        content_type: MIME type (optional)

    Returns:
        Extracted text content

    Raises:
        ExtractionError: If the format is unsupported or parsing fails
    """
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""

    if content_type in PDF_TYPES or ext == "pdf":
        return _extract_from_pdf(content)
    if content_type in WORD_TYPES or ext == "docx":
        return _extract_from_docx(content)
    if content_type in TEXT_TYPES or ext in TEXT_EXTENSIONS:
        return content.decode("utf-8", errors="ignore")

    raise ExtractionError(
        f"Unsupported document type for {filename} ({content_type or 'unknown'})"
    )


def _extract_from_pdf(content: bytes) -> str:
    """Extract text from a PDF file."""
    try:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(content))
        pages = [page.extract_text() or "" for page in reader.pages]
        text = "\n\n".join(p for p in pages if p)

        logger.info("PDF text extracted", pages=len(reader.pages), chars=len(text))
        return text

    except Exception as e:
        logger.error("PDF extraction failed", error=str(e))
        raise ExtractionError(f"PDF extraction failed: {str(e)}") from e


def _extract_from_docx(content: bytes) -> str:
    """Extract text from a DOCX file, including table cells."""
    try:
        from docx import Document

        doc = Document(io.BytesIO(content))
        parts = [para.text for para in doc.paragraphs if para.text.strip()]

        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))

        text = "\n\n".join(parts)

        logger.info("DOCX text extracted", paragraphs=len(doc.paragraphs), chars=len(text))
        return text

    except Exception as e:
        logger.error("DOCX extraction failed", error=str(e))
        raise ExtractionError(f"DOCX extraction failed: {str(e)}") from e
