"""Engine utilities."""

from .clock import Clock, utcnow
from .pdf_extractor import ExtractionError, extract_text_from_file

__all__ = ["Clock", "utcnow", "ExtractionError", "extract_text_from_file"]
