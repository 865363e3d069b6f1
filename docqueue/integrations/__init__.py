"""External service integrations."""

from .claude import AnalysisResult, ClaudeClient, ClaudeError
from .embeddings import EmbeddingClient, EmbeddingError
from .s3 import S3Error, S3Service

__all__ = [
    "AnalysisResult",
    "ClaudeClient",
    "ClaudeError",
    "EmbeddingClient",
    "EmbeddingError",
    "S3Error",
    "S3Service",
]
