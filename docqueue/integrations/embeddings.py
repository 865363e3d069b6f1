"""Embedding generation via the OpenAI embeddings API."""

from typing import List, Optional

import structlog
from openai import APIError, APIStatusError, AsyncOpenAI, RateLimitError

from docqueue.config import settings
from docqueue.errors import ProcessorError, ProviderRateLimitedError

logger = structlog.get_logger()

# title, content, summary, key_topics
PURPOSES = ("title", "content", "summary", "key_topics")


class EmbeddingClient:
    """Thin wrapper that turns text into a vector and classifies failures."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENAI_API_KEY,
            max_retries=0,
            timeout=timeout or settings.EMBEDDING_TIMEOUT,
        )
        self.model = model or settings.EMBEDDING_MODEL

    async def embed(self, text: str, purpose: str = "content") -> List[float]:
        """Generate an embedding for one piece of text.

        Raises:
            ProviderRateLimitedError: On 429 responses
            EmbeddingError: On any other API failure
        """
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown embedding purpose: {purpose}")

        try:
            response = await self.client.embeddings.create(model=self.model, input=text)
        except RateLimitError as e:
            logger.warning("Embedding rate limited", purpose=purpose, error=str(e))
            raise ProviderRateLimitedError(f"Embedding rate limited: {e}") from e
        except APIError as e:
            logger.error("Embedding API error", purpose=purpose, error=str(e))
            calls = 1 if isinstance(e, APIStatusError) else 0
            raise EmbeddingError(f"Embedding failed: {e}", provider_calls=calls) from e

        vector = response.data[0].embedding
        logger.debug("Embedding generated", purpose=purpose, dimensions=len(vector))
        return vector


class EmbeddingError(ProcessorError):
    """Raised when embedding generation fails."""

    pass
