"""Claude AI integration for document analysis.

The SDK's own retries are off; rate-limit responses surface as
ProviderRateLimitedError so the engine can back off per document.
"""

import json
import re
from dataclasses import dataclass, field
from string import Template
from typing import Any, Dict, List, Optional

import structlog
from anthropic import APIError, APIStatusError, AsyncAnthropic, RateLimitError

from docqueue.config import settings
from docqueue.errors import ProcessorError, ProviderRateLimitedError

logger = structlog.get_logger()

# 529 is Anthropic's "overloaded" status
RATE_LIMIT_STATUSES = {429, 529}

DOCUMENT_TYPES = [
    "Resume", "Cover Letter", "Contract", "Invoice", "Receipt", "Tax Document",
    "Medical Record", "Insurance Document", "Legal Document", "Immigration Document",
    "Financial Statement", "Employment Document", "Event Notice", "Academic Document",
    "Real Estate Document", "Travel Document", "Personal Statement",
    "Technical Documentation", "Business Report", "Other",
]

CATEGORIES = [
    "Taxes", "Medical", "Insurance", "Legal", "Immigration", "Financial",
    "Employment", "Education", "Real Estate", "Travel", "Personal", "Business",
]

MAX_KEY_TOPICS = 5
MAX_PROMPT_CHARS = 50_000

ANALYSIS_PROMPT = """Analyze this document and return structured metadata.

Rules:
1. summary: two or three sentences describing the document
2. key_topics: up to 5 of the most important topics, as an array of strings
3. document_type: EXACTLY one of: {document_types}
4. category: EXACTLY one of: {categories}
5. concise_name: a short descriptive title (max 8 words)
6. category_confidence and document_type_confidence: numbers between 0 and 1

Respond with JSON only:
{{
  "summary": "...",
  "key_topics": ["topic1", "topic2"],
  "document_type": "...",
  "category": "...",
  "concise_name": "...",
  "category_confidence": 0.9,
  "document_type_confidence": 0.9
}}

Document name: {name}

Document content:
{content}"""


def safe_template_substitute(template: str, **kwargs) -> str:
    """Substitute {name} placeholders without choking on braces in document text.

    ``{{`` and ``}}`` are kept as literal braces.
    """
    converted = template.replace("{{", "__DOUBLE_OPEN__").replace("}}", "__DOUBLE_CLOSE__")
    converted = converted.replace("$", "$$")
    converted = re.sub(r"\{(\w+)\}", r"${\1}", converted)
    converted = converted.replace("__DOUBLE_OPEN__", "{").replace("__DOUBLE_CLOSE__", "}")

    return Template(converted).safe_substitute(**kwargs)


@dataclass
class AnalysisResult:
    """Structured analysis of a document's content."""

    summary: str = ""
    key_topics: List[str] = field(default_factory=list)
    document_type: str = "Other"
    category: str = "Personal"
    concise_name: Optional[str] = None
    category_confidence: float = 0.0
    document_type_confidence: float = 0.0
    word_count: int = 0
    raw_response: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "key_topics": self.key_topics,
            "document_type": self.document_type,
            "category": self.category,
            "concise_name": self.concise_name,
            "category_confidence": self.category_confidence,
            "document_type_confidence": self.document_type_confidence,
            "word_count": self.word_count,
        }


class ClaudeClient:
    """Client for Claude AI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.client = client or AsyncAnthropic(
            api_key=api_key or settings.ANTHROPIC_API_KEY,
            max_retries=0,
            timeout=timeout or settings.CLAUDE_TIMEOUT,
        )
        self.model = model or settings.CLAUDE_MODEL
        self.max_tokens = max_tokens or settings.CLAUDE_MAX_TOKENS

    async def analyze_document(self, content: str, name: str = "") -> AnalysisResult:
        """Summarize and classify a document.

        Args:
            content: Extracted document text
            name: Document name, used as a hint

        Returns:
            AnalysisResult with summary, topics and classification

        Raises:
            ProviderRateLimitedError: On 429/529 responses
            ClaudeError: On any other API failure
        """
        word_count = len(content.split())
        logger.info("Analyzing document with Claude", chars=len(content), word_count=word_count)

        prompt = safe_template_substitute(
            ANALYSIS_PROMPT,
            document_types=", ".join(f'"{t}"' for t in DOCUMENT_TYPES),
            categories=", ".join(f'"{c}"' for c in CATEGORIES),
            name=name,
            content=content[:MAX_PROMPT_CHARS],
        )

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIError as e:
            raise classify_api_error(e, "Document analysis") from e

        raw_response = response.content[0].text
        result = self._parse_analysis_response(raw_response)
        result.word_count = word_count

        logger.info(
            "Document analysis complete",
            document_type=result.document_type,
            category=result.category,
            topics=len(result.key_topics),
        )
        return result

    def _parse_analysis_response(self, response: str) -> AnalysisResult:
        """Parse the analysis JSON, coercing values into the fixed taxonomy."""
        try:
            data = json.loads(self._extract_json(response))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Failed to parse analysis response", error=str(e))
            return AnalysisResult(
                summary="Unable to parse structured response",
                raw_response=response,
            )

        topics = data.get("key_topics") or data.get("keyTopics") or []
        if not isinstance(topics, list):
            topics = []

        document_type = data.get("document_type") or data.get("documentType")
        category = data.get("category")

        return AnalysisResult(
            summary=str(data.get("summary", "")),
            key_topics=[str(t) for t in topics][:MAX_KEY_TOPICS],
            document_type=document_type if document_type in DOCUMENT_TYPES else "Other",
            category=category if category in CATEGORIES else "Personal",
            concise_name=data.get("concise_name") or data.get("conciseName"),
            category_confidence=_confidence(data.get("category_confidence")),
            document_type_confidence=_confidence(data.get("document_type_confidence")),
            raw_response=response,
        )

    def _extract_json(self, text: str) -> str:
        """Extract JSON from a response that may contain other text."""
        start = text.find("{")
        end = text.rfind("}") + 1

        if start != -1 and end > start:
            return text[start:end]

        raise ValueError("No JSON found in response")


def _confidence(value: Any) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


def _retry_after(error: APIStatusError) -> Optional[float]:
    header = error.response.headers.get("retry-after") if error.response is not None else None
    try:
        return float(header) if header else None
    except ValueError:
        return None


def classify_api_error(error: APIError, operation: str) -> Exception:
    """Map an Anthropic SDK error onto the engine's error taxonomy."""
    if isinstance(error, RateLimitError) or (
        isinstance(error, APIStatusError) and error.status_code in RATE_LIMIT_STATUSES
    ):
        logger.warning("Claude rate limited", operation=operation, error=str(error))
        return ProviderRateLimitedError(
            f"{operation} rate limited: {error}",
            retry_after=_retry_after(error),
        )

    logger.error("Claude API error", operation=operation, error=str(error))
    # A status error means the request reached the provider and counted
    calls = 1 if isinstance(error, APIStatusError) else 0
    return ClaudeError(f"{operation} failed: {error}", provider_calls=calls)


class ClaudeError(ProcessorError):
    """Raised when Claude API calls fail."""

    pass
