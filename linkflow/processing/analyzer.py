"""AI analysis of extracted content, plus the fallback used when it is unavailable."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from linkflow.jobs.models import (
    AIAnalysis,
    CategoryGuess,
    ContentTypeGuess,
    Keywords,
    LanguageGuess,
    ProcessingItem,
    ProcessingSettings,
    QualityScore,
    Sentiment,
    SummaryBlock,
    TagGuess,
)

logger = logging.getLogger(__name__)

MAX_PROMPT_TEXT = 2000


class AnalysisError(Exception):
    pass


class AnalysisInput(BaseModel):
    url: str
    title: str = ""
    description: str = ""
    text_content: str = ""

    def is_empty(self) -> bool:
        return not (self.title or self.text_content)


class ContentAnalyzer(ABC):
    @abstractmethod
    async def analyze_content(self, content: AnalysisInput, settings: ProcessingSettings) -> AIAnalysis:
        """Return a full analysis or raise AnalysisError."""
        ...


RESPONSE_SHAPE = """{
  "category": {"name": "string", "confidence": 0-1, "reasoning": "string"},
  "tags": [{"name": "string", "confidence": 0-1, "reasoning": "string"}],
  "summary": {"text": "string", "key_points": ["string"], "confidence": 0-1},
  "language": {"detected": "ISO 639-1 code", "confidence": 0-1},
  "quality_score": {"score": 0-100, "factors": {"content_depth": 0-1, "readability": 0-1, "authority": 0-1, "freshness": 0-1}, "reasoning": "string"},
  "sentiment": {"score": -1 to 1, "label": "positive|negative|neutral", "confidence": 0-1},
  "keywords": {"primary": ["string"], "secondary": ["string"], "entities": ["string"]},
  "content_type": {"type": "article|tutorial|documentation|news|blog|reference|other", "confidence": 0-1}
}"""


def build_prompt(content: AnalysisInput, settings: ProcessingSettings) -> str:
    prompts = settings.custom_prompts
    guidance = [p for p in (prompts.categorization, prompts.tagging, prompts.summary) if p]
    lines = [
        "Analyze the following web content.",
        "",
        f"URL: {content.url}",
        f"Title: {content.title}",
        f"Description: {content.description}",
        f"Content: {content.text_content[:MAX_PROMPT_TEXT]}",
        "",
        f"Provide a single category, up to {settings.max_tags} tags, a summary of at most "
        f"{settings.max_summary_length} characters written in '{settings.language_preference}', "
        "the detected language, a quality score, sentiment, keywords and a content type.",
    ]
    if guidance:
        lines += ["", "Additional instructions:"] + [f"- {g}" for g in guidance]
    lines += ["", "Respond with JSON only, in this shape:", RESPONSE_SHAPE]
    return "\n".join(lines)


class OpenAIContentAnalyzer(ContentAnalyzer):
    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini", client: Optional[AsyncOpenAI] = None):
        self._client = client or AsyncOpenAI(api_key=api_key)
        self._model = model

    async def analyze_content(self, content: AnalysisInput, settings: ProcessingSettings) -> AIAnalysis:
        logger.debug("Requesting %s analysis for %s", self._model, content.url)
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": build_prompt(content, settings)}],
                temperature=0.3,
                max_tokens=1500,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise AnalysisError(f"AI request failed: {exc}") from exc

        raw = response.choices[0].message.content if response.choices else None
        if not raw:
            raise AnalysisError("No response from AI")
        try:
            return AIAnalysis.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            raise AnalysisError(f"Unparseable AI response: {exc}") from exc


def fallback_analysis(item: ProcessingItem) -> AIAnalysis:
    """Low-confidence analysis built from whatever the caller sent with the link."""
    if item.existing_category:
        category = CategoryGuess(name=item.existing_category, confidence=1.0, reasoning="Provided with the link")
    else:
        category = CategoryGuess(name="General", confidence=0.1, reasoning="Fallback due to AI failure")

    if item.existing_tags:
        tags = [TagGuess(name=t, confidence=1.0, reasoning="Provided with the link") for t in item.existing_tags]
    else:
        tags = [TagGuess(name="unprocessed", confidence=0.1, reasoning="Fallback tag")]

    return AIAnalysis(
        category=category,
        tags=tags,
        summary=SummaryBlock(text=item.description or "Content analysis failed", confidence=0.1),
        language=LanguageGuess(detected="en", confidence=0.5),
        quality_score=QualityScore(score=50, reasoning="Default score"),
        sentiment=Sentiment(score=0.0, label="neutral", confidence=0.5),
        keywords=Keywords(),
        content_type=ContentTypeGuess(type="other", confidence=0.1),
        fallback=True,
    )


def apply_settings(analysis: AIAnalysis, settings: ProcessingSettings) -> AIAnalysis:
    """Drop disabled sections, filter tags by confidence and cap tags and summary length.

    Fallback analyses are not confidence-filtered; their scores are placeholders.
    """
    analysis = analysis.model_copy(deep=True)
    if not settings.auto_categorize:
        analysis.category = None
    if not settings.auto_tag:
        analysis.tags = []
    else:
        if not analysis.fallback:
            analysis.tags = [t for t in analysis.tags if t.confidence >= settings.confidence_threshold]
        analysis.tags = analysis.tags[: settings.max_tags]
    if not settings.generate_summary:
        analysis.summary = None
    elif analysis.summary and len(analysis.summary.text) > settings.max_summary_length:
        analysis.summary.text = analysis.summary.text[: settings.max_summary_length].rstrip()
    if not settings.detect_language:
        analysis.language = None
    if not settings.quality_score:
        analysis.quality_score = None
    if not settings.sentiment_analysis:
        analysis.sentiment = None
    if not settings.keyword_extraction:
        analysis.keywords = None
    return analysis
