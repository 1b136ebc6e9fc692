"""
OCR text cleanup via Bedrock.

Turns raw OCR lines into Markdown, proposes 4–6 topic tags and a logical
file path. How aggressively the model may correct words depends on the
OCR confidence:

    ≥ 90   liberal       fix spelling and grammar normally
    80–89  conservative  fix clear errors only, no rewording
    < 80   minimal       formatting only, keep unclear words as-is / [bracketed]
"""

from __future__ import annotations

import logging

from langchain_core.language_models.chat_models import BaseChatModel

from ascribe.core.config import Settings
from ascribe.core.errors import PreconditionError, ResponseParseError
from ascribe.llm.bedrock import build_chat_model, invoke_text
from ascribe.llm.parsing import CleanupResult, parse_cleanup_response

logger = logging.getLogger(__name__)

LIBERAL_THRESHOLD      = 90.0
CONSERVATIVE_THRESHOLD = 80.0

SYSTEM_PROMPT = (
    "You help students organize digitized notes produced by OCR. "
    "You only clean and organize what is present; you never invent content. "
    "You always answer with a single JSON object and nothing else."
)

_LIBERAL = (
    "HIGH confidence. Clean freely: fix spelling, grammar and punctuation normally."
)
_CONSERVATIVE = (
    "MODERATE confidence. Fix clear spelling errors only. Do not reword or "
    "interpret ambiguous phrases."
)
_MINIMAL = (
    "LOW confidence. Make minimal changes: fix formatting only. Keep uncertain "
    "words exactly as they are or mark them in [brackets]. Make no assumptions "
    "about unclear text."
)


def correction_guidance(average_confidence: float) -> str:
    if average_confidence >= LIBERAL_THRESHOLD:
        return _LIBERAL
    if average_confidence >= CONSERVATIVE_THRESHOLD:
        return _CONSERVATIVE
    return _MINIMAL


def build_cleanup_prompt(raw_text: str, existing_file_paths: list[str], average_confidence: float) -> str:
    paths = "\n".join(f"- {p}" for p in existing_file_paths) or "- (none yet)"
    return f"""Given raw OCR text extracted from a document:

1. Fix formatting and organize the content into clean, readable Markdown.
2. Preserve the original layout as much as possible.
3. Apply corrections according to this rule:
   {correction_guidance(average_confidence)}
4. Generate 4-6 topic tags describing the subject, topic and document type
   (e.g. biology, photosynthesis, review).
5. Suggest a file path of the form subject/topic/name.
   - If the content fits one of the existing paths below, reuse that path exactly.
   - Only create a new, concise path when none of them fits.

Return ONLY this JSON object:

{{
  "cleanedText": "<cleaned Markdown content>",
  "tags": ["tag1", "tag2", "tag3", "tag4"],
  "suggestedFilePath": "subject/topic/name"
}}

Existing file paths:
{paths}

Average OCR confidence: {average_confidence:.1f}%

Raw text:
\"\"\"
{raw_text}
\"\"\"
"""


class TextCleanupClient:
    def __init__(self, settings: Settings, model: BaseChatModel | None = None) -> None:
        self._settings = settings
        self._model = model

    @property
    def model(self) -> BaseChatModel:
        if self._model is None:
            self._model = build_chat_model(
                self._settings,
                temperature=self._settings.cleanup_temperature,
                max_tokens=self._settings.cleanup_max_tokens,
            )
        return self._model

    async def clean(
        self,
        raw_text: str,
        existing_file_paths: list[str],
        average_confidence: float,
    ) -> CleanupResult:
        """
        Raises:
            PreconditionError:   ``raw_text`` is blank (no call is made).
            LLMUnavailableError: Bedrock could not be reached / errored.
            ResponseParseError:  Bedrock answered without a decodable JSON object.
        """
        if not raw_text or not raw_text.strip():
            raise PreconditionError("Extracted text is empty; nothing to clean.", field="raw_text")

        prompt = build_cleanup_prompt(raw_text, existing_file_paths, average_confidence)
        reply = await invoke_text(
            self.model,
            SYSTEM_PROMPT,
            prompt,
            operation="cleanup",
            model_id=self._settings.bedrock_model_id,
        )

        try:
            result = parse_cleanup_response(reply)
        except ResponseParseError:
            logger.error("Cleanup response unparsable | preview=%r", reply[:200])
            raise

        logger.info(
            "Cleanup ok | confidence=%.1f tags=%d path=%s chars=%d",
            average_confidence, len(result.tags), result.suggested_file_path, len(result.cleaned_text),
        )
        return result
