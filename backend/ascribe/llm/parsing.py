"""
Model response parsing.

Models wrap the JSON they were asked for in prose, code fences or a
trailing sign-off. The helpers here cut out the outermost JSON span
(first opening bracket → last closing bracket), decode only that, and
return typed results. Anything that cannot be decoded raises
ResponseParseError, never a bare json.JSONDecodeError, so callers can
tell "model answered nonsense" apart from "model unreachable".
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ascribe.core.errors import ResponseParseError

_PREVIEW_CHARS = 300


def _span(raw: str, opening: str, closing: str) -> str:
    start = raw.find(opening)
    end = raw.rfind(closing)
    if start == -1 or end == -1 or end < start:
        raise ResponseParseError(
            f"No JSON {'object' if opening == '{' else 'array'} found in model response.",
            raw=raw[:_PREVIEW_CHARS],
        )
    return raw[start:end + 1]


def extract_json_object(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(_span(raw or "", "{", "}"))
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"Model response is not valid JSON: {exc.msg}", raw=raw[:_PREVIEW_CHARS]) from exc
    if not isinstance(value, dict):
        raise ResponseParseError("Expected a JSON object.", raw=raw[:_PREVIEW_CHARS])
    return value


def extract_json_array(raw: str) -> list[Any]:
    try:
        value = json.loads(_span(raw or "", "[", "]"))
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"Model response is not valid JSON: {exc.msg}", raw=raw[:_PREVIEW_CHARS]) from exc
    if not isinstance(value, list):
        raise ResponseParseError("Expected a JSON array.", raw=raw[:_PREVIEW_CHARS])
    return value


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    seen: list[str] = []
    for item in value:
        if isinstance(item, (str, int, float)) and not isinstance(item, bool):
            text = str(item).strip()
            if text and text not in seen:
                seen.append(text)
    return seen


def _string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# Cleanup response
# ---------------------------------------------------------------------------

@dataclass
class CleanupResult:
    cleaned_text:        str = ""
    tags:                list[str] = field(default_factory=list)
    suggested_file_path: str = ""


def parse_cleanup_response(raw: str) -> CleanupResult:
    """Missing or mistyped fields fall back to "" / []."""
    data = extract_json_object(raw)
    return CleanupResult(
        cleaned_text=_string(data.get("cleanedText")),
        tags=_string_list(data.get("tags")),
        suggested_file_path=_string(data.get("suggestedFilePath")).strip("/"),
    )


# ---------------------------------------------------------------------------
# Questions response
# ---------------------------------------------------------------------------

@dataclass
class GeneratedQuestion:
    question: str
    answer:   str
    choices:  list[str] = field(default_factory=list)
    tags:     list[str] = field(default_factory=list)


def parse_questions_response(raw: str) -> list[GeneratedQuestion]:
    """
    Keep items that have a question and an answer. Multiple-choice items
    need at least two choices including the answer; items with no choices
    are kept as free-response.
    """
    items = extract_json_array(raw)
    questions: list[GeneratedQuestion] = []

    for item in items:
        if not isinstance(item, dict):
            continue
        question = _string(item.get("question"))
        answer = _string(item.get("answer"))
        raw_choices = item.get("choices")
        choices = [str(c).strip() for c in raw_choices if str(c).strip()] if isinstance(raw_choices, list) else []

        if not question or not answer:
            continue
        if choices and (len(choices) < 2 or answer not in choices):
            continue

        questions.append(GeneratedQuestion(
            question=question,
            answer=answer,
            choices=choices,
            tags=_string_list(item.get("tags")),
        ))

    if not questions:
        raise ResponseParseError("Model response contained no valid questions.", raw=raw[:_PREVIEW_CHARS])
    return questions
