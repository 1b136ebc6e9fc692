"""Quiz question generation via Bedrock."""

from __future__ import annotations

import logging

from langchain_core.language_models.chat_models import BaseChatModel

from ascribe.core.config import Settings
from ascribe.core.errors import PreconditionError
from ascribe.llm.bedrock import build_chat_model, invoke_text
from ascribe.llm.parsing import GeneratedQuestion, parse_questions_response

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert educational content generator. "
    "You answer with a JSON array only, with no commentary."
)


def build_questions_prompt(text: str, num_questions: int) -> str:
    return f"""Create exactly {num_questions} multiple choice questions about the text below.

Requirements:
1. Return ONLY a JSON array of question objects.
2. Each object has this structure:
   {{"tags": ["tag1", "tag2"], "question": "What is...?", "answer": "Correct answer",
     "choices": ["Option 1", "Option 2", "Correct answer", "Option 3"]}}
3. The answer must appear verbatim in choices.
4. All values are strings.
5. Cover different parts of the text; do not repeat questions or answers.
6. Keep questions clear, concise and relevant.

Text:
\"\"\"
{text}
\"\"\"
"""


class QuestionGenerator:
    def __init__(self, settings: Settings, model: BaseChatModel | None = None) -> None:
        self._settings = settings
        self._model = model

    @property
    def model(self) -> BaseChatModel:
        if self._model is None:
            self._model = build_chat_model(
                self._settings,
                temperature=self._settings.questions_temperature,
                max_tokens=self._settings.questions_max_tokens,
            )
        return self._model

    async def generate(self, text: str, num_questions: int) -> list[GeneratedQuestion]:
        if not text or not text.strip():
            raise PreconditionError("Text is empty; cannot generate questions.", field="text")
        if num_questions < 1:
            raise PreconditionError("num_questions must be positive.", field="numQuestions")

        reply = await invoke_text(
            self.model,
            SYSTEM_PROMPT,
            build_questions_prompt(text, num_questions),
            operation="generate_questions",
            model_id=self._settings.bedrock_model_id,
        )
        questions = parse_questions_response(reply)[:num_questions]
        if len(questions) < num_questions:
            logger.warning("Model returned fewer valid questions | requested=%d got=%d", num_questions, len(questions))
        return questions
