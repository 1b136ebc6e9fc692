"""
Bedrock chat model construction and invocation.

One place builds the LangChain ChatBedrock object and one place calls it,
so transport failures are translated to LLMUnavailableError uniformly.
"""

from __future__ import annotations

import logging
import time

from botocore.exceptions import BotoCoreError, ClientError
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from ascribe.core.config import Settings
from ascribe.core.errors import LLMUnavailableError

logger = logging.getLogger(__name__)


def build_chat_model(settings: Settings, temperature: float, max_tokens: int) -> BaseChatModel:
    from langchain_aws import ChatBedrock
    return ChatBedrock(
        model_id=settings.bedrock_model_id,
        region_name=settings.aws_region,
        model_kwargs={
            "temperature": temperature,
            "max_tokens":  max_tokens,
        },
    )


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "\n".join(parts)


async def invoke_text(
    model: BaseChatModel,
    system_prompt: str,
    user_prompt: str,
    operation: str,
    model_id: str,
) -> str:
    """Send one [SystemMessage, HumanMessage] exchange and return the reply text."""
    messages = [
        SystemMessage(content=system_prompt),
        HumanMessage(content=user_prompt),
    ]
    t0 = time.monotonic()
    try:
        response = await model.ainvoke(messages)
    except (ClientError, BotoCoreError, ValueError) as exc:
        raise LLMUnavailableError(operation, model_id, exc) from exc

    text = _content_text(response.content)
    logger.info(
        "Bedrock call ok | op=%s model=%s chars=%d elapsed_ms=%.0f",
        operation, model_id, len(text), (time.monotonic() - t0) * 1000,
    )
    return text
