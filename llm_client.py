"""OpenAI chat client used as the alternative enrichment backend."""

from __future__ import annotations

import logging
import os

from openai import OpenAI

from models import ChatReply

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.1"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60"))

LOGGER = logging.getLogger(__name__)


def openai_chat(messages: list[dict[str, str]], max_tokens: int = 1024) -> ChatReply:
    """Call OpenAI Chat Completions in JSON mode and return text plus token usage."""
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is required")

    client = OpenAI(api_key=api_key, timeout=REQUEST_TIMEOUT_SECONDS, max_retries=0)

    LOGGER.debug("Calling OpenAI model=%s max_tokens=%s", OPENAI_MODEL, max_tokens)
    response = client.chat.completions.create(
        model=OPENAI_MODEL,
        temperature=OPENAI_TEMPERATURE,
        max_completion_tokens=max_tokens,
        response_format={"type": "json_object"},
        messages=messages,
    )

    content = response.choices[0].message.content
    if not content:
        raise RuntimeError("OpenAI returned an empty response")

    usage = getattr(response, "usage", None)
    tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage is not None else 0
    return ChatReply(text=content, tokens_used=tokens)
