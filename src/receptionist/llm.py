"""
OpenAI chat wrapper used for intent classification and short small-talk replies.

Every call is a single request/response exchange. Failures are logged and
surface as an empty string so callers can degrade instead of faulting the call.
"""

import re
import time
from typing import Any, Optional

import structlog
from openai import AsyncOpenAI, OpenAIError

from src.receptionist.config import get_config

logger = structlog.get_logger(__name__)

SMALLTALK_MAX_WORDS = 12
SMALLTALK_FALLBACK = "Okay."

SMALLTALK_PROMPT = """You are the receptionist at {shop_name}, a barbershop, on a phone call.
The caller just said something off-topic while booking an appointment.
Reply with ONE short, warm acknowledgement of at most {max_words} words.
Never ask a question. Never mention booking details. Plain spoken English only."""


class LLMClient:
    """
    Thin async client around the OpenAI chat completions API.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key)

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        json_mode: bool = False,
        max_tokens: int = 256,
    ) -> str:
        """
        Run one chat completion and return the stripped reply text.

        Returns an empty string on any API failure.
        """
        start_time = time.time()
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                temperature=self.config.openai_temperature,
                max_tokens=max_tokens,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                **kwargs,
            )
        except OpenAIError as e:
            logger.error("LLM request failed", error_type=type(e).__name__, error=str(e))
            return ""

        content = ""
        if resp.choices:
            content = resp.choices[0].message.content or ""

        logger.debug(
            "LLM completed",
            json_mode=json_mode,
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return content.strip()

    async def smalltalk_reply(self, transcript: str) -> str:
        """One short, non-question acknowledgement for off-topic speech."""
        prompt = SMALLTALK_PROMPT.format(
            shop_name=self.config.shop_name,
            max_words=SMALLTALK_MAX_WORDS,
        )
        reply = await self.complete(prompt, transcript, max_tokens=40)
        return clean_acknowledgement(reply)


def clean_acknowledgement(text: str, max_words: int = SMALLTALK_MAX_WORDS) -> str:
    """
    Force a model reply into a short statement.

    Drops any sentence that is a question and caps the word count.
    """
    sentences = re.split(r"(?<=[.!?])\s+", (text or "").strip())
    kept = [s for s in sentences if s and not s.rstrip().endswith("?")]
    words = " ".join(kept).split()
    if not words:
        return SMALLTALK_FALLBACK

    words = words[:max_words]
    reply = " ".join(words).rstrip(",;:-")
    if not reply:
        return SMALLTALK_FALLBACK
    if reply[-1] not in ".!":
        reply += "."
    return reply
