"""Rate limited access to the language model used for riddles and judging."""

from __future__ import annotations

import asyncio
import os
from typing import Any, Mapping, Optional

import orjson
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI

from utils.errors import ExternalCallFailed
from utils.logging_config import get_logger
from utils.parsing import JUDGEMENT_PARSER, RIDDLE_PARSER
from utils.rate_limiter import RateLimiter

logger = get_logger("llm_client")

_DEFAULT_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Riddles should vary between rounds; verdicts must not.
RIDDLE_TEMPERATURE = 0.7
JUDGE_TEMPERATURE = 0.0

SYSTEM_INSTRUCTION = (
    "You are the host of a riddle game played in a Telegram group. "
    "Players speak Russian, so write riddles and feedback in Russian. "
    "You receive a JSON object with an \"action\" field and must reply with a strict JSON object "
    "only, without commentary and without code fences.\n"
    "For action \"new_riddle\" invent an original riddle of the requested category and difficulty "
    "whose answer is one or two words.\n"
    "For action \"check_answer\" decide whether user_answer means the same as correct_answer for "
    "riddle_text, accepting synonyms, inflected forms and minor typos.\n"
    "{format_instructions}"
)

_RIDDLE_PROMPT = ChatPromptTemplate.from_messages(
    [("system", SYSTEM_INSTRUCTION), ("human", "{payload}")]
).partial(format_instructions=RIDDLE_PARSER.get_format_instructions())

_JUDGEMENT_PROMPT = ChatPromptTemplate.from_messages(
    [("system", SYSTEM_INSTRUCTION), ("human", "{payload}")]
).partial(format_instructions=JUDGEMENT_PARSER.get_format_instructions())


def build_chat_model(
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    *,
    temperature: float = RIDDLE_TEMPERATURE,
) -> Optional[ChatOpenAI]:
    """Create the chat model, or ``None`` when no API key is configured."""

    api_key = api_key or os.getenv("OPENAI_API_KEY")
    if not api_key:
        logger.warning("OPENAI_API_KEY is not configured, language model features are disabled")
        return None
    return ChatOpenAI(api_key=api_key, model=model or _DEFAULT_MODEL, temperature=temperature)


def _encode_payload(payload: Mapping[str, Any]) -> str:
    return orjson.dumps(dict(payload)).decode("utf-8")


class LlmClient:
    """Send structured actions to the chat model through a shared rate limiter.

    Answers are judged with ``judge_llm`` when given (a deterministic model)
    and with ``llm`` otherwise. Blocking LangChain calls run in the default
    executor. Every failure is
    reported as :class:`ExternalCallFailed` or :class:`RateLimitExceeded`.
    """

    def __init__(self, llm: Any, rate_limiter: RateLimiter, judge_llm: Any = None) -> None:
        self._llm = llm
        self._judge_llm = judge_llm if judge_llm is not None else llm
        self.rate_limiter = rate_limiter

    async def _invoke(self, llm: Any, prompt: ChatPromptTemplate, payload: Mapping[str, Any]) -> str:
        await self.rate_limiter.acquire()
        messages = prompt.format_messages(payload=_encode_payload(payload))
        logger.debug("Sending %s action to the language model", payload.get("action"))
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, llm.invoke, messages)
        except Exception as exc:  # noqa: BLE001 - any transport failure is reported uniformly
            logger.warning("Language model call failed: %s", exc)
            raise ExternalCallFailed(f"Language model call failed: {exc}") from exc
        content = response.content if hasattr(response, "content") else response
        return content if isinstance(content, str) else str(content)

    async def new_riddle(self, category: str, difficulty: str) -> str:
        return await self._invoke(
            self._llm,
            _RIDDLE_PROMPT,
            {"action": "new_riddle", "category": category, "difficulty": difficulty},
        )

    async def check_answer(self, riddle_text: str, correct_answer: str, user_answer: str) -> str:
        return await self._invoke(
            self._judge_llm,
            _JUDGEMENT_PROMPT,
            {
                "action": "check_answer",
                "riddle_text": riddle_text,
                "correct_answer": correct_answer,
                "user_answer": user_answer,
            },
        )
