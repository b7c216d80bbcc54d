"""Answer correctness decisions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from utils.errors import LlmError
from utils.llm_client import LlmClient
from utils.logging_config import get_logger
from utils.parsing import parse_judgement

logger = get_logger("judge")

SOURCE_LLM = "llm"
SOURCE_EXACT = "exact"


@dataclass(frozen=True, slots=True)
class Judgement:
    correct: bool
    feedback: str = ""
    source: str = SOURCE_EXACT


def _normalise(text: str) -> str:
    return " ".join(text.split()).casefold()


def exact_match(submitted: str, reference: str) -> bool:
    """Case-insensitive comparison of trimmed strings."""

    return _normalise(submitted) == _normalise(reference)


class AnswerJudge:
    """Judge answers with the language model, falling back to :func:`exact_match`.

    Any :class:`LlmError` (rate limit, transport failure, off-schema reply) is
    recovered here and never reaches the caller.
    """

    def __init__(self, client: Optional[LlmClient] = None) -> None:
        self.client = client

    async def judge(self, question: str, reference_answer: str, submitted: str) -> Judgement:
        if self.client is not None:
            try:
                raw = await self.client.check_answer(question, reference_answer, submitted)
                payload = parse_judgement(raw)
            except LlmError as exc:
                logger.info("Falling back to exact match (%s): %s", exc.code, exc)
            else:
                logger.debug("Language model judged answer as correct=%s", payload.correct)
                return Judgement(correct=payload.correct, feedback=payload.feedback, source=SOURCE_LLM)

        return Judgement(correct=exact_match(submitted, reference_answer), source=SOURCE_EXACT)
