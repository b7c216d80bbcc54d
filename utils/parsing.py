"""Parsers for language model replies."""

from __future__ import annotations

import re
from dataclasses import dataclass

import orjson
from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import PydanticOutputParser
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError

from utils.errors import MalformedResponse
from utils.logging_config import get_logger

logger = get_logger("parsing")

__all__ = [
    "JUDGEMENT_PARSER",
    "RIDDLE_PARSER",
    "JudgementPayload",
    "RiddlePair",
    "parse_judgement",
    "parse_riddle",
]


@dataclass(frozen=True, slots=True)
class RiddlePair:
    """A riddle question together with its reference answer."""

    question: str
    answer: str


@dataclass(frozen=True, slots=True)
class JudgementPayload:
    correct: bool
    feedback: str


class _RiddleSchema(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    question: str = Field(..., description="Riddle text shown to the players")
    answer: str = Field(..., description="Short reference answer, one or two words")


class _JudgementSchema(BaseModel):
    correct: StrictBool = Field(..., description="Whether the player's answer is correct")
    feedback: StrictStr = Field(..., description="One short sentence addressed to the player")


RIDDLE_PARSER = PydanticOutputParser(pydantic_object=_RiddleSchema)
JUDGEMENT_PARSER = PydanticOutputParser(pydantic_object=_JudgementSchema)

_LABEL_PATTERN = re.compile(
    r"^\s*[*_#>\-\s]*(?P<label>question|riddle|answer|вопрос|загадка|ответ)[*_\s]*[:：][*_\s]*(?P<value>.*?)[*_\s]*$",
    re.IGNORECASE,
)
_QUESTION_LABELS = {"question", "riddle", "вопрос", "загадка"}


def _strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```") and content.endswith("```"):
        lines = content.splitlines()
        if len(lines) >= 3:
            return "\n".join(lines[1:-1]).strip()
    if content.startswith("```json"):
        return content[len("```json") :].strip("`\n ")
    return content


def _load_json_object(raw_content: str) -> dict:
    cleaned = _strip_code_fence(raw_content)
    try:
        loaded = orjson.loads(cleaned)
    except orjson.JSONDecodeError as json_exc:
        raise MalformedResponse("Reply is not valid JSON") from json_exc
    if not isinstance(loaded, dict):
        raise MalformedResponse("Reply JSON is not an object")
    return loaded


def _scan_labels(raw_content: str) -> RiddlePair | None:
    question = answer = None
    for line in raw_content.splitlines():
        match = _LABEL_PATTERN.match(line)
        if not match:
            continue
        label = match.group("label").lower()
        value = match.group("value").strip()
        if not value:
            continue
        if label in _QUESTION_LABELS:
            question = question or value
        else:
            answer = answer or value
    if question and answer:
        return RiddlePair(question=question, answer=answer)
    return None


def _to_pair(schema: _RiddleSchema) -> RiddlePair:
    question = " ".join(schema.question.split())
    answer = " ".join(schema.answer.split())
    if not question or not answer:
        raise MalformedResponse("Riddle reply has an empty question or answer")
    return RiddlePair(question=question, answer=answer)


def parse_riddle(raw_content: str) -> RiddlePair:
    """Decode a generated riddle.

    The strict schema decode runs first, then a plain JSON decode tolerant of
    code fences, and finally a scan for ``Question:``/``Answer:`` lines. Every
    stage returns the same :class:`RiddlePair`; when none succeeds the reply is
    reported as :class:`MalformedResponse`.
    """

    if not raw_content or not raw_content.strip():
        raise MalformedResponse("Empty riddle reply")

    try:
        return _to_pair(RIDDLE_PARSER.parse(raw_content))
    except OutputParserException as exc:
        logger.debug("Strict riddle parsing failed: %s", exc)
    except MalformedResponse:
        raise

    try:
        return _to_pair(_RiddleSchema.model_validate(_load_json_object(raw_content)))
    except (MalformedResponse, ValidationError) as exc:
        logger.debug("JSON riddle parsing failed: %s", exc)

    pair = _scan_labels(raw_content)
    if pair is not None:
        logger.info("Riddle recovered from labelled lines")
        return pair

    logger.warning("Unable to parse riddle reply: %.200s", raw_content)
    raise MalformedResponse("Riddle reply does not contain a question and an answer")


def parse_judgement(raw_content: str) -> JudgementPayload:
    """Decode an answer judgement; anything off-schema is :class:`MalformedResponse`."""

    if not raw_content or not raw_content.strip():
        raise MalformedResponse("Empty judgement reply")

    try:
        parsed = JUDGEMENT_PARSER.parse(raw_content)
    except OutputParserException as exc:
        logger.debug("Strict judgement parsing failed: %s", exc)
        try:
            parsed = _JudgementSchema.model_validate(_load_json_object(raw_content))
        except ValidationError as validation_exc:
            raise MalformedResponse("Judgement reply does not match the schema") from validation_exc
    return JudgementPayload(correct=parsed.correct, feedback=parsed.feedback.strip())
