"""Tests for answer judging and the exact-match fallback."""

from __future__ import annotations

import pytest

from utils.errors import ExternalCallFailed, RateLimitExceeded
from utils.judge import SOURCE_EXACT, SOURCE_LLM, AnswerJudge, exact_match


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _StubClient:
    def __init__(self, reply: str | None = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    async def check_answer(self, riddle_text: str, correct_answer: str, user_answer: str) -> str:
        self.calls.append((riddle_text, correct_answer, user_answer))
        if self.error is not None:
            raise self.error
        return self.reply or ""


@pytest.mark.parametrize(
    "submitted, reference, expected",
    [
        ("москва", "Москва", True),
        ("МОСКВА ", "Москва", True),
        ("  4", "4", True),
        ("Питер", "Москва", False),
        ("", "Москва", False),
    ],
)
def test_exact_match(submitted: str, reference: str, expected: bool) -> None:
    assert exact_match(submitted, reference) is expected


@pytest.mark.anyio
@pytest.mark.parametrize("submitted", ["москва", "МОСКВА "])
async def test_fallback_without_client(submitted: str) -> None:
    judgement = await AnswerJudge().judge("Столица России?", "Москва", submitted)

    assert judgement.correct
    assert judgement.feedback == ""
    assert judgement.source == SOURCE_EXACT


@pytest.mark.anyio
@pytest.mark.parametrize(
    "client",
    [
        _StubClient(error=RateLimitExceeded("busy")),
        _StubClient(error=ExternalCallFailed("timeout")),
        _StubClient(reply="not json at all"),
        _StubClient(reply='{"correct": "false", "feedback": "nope"}'),
    ],
)
async def test_failures_fall_back_to_exact_match(client: _StubClient) -> None:
    judge = AnswerJudge(client)  # type: ignore[arg-type]

    judgement = await judge.judge("Столица России?", "Москва", "МОСКВА ")

    assert judgement.correct
    assert judgement.source == SOURCE_EXACT
    assert len(client.calls) == 1


@pytest.mark.anyio
async def test_language_model_verdict_is_used() -> None:
    client = _StubClient(reply='{"correct": true, "feedback": "Верно, это синоним."}')
    judge = AnswerJudge(client)  # type: ignore[arg-type]

    judgement = await judge.judge("Столица России?", "Москва", "Первопрестольная")

    assert judgement.correct
    assert judgement.feedback == "Верно, это синоним."
    assert judgement.source == SOURCE_LLM
    assert client.calls == [("Столица России?", "Москва", "Первопрестольная")]


@pytest.mark.anyio
async def test_language_model_can_reject_exact_text() -> None:
    client = _StubClient(reply='{"correct": false, "feedback": "Не то."}')
    judge = AnswerJudge(client)  # type: ignore[arg-type]

    judgement = await judge.judge("2+2?", "4", "5")

    assert not judgement.correct
    assert judgement.source == SOURCE_LLM
