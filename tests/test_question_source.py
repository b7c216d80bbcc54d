"""Tests for riddle generation and the static fallback pool."""

from __future__ import annotations

import asyncio
import json
import random

import pytest

from utils.errors import (
    GenerationDisabled,
    GenerationInProgress,
    MalformedResponse,
    RateLimitExceeded,
    RoundAlreadyActive,
)
from utils.judge import AnswerJudge
from utils.parsing import RiddlePair
from utils.question_source import DEFAULT_DIFFICULTY, QuestionSource
from utils.riddle_bank import RIDDLE_CATEGORIES, STATIC_RIDDLES, pick_static_riddle
from utils.rounds import RoundStateMachine


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _StubClient:
    def __init__(self, reply: str = "", *, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.gate: asyncio.Event | None = None
        self.requests: list[tuple[str, str]] = []

    async def new_riddle(self, category: str, difficulty: str) -> str:
        self.requests.append((category, difficulty))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


def _riddle_json(question: str = "Кто ходит сидя?", answer: str = "Шахматист") -> str:
    return json.dumps({"question": question, "answer": answer}, ensure_ascii=False)


def _make_source(client=None, *, enabled: bool = True, auto_reset: bool = False) -> QuestionSource:
    rounds = RoundStateMachine(AnswerJudge(), auto_reset_after_win=auto_reset)
    return QuestionSource(rounds, client, enabled=enabled, rng=random.Random(7))


@pytest.mark.anyio
async def test_generate_returns_parsed_pair() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client)

    pair = await source.generate(category="логика", difficulty="hard")

    assert pair == RiddlePair("Кто ходит сидя?", "Шахматист")
    assert client.requests == [("логика", "hard")]


@pytest.mark.anyio
async def test_generate_picks_default_category_and_difficulty() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client)

    await source.generate()

    category, difficulty = client.requests[0]
    assert category in RIDDLE_CATEGORIES
    assert difficulty == DEFAULT_DIFFICULTY


@pytest.mark.anyio
async def test_unknown_difficulty_falls_back_to_default() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client)

    await source.generate(category="логика", difficulty="Impossible")
    await source.generate(category="логика", difficulty=" HARD ")

    assert client.requests == [("логика", DEFAULT_DIFFICULTY), ("логика", "hard")]


@pytest.mark.anyio
async def test_generate_uses_label_fallback() -> None:
    client = _StubClient("Вопрос: Сто одёжек и все без застёжек?\nОтвет: Капуста")
    source = _make_source(client)

    pair = await source.generate()

    assert pair.answer == "Капуста"


@pytest.mark.anyio
async def test_disabled_generation_is_reported() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client, enabled=False)

    with pytest.raises(GenerationDisabled):
        await source.generate()
    assert client.requests == []


@pytest.mark.anyio
async def test_missing_client_counts_as_disabled() -> None:
    source = _make_source(None)

    with pytest.raises(GenerationDisabled):
        await source.generate()


@pytest.mark.anyio
async def test_active_round_blocks_generation() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client)
    await source.rounds.start_round("2+2?", "4")

    with pytest.raises(RoundAlreadyActive):
        await source.generate()
    assert client.requests == []


@pytest.mark.anyio
async def test_won_round_blocks_generation_without_auto_reset() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client)
    await source.rounds.start_round("2+2?", "4")
    await source.rounds.submit_answer("A", "4")

    with pytest.raises(RoundAlreadyActive):
        await source.generate()


@pytest.mark.anyio
async def test_won_round_allows_generation_with_auto_reset() -> None:
    client = _StubClient(_riddle_json())
    source = _make_source(client, auto_reset=True)
    await source.rounds.start_round("2+2?", "4")
    await source.rounds.submit_answer("A", "4")

    pair = await source.generate()

    assert pair.answer == "Шахматист"


@pytest.mark.anyio
async def test_concurrent_generation_is_rejected() -> None:
    client = _StubClient(_riddle_json())
    client.gate = asyncio.Event()
    source = _make_source(client)

    first = asyncio.create_task(source.generate())
    await asyncio.sleep(0)
    with pytest.raises(GenerationInProgress):
        await source.generate()

    client.gate.set()
    assert (await first).question == "Кто ходит сидя?"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "client, error",
    [
        (_StubClient("I cannot think of a riddle right now."), MalformedResponse),
        (_StubClient(error=RateLimitExceeded("busy")), RateLimitExceeded),
    ],
)
async def test_failures_propagate_and_release_generation(client, error) -> None:
    source = _make_source(client)

    with pytest.raises(error):
        await source.generate()

    client.reply = _riddle_json()
    client.error = None
    assert (await source.generate()).answer == "Шахматист"


def test_toggle_flips_enabled_flag() -> None:
    source = _make_source()

    assert source.enabled
    assert source.toggle() is False
    assert not source.enabled
    assert source.toggle() is True


def test_fallback_avoids_previous_question() -> None:
    source = _make_source()
    previous = STATIC_RIDDLES[0].question

    for _ in range(20):
        assert source.fallback(exclude_question=previous).question != previous


def test_pick_static_riddle_single_item_pool() -> None:
    only = RiddlePair("Что это?", "Оно")

    assert pick_static_riddle(exclude_question="Что это?", pool=[only]) == only
    with pytest.raises(ValueError):
        pick_static_riddle(pool=[])
