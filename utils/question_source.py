"""Riddle generation via the language model, with a static fallback pool."""

from __future__ import annotations

import asyncio
import random
from typing import Optional

from utils.errors import GenerationDisabled, GenerationInProgress, RoundAlreadyActive
from utils.llm_client import LlmClient
from utils.logging_config import get_logger
from utils.parsing import RiddlePair, parse_riddle
from utils.riddle_bank import DIFFICULTY_LEVELS, RIDDLE_CATEGORIES, pick_static_riddle
from utils.rounds import RoundStateMachine

logger = get_logger("question_source")

DEFAULT_DIFFICULTY = "medium"


class QuestionSource:
    """Produce the next riddle while no round is open.

    :meth:`generate` raises instead of falling back; callers pick
    :meth:`fallback` themselves when they want a riddle regardless.
    """

    def __init__(
        self,
        rounds: RoundStateMachine,
        client: Optional[LlmClient] = None,
        *,
        enabled: bool = True,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.rounds = rounds
        self.client = client
        self._enabled = enabled
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._generating = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, value: bool) -> None:
        self._enabled = bool(value)
        logger.info("Riddle generation %s", "enabled" if self._enabled else "disabled")

    def toggle(self) -> bool:
        self.set_enabled(not self._enabled)
        return self._enabled

    async def _claim(self) -> None:
        async with self._lock:
            if not self.rounds.accepts_new_round():
                raise RoundAlreadyActive("A round is already in progress")
            if self._generating:
                raise GenerationInProgress("The next riddle is already being prepared")
            self._generating = True

    async def _release(self) -> None:
        async with self._lock:
            self._generating = False

    async def generate(
        self,
        category: Optional[str] = None,
        difficulty: Optional[str] = None,
    ) -> RiddlePair:
        if not self._enabled:
            raise GenerationDisabled("Riddle generation is switched off")
        if self.client is None:
            raise GenerationDisabled("No language model is configured")

        await self._claim()
        try:
            chosen_category = (category or "").strip() or self._rng.choice(RIDDLE_CATEGORIES)
            chosen_difficulty = (difficulty or "").strip().lower() or DEFAULT_DIFFICULTY
            if chosen_difficulty not in DIFFICULTY_LEVELS:
                logger.warning("Unknown difficulty %r, using %s", difficulty, DEFAULT_DIFFICULTY)
                chosen_difficulty = DEFAULT_DIFFICULTY
            logger.debug("Requesting riddle (category=%s, difficulty=%s)", chosen_category, chosen_difficulty)
            raw = await self.client.new_riddle(chosen_category, chosen_difficulty)
            pair = parse_riddle(raw)
        finally:
            await self._release()
        logger.info("Generated riddle for category %s", chosen_category)
        return pair

    def fallback(self, exclude_question: Optional[str] = None) -> RiddlePair:
        return pick_static_riddle(exclude_question=exclude_question, rng=self._rng)
