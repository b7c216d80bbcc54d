"""Round lifecycle and first-correct-answer arbitration."""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from utils.errors import RoundAlreadyActive
from utils.judge import AnswerJudge
from utils.logging_config import get_logger, logging_context

logger = get_logger("rounds")


class RoundStatus(str, enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    WON = "won"


class Verdict(str, enum.Enum):
    WON = "won"
    LOST = "lost"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class Round:
    """A riddle that is currently open for answers."""

    question: str
    reference_answer: str
    round_id: str = field(default_factory=lambda: uuid4().hex[:8])
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class SubmissionResult:
    verdict: Verdict
    feedback: str = ""
    winner: Optional[str] = None
    winner_label: Optional[str] = None
    reference_answer: Optional[str] = None


class RoundStateMachine:
    """Owns the current round, its winner and the pending wrong answers.

    The lock is only held for snapshots and writes. Judging happens with the
    lock released, and the winner is written by compare-and-set: the round
    judged must still be the current one and nobody may have won it in the
    meantime. Late correct answers therefore observe ``REJECTED``.

    With ``auto_reset_after_win`` set, :meth:`start_round` treats a won round
    as finished; otherwise a won round has to be cleared with :meth:`reset`.
    """

    def __init__(self, judge: AnswerJudge, *, auto_reset_after_win: bool = False) -> None:
        self.judge = judge
        self.auto_reset_after_win = auto_reset_after_win
        self._lock = asyncio.Lock()
        self._round: Optional[Round] = None
        self._winner: Optional[str] = None
        self._winner_label: Optional[str] = None
        self._pending: dict[str, str] = {}

    @property
    def status(self) -> RoundStatus:
        if self._round is None:
            return RoundStatus.IDLE
        if self._winner is None:
            return RoundStatus.ACTIVE
        return RoundStatus.WON

    @property
    def current_round(self) -> Optional[Round]:
        return self._round

    @property
    def winner(self) -> Optional[str]:
        return self._winner

    @property
    def winner_label(self) -> Optional[str]:
        return self._winner_label

    def current_question(self) -> Optional[str]:
        current = self._round
        return current.question if current is not None else None

    def pending_answers(self) -> dict[str, str]:
        return dict(self._pending)

    def accepts_new_round(self) -> bool:
        status = self.status
        if status is RoundStatus.IDLE:
            return True
        return status is RoundStatus.WON and self.auto_reset_after_win

    async def start_round(self, question: str, reference_answer: str) -> Round:
        question = (question or "").strip()
        reference_answer = (reference_answer or "").strip()
        if not question or not reference_answer:
            raise ValueError("Question and reference answer must be provided")

        async with self._lock:
            if not self.accepts_new_round():
                raise RoundAlreadyActive(f"Round is {self.status.value}, reset it first")
            new_round = Round(question=question, reference_answer=reference_answer)
            self._round = new_round
            self._winner = None
            self._winner_label = None
            self._pending = {}
        with logging_context(round_id=new_round.round_id):
            logger.info("Round started")
        return new_round

    async def reset(self) -> Optional[Round]:
        async with self._lock:
            previous = self._round
            self._round = None
            self._winner = None
            self._winner_label = None
            self._pending = {}
        if previous is not None:
            with logging_context(round_id=previous.round_id):
                logger.info("Round reset")
        return previous

    async def submit_answer(self, identity: str, text: str, *, label: Optional[str] = None) -> SubmissionResult:
        """Judge ``text`` for the player ``identity``; ``label`` is the name shown to others."""

        answer = (text or "").strip()
        async with self._lock:
            snapshot = self._round
            if snapshot is None or self._winner is not None or not answer:
                return self._rejected()

        with logging_context(round_id=snapshot.round_id, player=identity):
            judgement = await self.judge.judge(snapshot.question, snapshot.reference_answer, answer)

            async with self._lock:
                if self._round is not snapshot or self._winner is not None:
                    logger.debug("Late answer rejected")
                    return self._rejected()
                if judgement.correct:
                    self._winner = identity
                    self._winner_label = label or identity
                    logger.info("Winner decided (judged by %s)", judgement.source)
                    return SubmissionResult(
                        Verdict.WON,
                        feedback=judgement.feedback,
                        winner=identity,
                        winner_label=self._winner_label,
                        reference_answer=snapshot.reference_answer,
                    )
                self._pending[identity] = answer

            logger.debug("Wrong answer")
            return SubmissionResult(Verdict.LOST, feedback=judgement.feedback)

    def _rejected(self) -> SubmissionResult:
        return SubmissionResult(Verdict.REJECTED, winner=self._winner, winner_label=self._winner_label)
