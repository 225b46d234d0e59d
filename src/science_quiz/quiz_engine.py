"""Quiz engine — the per-run state machine: sequencing, countdown, scoring, streak."""

from __future__ import annotations

import logging
import math
import random
import time
from typing import Callable, Sequence

from science_quiz.errors import QuizStateError
from science_quiz.models import (
    Difficulty,
    Feedback,
    Question,
    QuestionView,
    QuizResult,
    QuizSnapshot,
    QuizState,
    Scope,
    TimerPhase,
)
from science_quiz.question_bank import GRADES_BY_DIFFICULTY
from science_quiz.set_tracker import DEFAULT_TOTAL_SETS, CompletionLedger, StreakCounter

logger = logging.getLogger(__name__)

DEFAULT_QUIZ_LENGTH = 10
BEGINNER_SECONDS = 20
STANDARD_SECONDS = 30
ADVANCE_DELAY = 2  # ticks between reveal and the next question
WARNING_AT = 15
DANGER_AT = 10


def timer_seconds(grade: str, difficulty: Difficulty | None) -> int:
    """Beginner level and grades 6-8 get the shorter timer."""
    if difficulty == Difficulty.beginner or grade in GRADES_BY_DIFFICULTY[Difficulty.beginner]:
        return BEGINNER_SECONDS
    return STANDARD_SECONDS


def timer_phase(time_left: int) -> TimerPhase:
    if time_left <= DANGER_AT:
        return TimerPhase.danger
    if time_left <= WARNING_AT:
        return TimerPhase.warning
    return TimerPhase.normal


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def score(correct: int, total: int) -> QuizResult:
    percentage = _round_half_up(100 * correct / total) if total else 0
    return QuizResult(
        correct=correct,
        total=total,
        percentage=percentage,
        stars=_round_half_up(percentage / 10) / 2,
    )


def shuffled(items: Sequence[Question], rng: random.Random | None = None) -> list[Question]:
    """Fisher-Yates shuffle of a copy."""
    rng = rng or random
    out = list(items)
    for i in range(len(out) - 1, 0, -1):
        j = rng.randint(0, i)
        out[i], out[j] = out[j], out[i]
    return out


class QuizRun:
    """One quiz attempt for one session.

    Time moves only through :meth:`tick` (one unit is one second); the HTTP
    layer converts wall-clock time with :meth:`sync`.
    """

    def __init__(
        self,
        session_id: str,
        scope: Scope,
        set_number: int,
        ledger: CompletionLedger,
        streak: StreakCounter,
        difficulty: Difficulty | None = None,
        quiz_length: int = DEFAULT_QUIZ_LENGTH,
        total_sets: int = DEFAULT_TOTAL_SETS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.session_id = session_id
        self.scope = scope
        self.set_number = set_number
        self.ledger = ledger
        self.streak = streak
        self.difficulty = difficulty
        self.quiz_length = quiz_length
        self.total_sets = total_sets
        self.clock = clock

        self.state = QuizState.awaiting_start
        self.questions: list[Question] = []
        self.index = 0
        self.correct = 0
        self.time_left = 0
        self.advance_in = 0
        self.chosen_index: int | None = None
        self.last_correct: bool | None = None
        self.result: QuizResult | None = None
        self.last_activity = 0.0
        self.claim_released = False
        self._last_sync = 0.0

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def start(self, questions: Sequence[Question], rng: random.Random | None = None) -> None:
        if self.state != QuizState.awaiting_start:
            raise QuizStateError(f"Quiz already started (state: {self.state.value})")
        if len(questions) < self.quiz_length:
            logger.warning(
                "Only %d questions available for set %d of %s, adjusting total",
                len(questions),
                self.set_number,
                self.scope,
            )
            self.quiz_length = len(questions)
        self.questions = shuffled(questions, rng)[: self.quiz_length]
        self.index = 0
        self.correct = 0
        self._last_sync = self.last_activity = self.clock()
        self._present()

    def abandon(self) -> None:
        """Release the claim when the user leaves mid-quiz."""
        if self.finished:
            return
        self.state = QuizState.abandoned
        self.ledger.registry.release(self.scope, self.session_id)
        logger.info("Session %s abandoned set %d of %s", self.session_id, self.set_number, self.scope)

    def release_claim(self) -> None:
        """Give up the active claim while the page is hidden; the run goes on."""
        if self.finished or self.claim_released:
            return
        self.claim_released = True
        self.ledger.registry.release(self.scope, self.session_id)

    def reclaim(self) -> None:
        """Take the set back after ``release_claim`` once the user returns."""
        if self.finished or not self.claim_released:
            return
        self.claim_released = False
        self.ledger.registry.mark_active(self.scope, self.session_id, self.set_number)

    @property
    def finished(self) -> bool:
        return self.state in (QuizState.completed, QuizState.abandoned)

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Question | None:
        if self.state in (QuizState.unanswered, QuizState.locked, QuizState.revealed):
            return self.questions[self.index]
        return None

    # ------------------------------------------------------------------
    # answering
    # ------------------------------------------------------------------
    def select(self, choice: int | None) -> bool:
        """Answer the current question; ``None`` is a timeout.

        Returns False (and changes nothing) unless a question is awaiting an
        answer, so at most one answer per question is scored.
        """
        if self.state != QuizState.unanswered:
            return False
        self.last_activity = self.clock()
        self.state = QuizState.locked
        self.time_left = 0

        question = self.questions[self.index]
        correct = choice is not None and choice == question.answer_index
        if correct:
            self.correct += 1
            self.streak.increment()
        else:
            self.streak.reset()

        self.chosen_index = choice
        self.last_correct = correct
        self.state = QuizState.revealed
        self.advance_in = ADVANCE_DELAY
        return True

    def feedback(self) -> Feedback | None:
        if self.state != QuizState.revealed:
            return None
        question = self.questions[self.index]
        return Feedback(
            correct=bool(self.last_correct),
            correct_index=question.answer_index,
            chosen_index=None if self.last_correct else self.chosen_index,
        )

    # ------------------------------------------------------------------
    # time
    # ------------------------------------------------------------------
    def tick(self, units: int = 1) -> None:
        remaining = units
        while remaining > 0:
            if self.state == QuizState.unanswered:
                step = min(remaining, self.time_left)
                self.time_left -= step
                remaining -= step
                if self.time_left <= 0:
                    self.select(None)
            elif self.state == QuizState.revealed:
                step = min(remaining, self.advance_in)
                self.advance_in -= step
                remaining -= step
                if self.advance_in <= 0:
                    self._next()
            else:
                break

    def sync(self, now: float | None = None) -> None:
        """Apply the whole seconds elapsed since the last sync."""
        if now is None:
            now = self.clock()
        self.last_activity = max(self.last_activity, now)
        elapsed = int(now - self._last_sync)
        if elapsed > 0:
            self._last_sync += elapsed
            self.tick(elapsed)

    @property
    def timer_phase(self) -> TimerPhase:
        if self.state != QuizState.unanswered:
            return TimerPhase.normal
        return timer_phase(self.time_left)

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def _present(self) -> None:
        if self.index >= len(self.questions):
            self._complete()
            return
        self.state = QuizState.unanswered
        self.time_left = timer_seconds(self.scope.grade, self.difficulty)
        self.chosen_index = None
        self.last_correct = None

    def _next(self) -> None:
        self.index += 1
        self._present()

    def _complete(self) -> None:
        self.result = score(self.correct, self.total)
        self.state = QuizState.completed
        self.time_left = 0
        self.ledger.mark_completed(self.session_id, self.scope, self.set_number, self.total_sets)
        self.streak.reset()
        logger.info(
            "Quiz completed: %d/%d for %s (set %d)",
            self.correct,
            self.total,
            self.scope,
            self.set_number,
        )

    def snapshot(self) -> QuizSnapshot:
        question = self.current_question
        return QuizSnapshot(
            session_id=self.session_id,
            grade=self.scope.grade,
            subject=self.scope.subject,
            set_number=self.set_number,
            state=self.state,
            index=self.index,
            total=self.total,
            correct=self.correct,
            streak=self.streak.value,
            time_left=self.time_left,
            timer_phase=self.timer_phase,
            question=(
                QuestionView(id=question.id, text=question.text, options=question.options)
                if question is not None
                else None
            ),
            feedback=self.feedback(),
            result=self.result,
        )
