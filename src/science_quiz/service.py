"""Quiz service — the quiz-start boundary and per-session run registry."""

from __future__ import annotations

import logging
import random
import time
from datetime import timedelta
from typing import Callable

from science_quiz.errors import (
    EmptyQuestionSet,
    MissingQuizParameters,
    NoAvailableSets,
    NoQuestionsLoaded,
    QuizNotFound,
)
from science_quiz.kv_store import KVStore
from science_quiz.models import Difficulty, QuizSnapshot, Scope
from science_quiz.question_bank import QuestionBank
from science_quiz.quiz_engine import DEFAULT_QUIZ_LENGTH, QuizRun
from science_quiz.set_tracker import (
    ACTIVE_SET_TTL,
    DEFAULT_TOTAL_SETS,
    ActiveUseRegistry,
    CompletionLedger,
    SetAllocator,
    StreakCounter,
)

logger = logging.getLogger(__name__)


class QuizService:
    """Starts quizzes on allocated sets and keeps one run per session."""

    def __init__(
        self,
        bank: QuestionBank,
        store: KVStore,
        quiz_length: int = DEFAULT_QUIZ_LENGTH,
        total_sets: int = DEFAULT_TOTAL_SETS,
        ttl: timedelta = ACTIVE_SET_TTL,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.bank = bank
        self.store = store
        self.quiz_length = quiz_length
        self.total_sets = total_sets
        self.clock = clock
        self.rng = rng or random.Random()

        self.registry = ActiveUseRegistry(store, ttl=ttl, clock=clock)
        self.ledger = CompletionLedger(store, self.registry)
        self.allocator = SetAllocator(self.registry, self.ledger)
        self._runs: dict[str, QuizRun] = {}

    def streak_counter(self, session_id: str) -> StreakCounter:
        return StreakCounter(self.store, session_id)

    def _sweep(self) -> None:
        """Forget finished runs and abandon runs idle for longer than the claim TTL."""
        idle_limit = self.registry.ttl.total_seconds()
        now = self.clock()
        stale = [
            sid
            for sid, run in self._runs.items()
            if run.finished or now - run.last_activity >= idle_limit
        ]
        for sid in stale:
            self._runs.pop(sid).abandon()
        if stale:
            logger.info("Swept %d stale quiz runs", len(stale))

    def start_quiz(
        self,
        session_id: str,
        grade: str | None,
        subject: str | None,
        difficulty: Difficulty | None = None,
        quiz_length: int | None = None,
        total_sets: int | None = None,
    ) -> QuizRun:
        if not grade or not subject:
            raise MissingQuizParameters("Missing quiz parameters: grade and subject are required")
        if len(self.bank) == 0:
            raise NoQuestionsLoaded("No questions available. Please try again later.")

        scope = Scope(grade=grade, subject=subject)
        total_sets = total_sets or self.total_sets
        self._sweep()

        # Starting again replaces any unfinished attempt of this session
        previous = self._runs.pop(session_id, None)
        if previous is not None:
            previous.abandon()

        try:
            set_number = self.allocator.choose_set(session_id, scope, total_sets, self.rng)
        except IndexError:
            raise NoAvailableSets(
                "No available question sets. All sets are currently being used "
                "by other users or completed. Please try again in a moment."
            ) from None

        questions = self.bank.for_set(scope, set_number)
        logger.info("Found %d questions for %s set %d", len(questions), scope, set_number)
        if not questions:
            self.registry.release(scope, session_id)
            logger.error("No questions found for %s set %d", scope, set_number)
            raise EmptyQuestionSet(
                f'No questions found for set {set_number} of this selection. '
                f'Looking for: grade="{grade}", subject="{subject}"'
            )

        run = QuizRun(
            session_id=session_id,
            scope=scope,
            set_number=set_number,
            ledger=self.ledger,
            streak=self.streak_counter(session_id),
            difficulty=difficulty,
            quiz_length=quiz_length or self.quiz_length,
            total_sets=total_sets,
            clock=self.clock,
        )
        run.start(questions, self.rng)
        self._runs[session_id] = run
        return run

    def get_run(self, session_id: str) -> QuizRun:
        try:
            return self._runs[session_id]
        except KeyError:
            raise QuizNotFound(f"No quiz in progress for session {session_id}") from None

    def snapshot(self, session_id: str) -> QuizSnapshot:
        run = self.get_run(session_id)
        run.reclaim()
        run.sync()
        return run.snapshot()

    def answer(self, session_id: str, choice: int | None) -> QuizSnapshot:
        run = self.get_run(session_id)
        run.reclaim()
        run.sync()
        run.select(choice)
        return run.snapshot()

    def tick(self, session_id: str, units: int = 1) -> QuizSnapshot:
        run = self.get_run(session_id)
        run.tick(units)
        return run.snapshot()

    def hide(self, session_id: str) -> None:
        """Cleanup hook for a hidden page: drop the claim, keep the run."""
        run = self._runs.get(session_id)
        if run is not None:
            run.release_claim()

    def abandon(self, session_id: str) -> None:
        """Cleanup hook for a page being unloaded."""
        run = self._runs.pop(session_id, None)
        if run is not None:
            run.abandon()

    def available_sets(self, session_id: str, grade: str, subject: str) -> list[int]:
        return self.allocator.get_available_sets(
            session_id, Scope(grade=grade, subject=subject), self.total_sets
        )

    def streak(self, session_id: str) -> int:
        return self.streak_counter(session_id).value

    def reset_streak(self, session_id: str) -> int:
        return self.streak_counter(session_id).reset()
