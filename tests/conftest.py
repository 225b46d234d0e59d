"""Shared fixtures: a controllable clock, stores and question factories."""

import pytest

from science_quiz.kv_store import MemoryKVStore
from science_quiz.models import Difficulty, Question, Scope
from science_quiz.set_tracker import ActiveUseRegistry, CompletionLedger, StreakCounter

START = 1_700_000_000.0


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_questions(
    count: int,
    set_number: int = 1,
    grade: str = "Grade 9",
    subject: str = "physics",
    difficulty: Difficulty = Difficulty.intermediate,
) -> list[Question]:
    slug = grade.replace(" ", "").lower()
    return [
        Question.model_validate(
            {
                "id": f"{slug}_{subject}_set{set_number}_q{i}",
                "grade": grade,
                "subject": subject,
                "difficulty": difficulty.value,
                "text": {"en": f"Question {i}?"},
                "options": [{"en": "A"}, {"en": "B"}, {"en": "C"}, {"en": "D"}],
                "answerIndex": 0,
            }
        )
        for i in range(count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryKVStore()


@pytest.fixture
def scope():
    return Scope(grade="Grade 9", subject="physics")


@pytest.fixture
def registry(store, clock):
    return ActiveUseRegistry(store, clock=clock)


@pytest.fixture
def ledger(store, registry):
    return CompletionLedger(store, registry)


@pytest.fixture
def streak(store):
    return StreakCounter(store, "user_a")
