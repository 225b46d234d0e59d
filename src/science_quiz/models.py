"""Quiz data models — questions, scopes, set claims and run snapshots."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Legacy question ids carry their set number, e.g. "g9_physics_set2_q07"
SET_MARKER = re.compile(r"_set(\d+)_")


class Difficulty(str, Enum):
    beginner = "beginner"
    intermediate = "intermediate"
    advanced = "advanced"


class Question(BaseModel):
    """A single multiple-choice question as stored in questions.json."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    grade: str
    subject: str
    difficulty: Difficulty = Difficulty.beginner
    text: dict[str, str]  # lang -> text
    options: list[dict[str, str]]  # each option is lang -> text
    answer_index: int = Field(alias="answerIndex")
    set_number: int | None = Field(default=None, alias="setNumber")

    @model_validator(mode="before")
    @classmethod
    def _set_from_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("setNumber", data.get("set_number")) is None:
            match = SET_MARKER.search(str(data.get("id", "")))
            if match:
                data = {**data, "setNumber": int(match.group(1))}
        return data


class Scope(BaseModel):
    """A (grade, subject) pair — the unit sets and completion are tracked over."""

    model_config = ConfigDict(frozen=True)

    grade: str
    subject: str

    def __str__(self) -> str:
        return f"{self.grade}/{self.subject}"


class ActiveClaim(BaseModel):
    """A session's reservation of a set, as stored in the active-use registry."""

    model_config = ConfigDict(populate_by_name=True)

    set_number: int = Field(alias="setNumber")
    timestamp: float  # epoch milliseconds


class QuizState(str, Enum):
    awaiting_start = "awaiting_start"
    unanswered = "unanswered"
    locked = "locked"
    revealed = "revealed"
    completed = "completed"
    abandoned = "abandoned"


class TimerPhase(str, Enum):
    normal = "normal"
    warning = "warning"
    danger = "danger"


class QuizResult(BaseModel):
    correct: int
    total: int
    percentage: int
    stars: float  # 0-5 in half steps


class Feedback(BaseModel):
    correct: bool
    correct_index: int
    chosen_index: int | None = None  # only set for a wrong choice


class QuestionView(BaseModel):
    """What a client may see of the current question."""

    id: str
    text: dict[str, str]
    options: list[dict[str, str]]


class QuizSnapshot(BaseModel):
    """A point-in-time view of a quiz run for the HTTP layer."""

    session_id: str
    grade: str
    subject: str
    set_number: int
    state: QuizState
    index: int
    total: int
    correct: int
    streak: int
    time_left: int
    timer_phase: TimerPhase
    question: QuestionView | None = None
    feedback: Feedback | None = None
    result: QuizResult | None = None
