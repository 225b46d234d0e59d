"""Question repository — loaded once from a static JSON document."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable

from pydantic import TypeAdapter, ValidationError

from science_quiz.models import Difficulty, Question, Scope

logger = logging.getLogger(__name__)

# Grade tiers offered for each difficulty level
GRADES_BY_DIFFICULTY: dict[Difficulty, list[str]] = {
    Difficulty.beginner: ["Grade 6", "Grade 7", "Grade 8"],
    Difficulty.intermediate: ["Grade 9", "Grade 10"],
    Difficulty.advanced: ["Grade 11", "Grade 12"],
}

_QUESTION_LIST = TypeAdapter(list[Question])


class QuestionBank:
    """Immutable, in-memory list of questions.

    Filtering ignores ``difficulty``: sets mix difficulty levels, so a quiz
    is chosen by grade, subject and set only.
    """

    def __init__(self, questions: Iterable[Question] = ()) -> None:
        self._questions: tuple[Question, ...] = tuple(questions)

    @classmethod
    def from_path(cls, path: Path) -> QuestionBank:
        """Load questions, degrading to an empty bank on any failure."""
        path = Path(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Error loading questions from %s: %s", path, e)
            return cls()
        if not isinstance(raw, list):
            logger.error("Question file %s must contain a JSON list", path)
            return cls()
        try:
            questions = _QUESTION_LIST.validate_python(raw)
        except ValidationError as e:
            logger.error("Invalid question data in %s: %s", path, e)
            return cls()
        logger.info("Loaded %d questions from %s", len(questions), path)
        return cls(questions)

    @property
    def questions(self) -> tuple[Question, ...]:
        return self._questions

    def __len__(self) -> int:
        return len(self._questions)

    def for_scope(self, scope: Scope) -> list[Question]:
        return [
            q
            for q in self._questions
            if q.grade == scope.grade and q.subject == scope.subject
        ]

    def for_set(self, scope: Scope, set_number: int) -> list[Question]:
        return [q for q in self.for_scope(scope) if q.set_number == set_number]

    def scopes(self) -> list[Scope]:
        seen: dict[Scope, None] = {}
        for q in self._questions:
            seen.setdefault(Scope(grade=q.grade, subject=q.subject), None)
        return list(seen)

    def subjects(self, grade: str) -> list[str]:
        return [s.subject for s in self.scopes() if s.grade == grade]
