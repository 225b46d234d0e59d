"""Quiz errors — everything that stops a quiz from starting or continuing."""


class QuizError(Exception):
    """Base class for quiz errors."""


class MissingQuizParameters(QuizError):
    """Grade or subject was not supplied."""


class NoQuestionsLoaded(QuizError):
    """The question bank is empty, usually because loading failed."""


class NoAvailableSets(QuizError):
    pass


class EmptyQuestionSet(QuizError):
    """The allocated set has no questions for the requested scope."""


class QuizNotFound(QuizError):
    pass


class QuizStateError(QuizError):
    """Raised when an operation does not fit the run's current state."""
