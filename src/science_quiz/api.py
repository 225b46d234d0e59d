"""FastAPI HTTP layer wrapping QuizService."""

from __future__ import annotations

import hmac
import logging
import os
from datetime import timedelta
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from science_quiz.errors import (
    EmptyQuestionSet,
    MissingQuizParameters,
    NoAvailableSets,
    NoQuestionsLoaded,
    QuizError,
    QuizNotFound,
)
from science_quiz.identity import SESSION_ID_KEY, SessionIdentity
from science_quiz.kv_store import JsonFileKVStore, KVStore, MemoryKVStore
from science_quiz.models import Difficulty
from science_quiz.question_bank import GRADES_BY_DIFFICULTY, QuestionBank
from science_quiz.service import QuizService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

QUESTIONS_PATH = Path(
    os.environ.get("QUESTIONS_PATH", Path(__file__).parent.parent.parent / "questions.json")
)
STATE_DIR = os.environ.get("STATE_DIR")
QUIZ_LENGTH = int(os.environ.get("QUIZ_LENGTH", 10))
TOTAL_SETS = int(os.environ.get("TOTAL_SETS", 3))
ACTIVE_SET_TTL_MINUTES = int(os.environ.get("ACTIVE_SET_TTL_MINUTES", 30))

app = FastAPI(
    title="Science Quiz API",
    description="Timed science quizzes with per-session question set allocation",
    version="0.1.0",
)

API_KEY = os.getenv("API_KEY")
if not API_KEY:
    logger.warning("API_KEY not set. All requests will be allowed.")


@app.middleware("http")
async def verify_api_key(request: Request, call_next):
    if API_KEY and request.url.path != "/health":
        key = request.headers.get("x-api-key", "")
        if not hmac.compare_digest(key, API_KEY):
            return JSONResponse(status_code=401, content={"detail": "Invalid API key"})
    return await call_next(request)


@app.get("/health")
def health():
    """Unauthenticated health check."""
    return {"status": "ok", "questions": len(service.bank)}


def _shared_store() -> KVStore:
    if STATE_DIR:
        logger.info("Using shared state directory %s", STATE_DIR)
        return JsonFileKVStore(Path(STATE_DIR))
    logger.warning("STATE_DIR not set. Set tracking state is kept in memory only.")
    return MemoryKVStore()


service = QuizService(
    bank=QuestionBank.from_path(QUESTIONS_PATH),
    store=_shared_store(),
    quiz_length=QUIZ_LENGTH,
    total_sets=TOTAL_SETS,
    ttl=timedelta(minutes=ACTIVE_SET_TTL_MINUTES),
)


# --- Request models ---


class SessionRequest(BaseModel):
    session_id: str | None = None  # id cached by the client, if any


class StartQuizRequest(BaseModel):
    session_id: str
    grade: str | None = None
    subject: str | None = None
    difficulty: Difficulty | None = None


class AnswerRequest(BaseModel):
    choice: int | None = None  # None = time ran out


def _http_error(e: QuizError) -> HTTPException:
    if isinstance(e, MissingQuizParameters):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, NoQuestionsLoaded):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, NoAvailableSets):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (EmptyQuestionSet, QuizNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# --- Session endpoints ---


@app.post("/api/sessions")
def create_session(req: SessionRequest | None = None):
    """Return the caller's session id, creating one on first use."""
    tab_store = MemoryKVStore()
    if req is not None and req.session_id:
        tab_store.set(SESSION_ID_KEY, req.session_id)
    return {"session_id": SessionIdentity(tab_store).get_session_id()}


@app.get("/api/sessions/{session_id}/sets")
def available_sets(session_id: str, grade: str, subject: str):
    """Sets this session could be given right now."""
    return {"available": service.available_sets(session_id, grade, subject)}


# --- Catalogue endpoints ---


@app.get("/api/scopes")
def list_scopes():
    """List grade/subject pairs present in the question bank."""
    return [s.model_dump() for s in service.bank.scopes()]


@app.get("/api/grades")
def list_grades(difficulty: Difficulty):
    """Grades offered for a difficulty level."""
    return GRADES_BY_DIFFICULTY[difficulty]


# --- Quiz endpoints ---


@app.post("/api/quizzes")
def start_quiz(req: StartQuizRequest):
    """Allocate a set for the session and start a quiz on it."""
    try:
        run = service.start_quiz(req.session_id, req.grade, req.subject, req.difficulty)
    except QuizError as e:
        logger.warning("Quiz start failed for %s: %s", req.session_id, e)
        raise _http_error(e)
    return run.snapshot().model_dump()


@app.get("/api/quizzes/{session_id}")
def get_quiz(session_id: str):
    """Current state of the session's quiz, with elapsed time applied."""
    try:
        return service.snapshot(session_id).model_dump()
    except QuizError as e:
        raise _http_error(e)


@app.post("/api/quizzes/{session_id}/answer")
def answer_question(session_id: str, req: AnswerRequest):
    """Answer the current question. Repeat answers are ignored."""
    try:
        return service.answer(session_id, req.choice).model_dump()
    except QuizError as e:
        raise _http_error(e)


@app.post("/api/quizzes/{session_id}/hide")
def hide_quiz(session_id: str):
    """Release the session's set while the page is hidden. The quiz goes on."""
    service.hide(session_id)
    return {"status": "released"}


@app.post("/api/quizzes/{session_id}/abandon")
def abandon_quiz(session_id: str):
    """Release the session's set and end its quiz when the page is closed."""
    service.abandon(session_id)
    return {"status": "released"}


# --- Streak ---


@app.get("/api/sessions/{session_id}/streak")
def get_streak(session_id: str):
    return {"streak": service.streak(session_id)}


@app.post("/api/sessions/{session_id}/streak/reset")
def reset_streak(session_id: str):
    return {"streak": service.reset_streak(session_id)}


def main():
    """Run the API server."""
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
