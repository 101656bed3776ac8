import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, StrictBool, StrictInt

from . import config
from .errors import NotFoundError, StoreError, TriviaError, ValidationError
from .questions import QuestionBank, question_to_dict
from .sessions import SessionEngine
from .store import Store
from .users import UserRegistry, is_valid_user_id, user_to_dict


logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = Store.open(config.DATABASE_URL)
    try:
        yield
    finally:
        app.state.store.close()


app = FastAPI(title="Trivia Game Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependencies
def get_store(request: Request) -> Store:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise StoreError("Database not available", "The store has not been opened")
    return store


def get_question_bank(store: Store = Depends(get_store)) -> QuestionBank:
    return QuestionBank(store)


def get_user_registry(store: Store = Depends(get_store)) -> UserRegistry:
    return UserRegistry(store)


def get_session_engine(
    store: Store = Depends(get_store),
    question_bank: QuestionBank = Depends(get_question_bank),
    user_registry: UserRegistry = Depends(get_user_registry),
) -> SessionEngine:
    return SessionEngine(store, question_bank, user_registry)


# Error translation
@app.exception_handler(TriviaError)
async def trivia_error_handler(request: Request, exc: TriviaError):
    if exc.status_code >= 500:
        logger.error("[ERROR] %s %s: %s", request.method, request.url.path, exc.message)
        # Store internals stay in the log
        return JSONResponse(
            status_code=exc.status_code,
            content={"status": "error", "message": exc.message, "error": "Internal Server Error"},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"status": "error", "message": "Invalid request", "error": problems},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("[ERROR] Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error", "error": None},
    )


def _success(message: str, data=None) -> dict:
    return {"status": "success", "message": message, "data": data}


class UserCreate(BaseModel):
    username: Optional[str] = None


class SessionCreate(BaseModel):
    user_id: Optional[str] = None
    time_limit: Optional[StrictInt] = None


class AnswerSubmission(BaseModel):
    user_id: Optional[str] = None
    question_id: Optional[str] = None
    answer_index: Optional[StrictInt] = None


class QuestionCreate(BaseModel):
    category: str
    prompt: str
    answers: List[str]
    correct_answer_index: StrictInt
    score: StrictInt
    is_ai_generated: StrictBool = False


class QuestionUpdate(BaseModel):
    category: Optional[str] = None
    prompt: Optional[str] = None
    answers: Optional[List[str]] = None
    correct_answer_index: Optional[StrictInt] = None
    score: Optional[StrictInt] = None
    is_ai_generated: Optional[StrictBool] = None


@app.get("/")
def read_root():
    return {"message": "Trivia backend is running!"}


@app.get("/health")
def health(store: Store = Depends(get_store)):
    if store.check_connection():
        return {"status": "ok", "message": "Database connection successful"}
    return JSONResponse(status_code=500, content={"status": "error", "message": "Database connection failed"})


##################################
## Users
##################################

@app.post("/users", status_code=201)
def create_user(body: Optional[UserCreate] = Body(None), users: UserRegistry = Depends(get_user_registry)):
    user = users.create(body.username if body else None)
    return _success("User created successfully", user_to_dict(user))


def _check_user_id(user_id: str):
    if not user_id.strip():
        raise ValidationError("User ID is required", "User ID parameter is missing or empty")
    if not is_valid_user_id(user_id):
        raise ValidationError("Invalid user ID format", "User ID must be a valid UUID")


@app.get("/users/{user_id}")
def get_user(user_id: str, users: UserRegistry = Depends(get_user_registry)):
    _check_user_id(user_id)
    user = users.get(user_id)
    if user is None:
        raise NotFoundError("User not found", f"User with ID {user_id} does not exist")
    return _success("User retrieved successfully", user_to_dict(user))


@app.get("/users/{user_id}/sessions")
def get_user_sessions(
    user_id: str,
    users: UserRegistry = Depends(get_user_registry),
    engine: SessionEngine = Depends(get_session_engine),
):
    _check_user_id(user_id)
    user, sessions = users.sessions_for(user_id)
    return _success(
        "User sessions retrieved successfully",
        [engine.summarize(s, user.username) for s in sessions],
    )


##################################
## Sessions
##################################

@app.post("/sessions", status_code=201)
def create_session(body: SessionCreate, engine: SessionEngine = Depends(get_session_engine)):
    data = engine.create(body.user_id, body.time_limit)
    return _success("Game session created successfully", data)


@app.get("/sessions")
def list_sessions(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
    engine: SessionEngine = Depends(get_session_engine),
):
    data = engine.list_sessions(status=status, user_id=user_id, limit=limit)
    return _success("All game sessions retrieved successfully", data)


@app.get("/sessions/{session_id}")
def get_session(session_id: str, engine: SessionEngine = Depends(get_session_engine)):
    return _success("Session details retrieved successfully", engine.get_progress(session_id))


@app.post("/sessions/{session_id}/answer")
def submit_answer(session_id: str, body: AnswerSubmission, engine: SessionEngine = Depends(get_session_engine)):
    data = engine.submit_answer(session_id, body.user_id, body.question_id, body.answer_index)
    message = "Correct answer!" if data["answer_result"]["is_correct"] else "Incorrect answer"
    return _success(message, data)


##################################
## Questions
##################################

@app.post("/questions", status_code=201)
def create_question(body: QuestionCreate, bank: QuestionBank = Depends(get_question_bank)):
    question = bank.create(**body.model_dump())
    return _success("Question created successfully", question_to_dict(question))


@app.get("/questions")
def list_questions(category: Optional[str] = None, bank: QuestionBank = Depends(get_question_bank)):
    questions = bank.list(category=category)
    return _success("Questions retrieved successfully", [question_to_dict(q) for q in questions])


@app.get("/questions/{question_id}")
def get_question(question_id: str, bank: QuestionBank = Depends(get_question_bank)):
    question = bank.get(question_id)
    if question is None:
        raise NotFoundError("Question not found", f"Trivia question with ID {question_id} does not exist")
    return _success("Question retrieved successfully", question_to_dict(question))


@app.put("/questions/{question_id}")
def update_question(question_id: str, body: QuestionUpdate, bank: QuestionBank = Depends(get_question_bank)):
    question = bank.update(question_id, body.model_dump(exclude_unset=True))
    return _success("Question updated successfully", question_to_dict(question))


@app.delete("/questions/{question_id}")
def delete_question(question_id: str, bank: QuestionBank = Depends(get_question_bank)):
    bank.delete(question_id)
    return _success("Question deleted successfully", {"id": question_id})


##################################
## Admin
##################################

@app.post("/admin/expire_sessions")
def expire_sessions(engine: SessionEngine = Depends(get_session_engine)):
    """
    Expire in-progress sessions whose time limit has run out.
    Meant to be called periodically by a scheduler.
    """
    expired = engine.expire_overdue_sessions()
    return _success(
        f"Expired {len(expired)} sessions",
        {"expired_count": len(expired), "expired_sessions": expired},
    )
