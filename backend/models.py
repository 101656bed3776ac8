import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class SessionStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    USER_WON = "user_won"
    USER_LOST = "user_lost"
    EXPIRED = "expired"


class User(Base):
    __tablename__ = "users"
    user_id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Question(Base):
    __tablename__ = "trivia_questions"
    id = Column(String(36), primary_key=True, default=new_id)
    category = Column(String, index=True, nullable=False)
    prompt = Column(Text, nullable=False)
    answers = Column(JSON, nullable=False)  # ordered list of 2..4 strings
    correct_answer_index = Column(Integer, nullable=False)
    score = Column(Integer, nullable=False)
    is_ai_generated = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class GameSession(Base):
    __tablename__ = "game_sessions"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.user_id"), index=True, nullable=False)
    status = Column(String(20), index=True, default=SessionStatus.IN_PROGRESS.value, nullable=False)
    current_score = Column(Integer, default=0, nullable=False)
    questions_answered = Column(Integer, default=0, nullable=False)
    selected_questions = Column(JSON, nullable=False)  # question ids, fixed at creation
    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    time_limit = Column(Integer, nullable=True)  # seconds
    completed_at = Column(DateTime, nullable=True)


class UserAnswer(Base):
    __tablename__ = "user_answers"
    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_user_answers_session_question"),
    )
    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(36), ForeignKey("game_sessions.id"), index=True, nullable=False)
    # No foreign key: questions may be deleted once their sessions are finished
    question_id = Column(String(36), index=True, nullable=False)
    answer_index = Column(Integer, nullable=False)
    answer_text = Column(Text, nullable=True)  # chosen answer as shown when submitted
    is_correct = Column(Boolean, nullable=False)
    answered_at = Column(DateTime, default=datetime.utcnow)


class SessionQuestion(Base):
    """One row per drawn question, so in-use checks are a single indexed query."""
    __tablename__ = "session_questions"
    session_id = Column(String(36), ForeignKey("game_sessions.id"), primary_key=True)
    question_id = Column(String(36), primary_key=True, index=True)
    position = Column(Integer, nullable=False)
