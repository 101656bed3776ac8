import logging
import random
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import exists, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import Base, make_engine, make_session_factory
from .errors import DuplicateAnswerError, InsufficientDataError, StoreError
from .models import GameSession, Question, SessionQuestion, SessionStatus, User, UserAnswer, new_id


logger = logging.getLogger(__name__)


QUESTION_FIELDS = ("category", "prompt", "answers", "correct_answer_index", "score", "is_ai_generated")
SESSION_MUTABLE_FIELDS = ("current_score", "questions_answered", "status", "completed_at")


class Store:
    """
    SQLAlchemy-backed persistence for users, questions, sessions and answers.

    Each call runs in its own short-lived ORM session and transaction. Objects
    are returned detached (expire_on_commit=False), so callers can read them
    freely but changes only reach the database through the update methods.
    """

    def __init__(self, database_url: str, engine=None):
        self.database_url = database_url
        self.engine = engine if engine is not None else make_engine(database_url)
        self._session_factory = make_session_factory(self.engine)

    @classmethod
    def open(cls, database_url: str) -> "Store":
        store = cls(database_url)
        store.create_schema()
        logger.info("[STORE] Opened store at %s", store.engine.url.render_as_string(hide_password=True))
        return store

    def create_schema(self):
        Base.metadata.create_all(bind=self.engine)

    def close(self):
        self.engine.dispose()
        logger.info("[STORE] Closed store")

    def check_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error("[STORE] Connection check failed: %s", e)
            return False

    @contextmanager
    def _transaction(self, operation: str):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[STORE] %s failed: %s", operation, e)
            raise StoreError(f"Failed to {operation}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # User operations
    def create_user(self, username: Optional[str] = None) -> User:
        with self._transaction("create user") as db:
            user = User(user_id=new_id(), username=username, created_at=datetime.utcnow())
            db.add(user)
            db.flush()
            return user

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._transaction("get user") as db:
            return db.get(User, user_id)

    def get_sessions_for_user(self, user_id: str) -> List[GameSession]:
        with self._transaction("get user sessions") as db:
            stmt = (
                select(GameSession)
                .where(GameSession.user_id == user_id)
                .order_by(GameSession.started_at.desc())
            )
            return list(db.scalars(stmt).all())

    # Question operations
    def create_question(self, data: dict) -> Question:
        with self._transaction("create question") as db:
            now = datetime.utcnow()
            question = Question(
                id=new_id(),
                **{k: data[k] for k in QUESTION_FIELDS if k in data},
                created_at=now,
                updated_at=now,
            )
            db.add(question)
            db.flush()
            return question

    def get_all_questions(self, category: Optional[str] = None) -> List[Question]:
        with self._transaction("get questions") as db:
            stmt = select(Question).order_by(Question.created_at.desc())
            if category is not None:
                stmt = stmt.where(Question.category == category)
            return list(db.scalars(stmt).all())

    def get_question_by_id(self, question_id: str) -> Optional[Question]:
        with self._transaction("get question") as db:
            return db.get(Question, question_id)

    def get_questions_by_ids(self, question_ids: Iterable[str]) -> Dict[str, Question]:
        ids = list(question_ids)
        if not ids:
            return {}
        with self._transaction("get questions") as db:
            rows = db.scalars(select(Question).where(Question.id.in_(ids))).all()
            return {q.id: q for q in rows}

    def update_question(self, question_id: str, partial: dict) -> Optional[Question]:
        with self._transaction("update question") as db:
            question = db.get(Question, question_id)
            if question is None:
                return None
            for key in QUESTION_FIELDS:
                if key in partial:
                    setattr(question, key, partial[key])
            question.updated_at = datetime.utcnow()
            db.flush()
            return question

    def delete_question(self, question_id: str) -> bool:
        with self._transaction("delete question") as db:
            question = db.get(Question, question_id)
            if question is None:
                return False
            db.delete(question)
            return True

    def get_random_questions_by_category(self, quota: Dict[str, int], rng: Optional[random.Random] = None) -> List[Question]:
        """
        Draw `count` questions per category without replacement.
        Raises InsufficientDataError when a category holds too few questions.
        """
        rng = rng or random.Random()
        drawn = []
        with self._transaction("select session questions") as db:
            for category, count in quota.items():
                stmt = (
                    select(Question)
                    .where(Question.category == category)
                    .order_by(Question.created_at, Question.id)
                )
                pool = list(db.scalars(stmt).all())
                if len(pool) < count:
                    raise InsufficientDataError(
                        "Unable to create session",
                        f"Not enough questions in category '{category}': need {count}, found {len(pool)}",
                    )
                drawn.extend(rng.sample(pool, count))
        return drawn

    # Session operations
    def create_session(self, user_id: str, question_ids: List[str], time_limit: Optional[int] = None) -> GameSession:
        with self._transaction("create game session") as db:
            session = GameSession(
                id=new_id(),
                user_id=user_id,
                status=SessionStatus.IN_PROGRESS.value,
                current_score=0,
                questions_answered=0,
                selected_questions=list(question_ids),
                started_at=datetime.utcnow(),
                time_limit=time_limit,
                completed_at=None,
            )
            db.add(session)
            db.flush()
            db.add_all([
                SessionQuestion(session_id=session.id, question_id=qid, position=i)
                for i, qid in enumerate(session.selected_questions)
            ])
            return session

    def get_session_by_id(self, session_id: str) -> Optional[GameSession]:
        with self._transaction("get game session") as db:
            return db.get(GameSession, session_id)

    def get_all_sessions(self) -> List[GameSession]:
        with self._transaction("get game sessions") as db:
            stmt = select(GameSession).order_by(GameSession.started_at.desc())
            return list(db.scalars(stmt).all())

    def get_in_progress_sessions(self) -> List[GameSession]:
        with self._transaction("get active sessions") as db:
            stmt = select(GameSession).where(GameSession.status == SessionStatus.IN_PROGRESS.value)
            return list(db.scalars(stmt).all())

    def is_question_in_use(self, question_id: str) -> bool:
        with self._transaction("check question usage") as db:
            stmt = select(
                exists()
                .where(SessionQuestion.question_id == question_id)
                .where(SessionQuestion.session_id == GameSession.id)
                .where(GameSession.status == SessionStatus.IN_PROGRESS.value)
            )
            return bool(db.scalar(stmt))

    def update_session(
        self, session_id: str, partial: dict, expected_status: Optional[str] = None
    ) -> Optional[GameSession]:
        """
        Apply `partial` to a session. With `expected_status`, the write only
        happens while the session still has that status; None means no row
        matched.
        """
        values = {k: partial[k] for k in SESSION_MUTABLE_FIELDS if k in partial}
        with self._transaction("update game session") as db:
            stmt = update(GameSession).where(GameSession.id == session_id)
            if expected_status is not None:
                stmt = stmt.where(GameSession.status == expected_status)
            if values:
                result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
                if result.rowcount == 0:
                    return None
            return db.get(GameSession, session_id)

    # Answer operations
    def create_answer(
        self,
        session_id: str,
        question_id: str,
        answer_index: int,
        is_correct: bool,
        answer_text: Optional[str] = None,
    ) -> UserAnswer:
        db = self._session_factory()
        try:
            answer = UserAnswer(
                id=new_id(),
                session_id=session_id,
                question_id=question_id,
                answer_index=answer_index,
                answer_text=answer_text,
                is_correct=is_correct,
                answered_at=datetime.utcnow(),
            )
            db.add(answer)
            db.commit()
            return answer
        except IntegrityError as e:
            db.rollback()
            logger.warning("[STORE] Duplicate answer for session %s question %s", session_id, question_id)
            raise DuplicateAnswerError(session_id, question_id) from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[STORE] create answer failed: %s", e)
            raise StoreError("Failed to create answer") from e
        finally:
            db.close()

    def get_answer(self, session_id: str, question_id: str) -> Optional[UserAnswer]:
        with self._transaction("get answer") as db:
            stmt = select(UserAnswer).where(
                UserAnswer.session_id == session_id,
                UserAnswer.question_id == question_id,
            )
            return db.scalars(stmt).first()

    def get_answers_for_session(self, session_id: str) -> List[UserAnswer]:
        with self._transaction("get session answers") as db:
            stmt = (
                select(UserAnswer)
                .where(UserAnswer.session_id == session_id)
                .order_by(UserAnswer.answered_at)
            )
            return list(db.scalars(stmt).all())
