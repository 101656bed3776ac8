import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from . import config
from .errors import (
    AccessDeniedError,
    ConflictError,
    DuplicateAnswerError,
    InvalidStateError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .models import GameSession, Question, SessionStatus, UserAnswer
from .questions import QuestionBank, public_question
from .store import Store
from .users import UserRegistry, is_valid_user_id


logger = logging.getLogger(__name__)

UNKNOWN_USERNAME = "Unknown User"
GAME_RESULTS = {
    SessionStatus.IN_PROGRESS.value: "IN_PROGRESS",
    SessionStatus.USER_WON.value: "WIN",
    SessionStatus.USER_LOST.value: "LOSS",
    SessionStatus.EXPIRED.value: "EXPIRED",
}


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_id(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _percentage(part: int, whole: int) -> float:
    return part / whole * 100 if whole > 0 else 0


def _answer_text(question: Question, answer: UserAnswer) -> Optional[str]:
    if answer.answer_text is not None:
        return answer.answer_text
    if answer.answer_index < len(question.answers):
        return question.answers[answer.answer_index]
    return None


def validate_category_quota(quota: Dict[str, int]) -> Dict[str, int]:
    """
    A quota must name at least one category and ask the same positive number
    of questions from each, so the session size is a multiple of the category
    count.
    """
    if not quota:
        raise ValueError("category quota must name at least one category")
    counts = set()
    for category, count in quota.items():
        if not isinstance(category, str) or not category.strip():
            raise ValueError("category names must be non-empty strings")
        if not _is_int(count) or count <= 0:
            raise ValueError(f"quota for '{category}' must be a positive integer")
        counts.add(count)
    if len(counts) != 1:
        raise ValueError("every category must contribute the same number of questions")
    return dict(quota)


class SessionEngine:
    """
    Drives game sessions from creation to a terminal state.

    A session holds a fixed, pre-drawn list of questions. Each question may be
    answered once; after every answer the score is recomputed from the stored
    answers, and when all questions are answered the session is won if the
    score reaches the win threshold, lost otherwise.
    """

    def __init__(
        self,
        store: Store,
        question_bank: Optional[QuestionBank] = None,
        user_registry: Optional[UserRegistry] = None,
        category_quota: Optional[Dict[str, int]] = None,
        win_threshold: Optional[float] = None,
    ):
        self.store = store
        self.question_bank = question_bank or QuestionBank(store)
        self.user_registry = user_registry or UserRegistry(store)
        self.category_quota = validate_category_quota(
            category_quota if category_quota is not None else config.default_category_quota()
        )
        self.win_threshold = config.WIN_THRESHOLD if win_threshold is None else win_threshold

    @property
    def session_size(self) -> int:
        return sum(self.category_quota.values())

    def session_rules(self, total_questions: Optional[int] = None) -> dict:
        counts = set(self.category_quota.values())
        return {
            "total_questions": total_questions if total_questions is not None else self.session_size,
            "questions_per_category": counts.pop(),
            "categories": list(self.category_quota),
            "win_condition": f"{self.win_threshold:g}% of total possible score points",
            "scoring": "Variable points per question (see question.score field)",
            "note": "Answer each question by submitting to POST /sessions/{session_id}/answer",
        }

    def _win_threshold_text(self, total_possible_score: int) -> str:
        points = round(total_possible_score * self.win_threshold / 100)
        return f"{points} out of {total_possible_score} points"

    # Creation
    def create(self, user_id, time_limit=None) -> dict:
        if not _is_id(user_id):
            raise ValidationError("user_id is required and must be a valid string", "user_id field is required")
        user_id = user_id.strip()
        if not is_valid_user_id(user_id):
            raise ValidationError("Invalid user_id format", "user_id must be a valid UUID")

        if self.user_registry.get(user_id) is None:
            raise NotFoundError("User not found", "Please create a user first using POST /users")

        if time_limit is not None and (not _is_int(time_limit) or time_limit <= 0):
            raise ValidationError("Invalid time limit", "time_limit must be a positive integer if provided")

        questions = self.question_bank.select_for_new_session(self.category_quota)
        session = self.store.create_session(user_id, [q.id for q in questions], time_limit)
        logger.info(
            "[SESSION] Created session %s for user %s with %d questions",
            session.id, user_id, len(questions),
        )

        return {
            "session_id": session.id,
            "user_id": session.user_id,
            "status": session.status,
            "current_score": session.current_score,
            "questions_answered": session.questions_answered,
            "total_questions": len(questions),
            "questions_by_category": dict(Counter(q.category for q in questions)),
            "selected_questions": [public_question(q) for q in questions],
            "started_at": _iso(session.started_at),
            "time_limit": session.time_limit,
            "session_rules": self.session_rules(len(questions)),
        }

    # Scoring
    def _aggregate(self, session: GameSession, questions: Dict[str, Question], answers: List[UserAnswer]) -> dict:
        answered = {a.question_id for a in answers}
        correct = {a.question_id for a in answers if a.is_correct}
        selected = session.selected_questions or []

        total_possible_score = sum(questions[qid].score for qid in selected if qid in questions)
        current_score = sum(questions[qid].score for qid in selected if qid in questions and qid in correct)
        questions_answered = len([qid for qid in selected if qid in answered])
        total_questions = len(selected)

        return {
            "questions_answered": questions_answered,
            "total_questions": total_questions,
            "current_score": current_score,
            "total_possible_score": total_possible_score,
            "score_percentage": _percentage(current_score, total_possible_score),
            "questions_remaining": total_questions - questions_answered,
        }

    @staticmethod
    def _display_progress(aggregate: dict) -> dict:
        progress = dict(aggregate)
        progress["score_percentage"] = round(aggregate["score_percentage"], 2)
        progress["progress_percentage"] = round(
            _percentage(aggregate["questions_answered"], aggregate["total_questions"])
        )
        return progress

    def _load_session(self, session_id) -> GameSession:
        session = self.store.get_session_by_id(session_id.strip())
        if session is None:
            raise NotFoundError("Session not found", f"Game session with ID {session_id} does not exist")
        return session

    # Answering
    def submit_answer(self, session_id, user_id, question_id, answer_index) -> dict:
        if not _is_id(session_id):
            raise ValidationError("Session ID is required", "Valid session ID must be provided")
        if not _is_id(user_id):
            raise ValidationError("User ID is required", "user_id is required to verify session ownership")
        if not _is_id(question_id):
            raise ValidationError("Question ID is required", "question_id must be a non-empty string")
        if not _is_int(answer_index) or answer_index < 0:
            raise ValidationError("Invalid answer index", "answer_index must be a non-negative integer")
        question_id = question_id.strip()

        session = self._load_session(session_id)

        if session.user_id != user_id.strip():
            raise AccessDeniedError(
                "Access denied", "You can only submit answers for your own game sessions"
            )

        if session.status != SessionStatus.IN_PROGRESS.value:
            raise InvalidStateError(
                "Session not active", f"Cannot submit answers to a session with status: {session.status}"
            )

        question = self.store.get_question_by_id(question_id)
        if question is None:
            raise NotFoundError("Question not found", f"Trivia question with ID {question_id} does not exist")

        if question.id not in (session.selected_questions or []):
            raise ValidationError(
                "Question not in session", "This question is not part of your current game session"
            )

        if answer_index >= len(question.answers):
            raise ValidationError(
                "Invalid answer index",
                f"answer_index must be between 0 and {len(question.answers) - 1} for this question",
            )

        duplicate = ConflictError(
            "Answer already submitted",
            "You have already answered this question. Only one attempt per question is allowed.",
        )
        if self.store.get_answer(session.id, question.id) is not None:
            raise duplicate

        is_correct = answer_index == question.correct_answer_index
        try:
            self.store.create_answer(
                session.id, question.id, answer_index, is_correct, answer_text=question.answers[answer_index]
            )
        except DuplicateAnswerError as e:
            logger.warning("[SUBMIT] Concurrent duplicate answer rejected for session %s", session.id)
            raise duplicate from e

        answers = self.store.get_answers_for_session(session.id)
        questions = self.store.get_questions_by_ids(session.selected_questions)
        aggregate = self._aggregate(session, questions, answers)

        game_complete = aggregate["questions_answered"] >= aggregate["total_questions"]
        update = {
            "current_score": aggregate["current_score"],
            "questions_answered": aggregate["questions_answered"],
        }
        if game_complete:
            won = aggregate["score_percentage"] >= self.win_threshold
            update["status"] = (SessionStatus.USER_WON if won else SessionStatus.USER_LOST).value
            update["completed_at"] = datetime.utcnow()

        updated = self.store.update_session(session.id, update, expected_status=SessionStatus.IN_PROGRESS.value)
        if updated is None:
            # Expired or finished by another request after the status check
            raise InvalidStateError("Session not active", "The session ended before this answer was recorded")
        if game_complete:
            logger.info(
                "[SUBMIT] Session %s completed: %s (%.2f%%)",
                session.id, updated.status, aggregate["score_percentage"],
            )

        correct_answer = question.answers[question.correct_answer_index]
        progress = self._display_progress(aggregate)
        result = {
            "answer_result": {
                "question_id": question.id,
                "your_answer_index": answer_index,
                "your_answer": question.answers[answer_index],
                "is_correct": is_correct,
                "correct_answer_index": question.correct_answer_index,
                "correct_answer": correct_answer,
                "explanation": "Well done!" if is_correct else f"The correct answer was: {correct_answer}",
            },
            "session_progress": progress,
            "session_status": updated.status,
            "game_complete": game_complete,
        }
        if game_complete:
            result["final_results"] = {
                "final_score": progress["current_score"],
                "total_possible_score": progress["total_possible_score"],
                "total_questions": progress["total_questions"],
                "score_percentage": progress["score_percentage"],
                "result": (
                    "Congratulations! You won!"
                    if updated.status == SessionStatus.USER_WON.value
                    else "Game over. Better luck next time!"
                ),
                "win_threshold": (
                    f"{self.win_threshold:g}% of total possible score "
                    f"({self._win_threshold_text(progress['total_possible_score'])})"
                ),
            }
        return result

    # Reading
    def get_progress(self, session_id) -> dict:
        if not _is_id(session_id):
            raise ValidationError("Session ID is required", "Valid session ID must be provided")
        session = self._load_session(session_id)

        answers = self.store.get_answers_for_session(session.id)
        questions = self.store.get_questions_by_ids(session.selected_questions)
        answers_by_question = {a.question_id: a for a in answers}
        aggregate = self._aggregate(session, questions, answers)

        views = []
        for qid in session.selected_questions or []:
            question = questions.get(qid)
            answer = answers_by_question.get(qid)
            if question is None:
                view = {"id": qid, "available": False, "answered": answer is not None}
                if answer is not None:
                    view["user_answer_index"] = answer.answer_index
                    view["is_correct"] = answer.is_correct
            elif answer is None:
                view = public_question(question)
                view["answered"] = False
            else:
                view = public_question(question)
                view.update({
                    "answered": True,
                    "user_answer_index": answer.answer_index,
                    "user_answer": _answer_text(question, answer),
                    "is_correct": answer.is_correct,
                    "correct_answer_index": question.correct_answer_index,
                    "correct_answer": question.answers[question.correct_answer_index],
                })
            views.append(view)

        return {
            "session": {
                "id": session.id,
                "user_id": session.user_id,
                "status": session.status,
                "current_score": aggregate["current_score"],
                "questions_answered": aggregate["questions_answered"],
                "total_questions": aggregate["total_questions"],
                "started_at": _iso(session.started_at),
                "time_limit": session.time_limit,
                "completed_at": _iso(session.completed_at),
            },
            "progress": self._display_progress(aggregate),
            "questions": views,
            "game_rules": {
                "total_questions": aggregate["total_questions"],
                "win_condition": f"{self.win_threshold:g}% of total possible score points",
                "win_threshold": self._win_threshold_text(aggregate["total_possible_score"]),
            },
        }

    def _username_for(self, user_id: str) -> str:
        try:
            user = self.user_registry.get(user_id)
        except StoreError as e:
            logger.warning("[SESSIONS] Username lookup failed for user %s: %s", user_id, e)
            return UNKNOWN_USERNAME
        if user is None or not user.username:
            return UNKNOWN_USERNAME
        return user.username

    def summarize(self, session: GameSession, username: Optional[str] = None) -> dict:
        total_questions = len(session.selected_questions or [])
        return {
            "session_id": session.id,
            "user_id": session.user_id,
            "username": username,
            "status": session.status,
            "progress": {
                "questions_answered": session.questions_answered,
                "total_questions": total_questions,
                "current_score": session.current_score,
                "progress_percentage": round(_percentage(session.questions_answered, total_questions)),
            },
            "timing": {
                "started_at": _iso(session.started_at),
                "completed_at": _iso(session.completed_at),
                "time_limit": session.time_limit,
            },
            "game_result": GAME_RESULTS.get(session.status, "IN_PROGRESS"),
        }

    def list_sessions(self, status=None, user_id=None, limit=None) -> dict:
        valid_statuses = [s.value for s in SessionStatus]
        if status is not None and status not in valid_statuses:
            raise ValidationError("Invalid status filter", f"status must be one of: {', '.join(valid_statuses)}")
        if limit is not None and (not _is_int(limit) or limit <= 0):
            raise ValidationError("Invalid limit", "limit must be a positive integer")

        all_sessions = self.store.get_all_sessions()
        sessions = [
            s for s in all_sessions
            if (status is None or s.status == status) and (user_id is None or s.user_id == user_id)
        ]
        if limit is not None:
            sessions = sessions[:limit]

        statuses = Counter(s.status for s in all_sessions)
        won = statuses[SessionStatus.USER_WON.value]
        lost = statuses[SessionStatus.USER_LOST.value]
        completed = won + lost

        return {
            "filters_applied": {"status": status, "user_id": user_id, "limit": limit},
            "summary": {
                "total_sessions": len(all_sessions),
                "active_sessions": statuses[SessionStatus.IN_PROGRESS.value],
                "completed_sessions": completed,
                "won_sessions": won,
                "lost_sessions": lost,
                "expired_sessions": statuses[SessionStatus.EXPIRED.value],
                "win_rate": round(_percentage(won, completed)),
                "filtered_results": len(sessions),
            },
            "sessions": [self.summarize(s, self._username_for(s.user_id)) for s in sessions],
        }

    # Timeouts
    def expire_overdue_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Move timed-out in-progress sessions to the expired state."""
        now = now or datetime.utcnow()
        expired = []
        for session in self.store.get_in_progress_sessions():
            if not session.time_limit or session.started_at is None:
                continue
            if session.started_at + timedelta(seconds=session.time_limit) <= now:
                updated = self.store.update_session(
                    session.id,
                    {"status": SessionStatus.EXPIRED.value, "completed_at": now},
                    expected_status=SessionStatus.IN_PROGRESS.value,
                )
                if updated is None:
                    continue
                expired.append(session.id)
                logger.info("[EXPIRE] Session %s expired after %ds", session.id, session.time_limit)
        return expired
