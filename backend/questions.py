import logging
import random
from typing import Dict, List, Optional

from .errors import ConflictError, NotFoundError, ValidationError
from .models import Question
from .store import QUESTION_FIELDS, Store


logger = logging.getLogger(__name__)

MIN_ANSWERS = 2
MAX_ANSWERS = 4


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_question_fields(data: dict) -> dict:
    """
    Validate a complete set of question fields and return them normalized
    (text trimmed). Raises ValidationError on the first problem found.
    """
    category = data.get("category")
    if not isinstance(category, str) or not category.strip():
        raise ValidationError("Invalid category", "category must be a non-empty string")

    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Invalid prompt", "prompt must be a non-empty string")

    answers = data.get("answers")
    if not isinstance(answers, (list, tuple)) or not MIN_ANSWERS <= len(answers) <= MAX_ANSWERS:
        raise ValidationError(
            "Invalid answers",
            f"answers must be a list of {MIN_ANSWERS} to {MAX_ANSWERS} strings",
        )
    for i, answer in enumerate(answers):
        if not isinstance(answer, str) or not answer.strip():
            raise ValidationError("Invalid answers", f"answer {i} must be a non-empty string")

    index = data.get("correct_answer_index")
    if not _is_int(index) or not 0 <= index < len(answers):
        raise ValidationError(
            "Invalid correct answer index",
            f"correct_answer_index must be an integer between 0 and {len(answers) - 1}",
        )

    score = data.get("score")
    if not _is_int(score) or score <= 0:
        raise ValidationError("Invalid score", "score must be a positive integer")

    is_ai_generated = data.get("is_ai_generated", False)
    if not isinstance(is_ai_generated, bool):
        raise ValidationError("Invalid is_ai_generated", "is_ai_generated must be a boolean")

    return {
        "category": category.strip(),
        "prompt": prompt.strip(),
        "answers": [a.strip() for a in answers],
        "correct_answer_index": index,
        "score": score,
        "is_ai_generated": is_ai_generated,
    }


def question_to_dict(question: Question) -> dict:
    """Full admin view, including the correct answer."""
    return {
        "id": question.id,
        "category": question.category,
        "prompt": question.prompt,
        "answers": list(question.answers),
        "correct_answer_index": question.correct_answer_index,
        "score": question.score,
        "is_ai_generated": bool(question.is_ai_generated),
        "created_at": question.created_at.isoformat() if question.created_at else None,
        "updated_at": question.updated_at.isoformat() if question.updated_at else None,
    }


def public_question(question: Question) -> dict:
    """Player view of a question; never carries the correct answer."""
    return {
        "id": question.id,
        "category": question.category,
        "prompt": question.prompt,
        "answers": list(question.answers),
        "score": question.score,
    }


class QuestionBank:
    def __init__(self, store: Store, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    def create(self, category, prompt, answers, correct_answer_index, score, is_ai_generated=False) -> Question:
        fields = validate_question_fields({
            "category": category,
            "prompt": prompt,
            "answers": answers,
            "correct_answer_index": correct_answer_index,
            "score": score,
            "is_ai_generated": is_ai_generated,
        })
        question = self.store.create_question(fields)
        logger.info("[QUESTIONS] Created question %s in category '%s'", question.id, question.category)
        return question

    def get(self, question_id: str) -> Optional[Question]:
        if not isinstance(question_id, str) or not question_id.strip():
            return None
        return self.store.get_question_by_id(question_id.strip())

    def list(self, category: Optional[str] = None) -> List[Question]:
        return self.store.get_all_questions(category=category)

    def is_in_use(self, question_id: str) -> bool:
        return self.store.is_question_in_use(question_id)

    def _get_mutable(self, question_id: str, action: str) -> Question:
        question = self.get(question_id)
        if question is None:
            raise NotFoundError("Question not found", f"Trivia question with ID {question_id} does not exist")
        if self.is_in_use(question.id):
            raise ConflictError(
                "Question in use",
                f"Cannot {action} a question that is part of an in-progress game session",
            )
        return question

    def update(self, question_id: str, partial: dict) -> Question:
        question = self._get_mutable(question_id, "update")

        unknown = sorted(set(partial) - set(QUESTION_FIELDS))
        if unknown:
            raise ValidationError("Invalid fields", f"Unknown question fields: {', '.join(unknown)}")

        merged = {
            "category": question.category,
            "prompt": question.prompt,
            "answers": list(question.answers),
            "correct_answer_index": question.correct_answer_index,
            "score": question.score,
            "is_ai_generated": bool(question.is_ai_generated),
        }
        merged.update(partial)
        fields = validate_question_fields(merged)

        updated = self.store.update_question(question.id, fields)
        if updated is None:
            raise NotFoundError("Question not found", f"Trivia question with ID {question_id} does not exist")
        logger.info("[QUESTIONS] Updated question %s", updated.id)
        return updated

    def delete(self, question_id: str):
        question = self._get_mutable(question_id, "delete")
        if not self.store.delete_question(question.id):
            raise NotFoundError("Question not found", f"Trivia question with ID {question_id} does not exist")
        logger.info("[QUESTIONS] Deleted question %s", question.id)

    def select_for_new_session(self, category_quota: Dict[str, int]) -> List[Question]:
        """
        Draw the question set for a new session: `count` random questions from
        each category, then shuffle the combined pool so that a question's
        position says nothing about its category.
        """
        drawn = self.store.get_random_questions_by_category(category_quota, rng=self.rng)
        self.rng.shuffle(drawn)
        return drawn
