import random

import pytest
from fastapi.testclient import TestClient

from backend.main import app, get_store
from backend.questions import QuestionBank
from backend.sessions import SessionEngine
from backend.store import Store
from backend.users import UserRegistry


CATEGORIES = ["Sports", "Science", "Music", "Technology"]
QUOTA = {category: 4 for category in CATEGORIES}


@pytest.fixture
def store():
    """Create a store backed by an in-memory database."""
    store = Store.open("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def bank(store):
    return QuestionBank(store, rng=random.Random(1234))


@pytest.fixture
def users(store):
    return UserRegistry(store)


@pytest.fixture
def engine(store, bank, users):
    return SessionEngine(store, bank, users, category_quota=QUOTA, win_threshold=80)


@pytest.fixture
def player(users):
    return users.create("player one")


def make_question(bank, category, n, score=10, correct=0):
    return bank.create(
        category=category,
        prompt=f"{category} question {n}?",
        answers=[f"{category} {n} A", f"{category} {n} B", f"{category} {n} C", f"{category} {n} D"],
        correct_answer_index=correct,
        score=score,
    )


@pytest.fixture
def question_pool(bank):
    """Four questions in each of the four session categories, 10 points each."""
    return [make_question(bank, category, n) for category in CATEGORIES for n in range(4)]


@pytest.fixture
def client(store):
    """Create a test client wired to the in-memory store."""
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def answer_session(engine, session_id, user_id, correct_count):
    """Answer every question of a session, the first `correct_count` correctly."""
    progress = engine.get_progress(session_id)
    result = None
    for i, view in enumerate(progress["questions"]):
        question = engine.store.get_question_by_id(view["id"])
        if i < correct_count:
            index = question.correct_answer_index
        else:
            index = (question.correct_answer_index + 1) % len(question.answers)
        result = engine.submit_answer(session_id, user_id, view["id"], index)
    return result
