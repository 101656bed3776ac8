from collections import Counter
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from backend.errors import (
    AccessDeniedError,
    ConflictError,
    InsufficientDataError,
    InvalidStateError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from backend.models import SessionStatus
from backend.sessions import SessionEngine, validate_category_quota

from conftest import CATEGORIES, QUOTA, answer_session, make_question


UNKNOWN_ID = "3f2b8c1e-9d4a-4e6f-8a1b-2c3d4e5f6a7b"


def _first_question(engine, created):
    return engine.store.get_question_by_id(created["selected_questions"][0]["id"])


class TestCreateSession:
    def test_creates_sixteen_question_session(self, engine, player, question_pool):
        created = engine.create(player.user_id, time_limit=300)

        ids = [q["id"] for q in created["selected_questions"]]
        assert created["status"] == "in_progress"
        assert created["current_score"] == 0
        assert created["questions_answered"] == 0
        assert created["time_limit"] == 300
        assert len(ids) == len(set(ids)) == 16
        assert created["questions_by_category"] == QUOTA
        assert Counter(q["category"] for q in created["selected_questions"]) == Counter(QUOTA)

        session = engine.store.get_session_by_id(created["session_id"])
        assert session.selected_questions == ids
        assert session.user_id == player.user_id

    def test_never_reveals_correct_answers(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        for view in created["selected_questions"]:
            assert "correct_answer_index" not in view
            assert "correct_answer" not in view

    @pytest.mark.parametrize("user_id", [None, "", "   ", 12, "not-a-uuid"])
    def test_rejects_malformed_user_id(self, engine, question_pool, user_id):
        with pytest.raises(ValidationError):
            engine.create(user_id)

    def test_unknown_user(self, engine, question_pool):
        with pytest.raises(NotFoundError):
            engine.create(UNKNOWN_ID)

    @pytest.mark.parametrize("time_limit", [0, -10, 2.5, "60", True])
    def test_rejects_bad_time_limit(self, engine, player, question_pool, time_limit):
        with pytest.raises(ValidationError):
            engine.create(player.user_id, time_limit=time_limit)

    def test_insufficient_questions(self, engine, bank, player):
        for category in CATEGORIES[:3]:
            for n in range(4):
                make_question(bank, category, n)
        with pytest.raises(InsufficientDataError):
            engine.create(player.user_id)
        assert engine.store.get_all_sessions() == []


class TestQuotaConfig:
    def test_custom_quota(self, store, bank, users, player):
        for category in ["History", "Art"]:
            for n in range(3):
                make_question(bank, category, n)
        engine = SessionEngine(store, bank, users, category_quota={"History": 2, "Art": 2})

        created = engine.create(player.user_id)
        assert created["total_questions"] == 4
        assert created["questions_by_category"] == {"History": 2, "Art": 2}

    @pytest.mark.parametrize("quota", [{}, {"A": 0}, {"A": 2, "B": 3}, {"": 1}, {"A": "4"}])
    def test_rejects_invalid_quota(self, quota):
        with pytest.raises(ValueError):
            validate_category_quota(quota)


class TestSubmitAnswerValidation:
    @pytest.fixture
    def created(self, engine, player, question_pool):
        return engine.create(player.user_id)

    @pytest.mark.parametrize("session_id,user_id,question_id,answer_index", [
        ("", "u", "q", 0),
        ("s", None, "q", 0),
        ("s", "u", "   ", 0),
        ("s", "u", "q", -1),
        ("s", "u", "q", "1"),
        ("s", "u", "q", None),
        ("s", "u", "q", False),
    ])
    def test_shape_checks(self, engine, session_id, user_id, question_id, answer_index):
        with pytest.raises(ValidationError):
            engine.submit_answer(session_id, user_id, question_id, answer_index)

    def test_unknown_session(self, engine, player):
        with pytest.raises(NotFoundError):
            engine.submit_answer(UNKNOWN_ID, player.user_id, "q", 0)

    def test_other_users_session(self, engine, users, created):
        intruder = users.create("intruder")
        question_id = created["selected_questions"][0]["id"]
        with pytest.raises(AccessDeniedError):
            engine.submit_answer(created["session_id"], intruder.user_id, question_id, 0)

    def test_ownership_checked_before_question(self, engine, users, created):
        intruder = users.create("intruder")
        with pytest.raises(AccessDeniedError):
            engine.submit_answer(created["session_id"], intruder.user_id, UNKNOWN_ID, 99)

    def test_unknown_question(self, engine, player, created):
        with pytest.raises(NotFoundError):
            engine.submit_answer(created["session_id"], player.user_id, UNKNOWN_ID, 0)

    def test_question_not_in_session(self, engine, bank, player, created):
        outsider = make_question(bank, "Sports", 99)
        with pytest.raises(ValidationError) as exc_info:
            engine.submit_answer(created["session_id"], player.user_id, outsider.id, 0)
        assert exc_info.value.message == "Question not in session"

    def test_answer_index_out_of_range(self, engine, player, created):
        question = _first_question(engine, created)
        with pytest.raises(ValidationError) as exc_info:
            engine.submit_answer(created["session_id"], player.user_id, question.id, len(question.answers))
        assert exc_info.value.message == "Invalid answer index"

    def test_duplicate_answer(self, engine, player, created):
        question = _first_question(engine, created)
        engine.submit_answer(created["session_id"], player.user_id, question.id, 0)
        with pytest.raises(ConflictError):
            engine.submit_answer(created["session_id"], player.user_id, question.id, 1)

        progress = engine.get_progress(created["session_id"])
        assert progress["progress"]["questions_answered"] == 1


class TestScoring:
    def test_correct_answer_result(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        question = _first_question(engine, created)

        result = engine.submit_answer(
            created["session_id"], player.user_id, question.id, question.correct_answer_index
        )

        assert result["answer_result"]["is_correct"] is True
        assert result["answer_result"]["correct_answer"] == question.answers[question.correct_answer_index]
        assert result["session_progress"] == {
            "questions_answered": 1,
            "total_questions": 16,
            "current_score": 10,
            "total_possible_score": 160,
            "score_percentage": 6.25,
            "progress_percentage": 6,
            "questions_remaining": 15,
        }
        assert result["session_status"] == "in_progress"
        assert result["game_complete"] is False
        assert "final_results" not in result

    def test_incorrect_answer_result(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        question = _first_question(engine, created)

        result = engine.submit_answer(created["session_id"], player.user_id, question.id, 2)

        assert result["answer_result"]["is_correct"] is False
        assert result["answer_result"]["your_answer"] == question.answers[2]
        assert result["answer_result"]["explanation"].startswith("The correct answer was")
        assert result["session_progress"]["current_score"] == 0

    def test_thirteen_correct_wins(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        result = answer_session(engine, created["session_id"], player.user_id, correct_count=13)

        assert result["game_complete"] is True
        assert result["session_status"] == "user_won"
        final = result["final_results"]
        assert final["final_score"] == 130
        assert final["total_possible_score"] == 160
        assert final["score_percentage"] == 81.25
        assert final["result"] == "Congratulations! You won!"
        assert "128 out of 160" in final["win_threshold"]

        session = engine.store.get_session_by_id(created["session_id"])
        assert session.status == SessionStatus.USER_WON.value
        assert session.current_score == 130
        assert session.questions_answered == 16
        assert session.completed_at is not None

    def test_twelve_correct_loses(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        result = answer_session(engine, created["session_id"], player.user_id, correct_count=12)

        assert result["session_status"] == "user_lost"
        assert result["final_results"]["score_percentage"] == 75
        assert result["final_results"]["result"] == "Game over. Better luck next time!"

    def test_weighted_scores(self, engine, bank, player):
        for category in CATEGORIES:
            for n in range(4):
                make_question(bank, category, n, score=n + 1)
        created = engine.create(player.user_id)

        result = answer_session(engine, created["session_id"], player.user_id, correct_count=16)
        assert result["final_results"]["final_score"] == 40
        assert result["final_results"]["total_possible_score"] == 40
        assert result["session_status"] == "user_won"

    def test_terminal_session_rejects_answers(self, engine, bank, player, question_pool):
        created = engine.create(player.user_id)
        answer_session(engine, created["session_id"], player.user_id, correct_count=16)
        question = _first_question(engine, created)

        with pytest.raises(InvalidStateError):
            engine.submit_answer(created["session_id"], player.user_id, question.id, 0)

    def test_aggregates_recomputed_from_answers(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        # Corrupt the stored counters; the next answer must repair them
        engine.store.update_session(created["session_id"], {"current_score": 999, "questions_answered": 7})
        question = _first_question(engine, created)

        result = engine.submit_answer(
            created["session_id"], player.user_id, question.id, question.correct_answer_index
        )
        assert result["session_progress"]["current_score"] == 10
        assert result["session_progress"]["questions_answered"] == 1


class TestProgress:
    def test_redacts_unanswered_questions(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        question = _first_question(engine, created)
        engine.submit_answer(created["session_id"], player.user_id, question.id, 1)

        progress = engine.get_progress(created["session_id"])
        views = {v["id"]: v for v in progress["questions"]}

        answered = views.pop(question.id)
        assert answered["answered"] is True
        assert answered["user_answer_index"] == 1
        assert answered["correct_answer_index"] == question.correct_answer_index
        assert answered["correct_answer"] == question.answers[question.correct_answer_index]

        assert len(views) == 15
        for view in views.values():
            assert view["answered"] is False
            assert "correct_answer_index" not in view
            assert "correct_answer" not in view
            assert "is_correct" not in view

    def test_progress_is_read_only(self, engine, player, question_pool):
        created = engine.create(player.user_id)
        with patch.object(engine.store, "update_session") as update_session:
            progress = engine.get_progress(created["session_id"])
        update_session.assert_not_called()
        assert progress["progress"]["questions_remaining"] == 16
        assert progress["progress"]["total_possible_score"] == 160
        assert progress["session"]["status"] == "in_progress"
        assert progress["game_rules"]["win_threshold"] == "128 out of 160 points"

    def test_deleted_question_after_completion(self, engine, bank, player, question_pool):
        created = engine.create(player.user_id)
        answer_session(engine, created["session_id"], player.user_id, correct_count=16)
        question = _first_question(engine, created)
        bank.delete(question.id)

        progress = engine.get_progress(created["session_id"])
        view = next(v for v in progress["questions"] if v["id"] == question.id)
        assert view["available"] is False
        assert view["answered"] is True
        assert progress["session"]["status"] == "user_won"

    def test_answer_text_survives_question_edit(self, engine, bank, player, question_pool):
        """Test that an edited question does not break the stored answer of a finished session."""
        created = engine.create(player.user_id)
        question = _first_question(engine, created)
        engine.submit_answer(created["session_id"], player.user_id, question.id, 3)
        for view in created["selected_questions"][1:]:
            engine.submit_answer(created["session_id"], player.user_id, view["id"], 0)

        bank.update(question.id, {"answers": ["x", "y"], "correct_answer_index": 0})

        progress = engine.get_progress(created["session_id"])
        view = next(v for v in progress["questions"] if v["id"] == question.id)
        assert view["user_answer_index"] == 3
        assert view["user_answer"] == question.answers[3]
        assert view["correct_answer"] == "x"

    def test_out_of_range_answer_without_text(self, engine, bank, player, question_pool):
        created = engine.create(player.user_id, time_limit=1)
        question = _first_question(engine, created)
        engine.store.create_answer(created["session_id"], question.id, 3, False)
        engine.expire_overdue_sessions(now=datetime.utcnow() + timedelta(seconds=5))

        bank.update(question.id, {"answers": ["x", "y"], "correct_answer_index": 0})

        progress = engine.get_progress(created["session_id"])
        view = next(v for v in progress["questions"] if v["id"] == question.id)
        assert view["user_answer_index"] == 3
        assert view["user_answer"] is None

    def test_unknown_session(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_progress(UNKNOWN_ID)
        with pytest.raises(ValidationError):
            engine.get_progress("")


class TestListSessions:
    def test_filters_and_order(self, engine, users, player, question_pool):
        other = users.create("other")
        first = engine.create(player.user_id)
        second = engine.create(other.user_id)
        third = engine.create(player.user_id)
        answer_session(engine, first["session_id"], player.user_id, correct_count=16)

        listing = engine.list_sessions()
        assert [s["session_id"] for s in listing["sessions"]] == [
            third["session_id"], second["session_id"], first["session_id"]
        ]
        assert listing["summary"]["total_sessions"] == 3
        assert listing["summary"]["active_sessions"] == 2
        assert listing["summary"]["won_sessions"] == 1
        assert listing["summary"]["win_rate"] == 100

        mine = engine.list_sessions(user_id=player.user_id, status="in_progress")
        assert [s["session_id"] for s in mine["sessions"]] == [third["session_id"]]
        assert mine["sessions"][0]["username"] == "player one"
        assert mine["summary"]["filtered_results"] == 1

        assert len(engine.list_sessions(limit=2)["sessions"]) == 2
        assert engine.list_sessions(status="user_won")["sessions"][0]["game_result"] == "WIN"

    def test_invalid_filters(self, engine):
        with pytest.raises(ValidationError):
            engine.list_sessions(status="finished")
        with pytest.raises(ValidationError):
            engine.list_sessions(limit=0)

    def test_user_lookup_failure_uses_placeholder(self, engine, player, question_pool):
        engine.create(player.user_id)
        with patch.object(engine.store, "get_user_by_id", side_effect=StoreError()):
            listing = engine.list_sessions()
        assert listing["sessions"][0]["username"] == "Unknown User"

    def test_missing_user_uses_placeholder(self, engine, users, question_pool):
        anonymous = users.create()
        engine.create(anonymous.user_id)
        assert engine.list_sessions()["sessions"][0]["username"] == "Unknown User"


class TestExpiry:
    def test_expires_overdue_sessions(self, engine, player, question_pool):
        timed = engine.create(player.user_id, time_limit=60)
        untimed = engine.create(player.user_id)

        assert engine.expire_overdue_sessions(now=datetime.utcnow()) == []

        expired = engine.expire_overdue_sessions(now=datetime.utcnow() + timedelta(seconds=61))
        assert expired == [timed["session_id"]]

        session = engine.store.get_session_by_id(timed["session_id"])
        assert session.status == "expired"
        assert session.completed_at is not None
        assert engine.store.get_session_by_id(untimed["session_id"]).status == "in_progress"

    def test_expired_session_rejects_answers(self, engine, player, question_pool):
        created = engine.create(player.user_id, time_limit=1)
        engine.expire_overdue_sessions(now=datetime.utcnow() + timedelta(seconds=5))
        question = _first_question(engine, created)

        with pytest.raises(InvalidStateError):
            engine.submit_answer(created["session_id"], player.user_id, question.id, 0)


class TestTerminalStates:
    def test_final_answer_after_expiry_is_rejected(self, engine, player, question_pool):
        """Test that a session expired mid-submission is not overwritten with a result."""
        created = engine.create(player.user_id, time_limit=60)
        session_id = created["session_id"]
        for view in created["selected_questions"][:-1]:
            engine.submit_answer(session_id, player.user_id, view["id"], 0)

        store = engine.store
        create_answer = store.create_answer

        def answer_then_expire(*args, **kwargs):
            answer = create_answer(*args, **kwargs)
            engine.expire_overdue_sessions(now=datetime.utcnow() + timedelta(seconds=61))
            return answer

        last_id = created["selected_questions"][-1]["id"]
        with patch.object(store, "create_answer", side_effect=answer_then_expire):
            with pytest.raises(InvalidStateError):
                engine.submit_answer(session_id, player.user_id, last_id, 0)

        session = store.get_session_by_id(session_id)
        assert session.status == "expired"

    def test_expiry_skips_session_finished_meanwhile(self, engine, player, question_pool):
        created = engine.create(player.user_id, time_limit=60)
        stale = engine.store.get_in_progress_sessions()
        answer_session(engine, created["session_id"], player.user_id, correct_count=16)

        with patch.object(engine.store, "get_in_progress_sessions", return_value=stale):
            expired = engine.expire_overdue_sessions(now=datetime.utcnow() + timedelta(seconds=61))

        assert expired == []
        session = engine.store.get_session_by_id(created["session_id"])
        assert session.status == "user_won"
        assert session.current_score == 160
