from datetime import datetime, timezone

import pytest

from detective.models import UserProgress
from detective.schemas.progress import CaseState
from detective.services.progress_service import (
    ProgressService,
    compute_unlock_threshold,
    is_case_completed,
    normalize_completed,
)

USER = "user-1"


def _states(service, cases, purchased=()):
    return {status.case_id: status.state for status in service.get_case_lock_statuses(cases, purchased)}


def test_normalize_completed():
    assert normalize_completed([3, 1, 1, 2]) == [1, 2, 3]
    assert normalize_completed([0, 1, 4, 2], question_count=3) == [1, 2]
    assert normalize_completed([]) == []


def test_is_case_completed(cases):
    assert is_case_completed([2, 1], cases[0])
    assert not is_case_completed([1], cases[0])
    assert not is_case_completed([], cases[0])


@pytest.mark.parametrize(
    "completed, accessible, expected",
    [
        (0, 0, 1),
        (1, 0, 2),
        (1, 2, 2),
        (0, 3, 3),
        (5, 2, 6),
    ],
)
def test_compute_unlock_threshold(completed, accessible, expected):
    assert compute_unlock_threshold(completed, accessible) == expected


def test_save_progress_is_idempotent(db_session):
    service = ProgressService(db_session, USER)

    first = service.save_progress(2, 2, [1, 2, 2])
    second = service.save_progress(2, 2, [2, 1])

    assert first.completed_questions == [1, 2]
    assert second.completed_questions == [1, 2]
    assert db_session.query(UserProgress).filter(UserProgress.user_id == USER).count() == 1


def test_save_progress_drops_out_of_range_ordinals(db_session):
    row = ProgressService(db_session, USER).save_progress(1, 1, [1, 5], question_count=2)
    assert row.completed_questions == [1]


def test_load_and_clear_progress(db_session):
    service = ProgressService(db_session, USER)
    assert service.load_progress(1) is None

    service.save_progress(1, 2, [1])
    row = service.load_progress(1)
    assert row.current_question_id == 2
    assert row.completed_questions == [1]

    assert service.clear_progress(1) is True
    assert service.load_progress(1) is None


def test_progress_is_per_user(db_session):
    ProgressService(db_session, USER).save_progress(1, 1, [1])
    assert ProgressService(db_session, "someone-else").load_progress(1) is None


def test_load_progress_reads_malformed_row_without_writing(db_session):
    db_session.add(UserProgress(
        user_id=USER, case_id=1, current_question_id=2, completed_questions={"1": True},
        last_updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    ))
    db_session.commit()

    progress = ProgressService(db_session, USER).load_progress(1)

    assert progress.completed_questions == []
    assert progress.current_question_id == 2
    assert not db_session.dirty
    db_session.commit()
    db_session.expire_all()
    stored = db_session.query(UserProgress).filter(UserProgress.user_id == USER).one()
    assert stored.completed_questions == {"1": True}


def test_record_correct_answer_accumulates(db_session):
    service = ProgressService(db_session, USER)
    service.record_correct_answer(2, 1, question_count=3)
    row = service.record_correct_answer(2, 3, question_count=3)

    assert row.completed_questions == [1, 3]
    assert row.current_question_id == 3


def test_lock_status_without_progress(db_session, cases):
    service = ProgressService(db_session, USER)

    first = service.get_case_lock_status(1, cases)
    assert first.state == CaseState.CURRENT
    assert first.is_current and not first.is_locked

    second = service.get_case_lock_status(2, cases)
    assert second.state == CaseState.LOCKED
    assert second.is_locked
    assert service.get_unlock_threshold(cases) == 1


def test_completing_case_one_unlocks_case_two(db_session, cases):
    service = ProgressService(db_session, USER)
    service.save_progress(1, 2, [1, 2])

    assert service.get_last_completed_case_id(cases) == 1
    assert _states(service, cases) == {
        1: CaseState.COMPLETED,
        2: CaseState.CURRENT,
        3: CaseState.LOCKED,
    }


def test_mid_case_progress_keeps_case_playable(db_session, cases):
    service = ProgressService(db_session, USER)
    service.save_progress(1, 2, [1, 2])
    service.save_progress(2, 2, [1])

    assert service.get_last_accessible_case_id(cases) == 2
    assert service.get_last_completed_case_id(cases) == 1
    assert service.get_unlock_threshold(cases) == 2
    assert _states(service, cases)[2] == CaseState.CURRENT
    assert _states(service, cases)[3] == CaseState.LOCKED


def test_out_of_order_completion_counts(db_session, cases):
    service = ProgressService(db_session, USER)
    service.save_progress(2, 3, [1, 2, 3])

    assert service.get_last_completed_case_id(cases) == 2
    assert service.get_unlock_threshold(cases) == 3
    assert _states(service, cases) == {
        1: CaseState.UNLOCKED,
        2: CaseState.COMPLETED,
        3: CaseState.CURRENT,
    }


def test_purchased_case_is_playable_without_moving_frontier(db_session, cases):
    service = ProgressService(db_session, USER)
    statuses = {s.case_id: s for s in service.get_case_lock_statuses(cases, purchased_case_ids=[3])}

    assert statuses[3].is_purchased
    assert not statuses[3].is_locked
    assert statuses[3].state == CaseState.UNLOCKED
    assert statuses[2].state == CaseState.LOCKED
    assert statuses[1].state == CaseState.CURRENT


def test_progress_for_unknown_case_is_ignored_for_access(db_session, cases):
    service = ProgressService(db_session, USER)
    service.save_progress(42, 1, [])

    assert service.get_last_accessible_case_id(cases) == 0
    assert service.get_case_lock_status(42, cases) is None
