from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query

from detective.models import CoinTransaction, UnlockedCase, UserCoins, UserProgress
from detective.services.account_migration import (
    AccountMigrationService,
    AnonymousAccount,
    PermanentAccount,
    merge_progress_records,
)
from detective.services.coin_service import CoinLedger

ANON = AnonymousAccount("anon-1")
PERM = PermanentAccount("perm-1")
T1 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(hours=1)


def _progress(user_id, case_id, completed, current, updated):
    return UserProgress(
        user_id=user_id,
        case_id=case_id,
        completed_questions=completed,
        current_question_id=current,
        last_updated_at=updated,
    )


def _rows(db_session, user_id):
    db_session.expire_all()
    return {
        row.case_id: row
        for row in db_session.query(UserProgress).filter(UserProgress.user_id == user_id).all()
    }


def test_merge_takes_union_and_newer_current():
    anonymous = _progress(ANON.user_id, 5, [1, 2], 2, T1)
    permanent = _progress(PERM.user_id, 5, [2, 3], 3, T2)

    merged = merge_progress_records(anonymous, permanent)

    assert merged.completed_questions == [1, 2, 3]
    assert merged.current_question_id == 3


def test_merge_prefers_newer_anonymous_row():
    anonymous = _progress(ANON.user_id, 5, [1], 4, T2)
    permanent = _progress(PERM.user_id, 5, [2], 2, T1)

    merged = merge_progress_records(anonymous, permanent)

    assert merged.current_question_id == 4
    assert merged.last_updated_at == T2


def test_merge_tie_keeps_permanent_current():
    anonymous = _progress(ANON.user_id, 5, [1], 4, T1)
    permanent = _progress(PERM.user_id, 5, [2], 2, T1)

    assert merge_progress_records(anonymous, permanent).current_question_id == 2


def test_merge_handles_naive_timestamps():
    anonymous = _progress(ANON.user_id, 5, [1], 4, T2.replace(tzinfo=None))
    permanent = _progress(PERM.user_id, 5, [2], 2, T1)

    assert merge_progress_records(anonymous, permanent).current_question_id == 4


def test_upgrade_moves_and_merges_progress(db_session):
    db_session.add_all([
        _progress(ANON.user_id, 1, [1, 2], 2, T1),
        _progress(ANON.user_id, 5, [1, 2], 2, T1),
        _progress(PERM.user_id, 5, [2, 3], 3, T2),
    ])
    db_session.commit()

    result = AccountMigrationService(db_session).upgrade(ANON, PERM)

    assert result.success
    assert result.moved_cases == [1]
    assert result.merged_cases == [5]
    assert _rows(db_session, ANON.user_id) == {}

    rows = _rows(db_session, PERM.user_id)
    assert rows[1].completed_questions == [1, 2]
    assert rows[5].completed_questions == [1, 2, 3]
    assert rows[5].current_question_id == 3


def test_upgrade_survives_failed_cleanup(db_session, monkeypatch):
    def locked(self, *args, **kwargs):
        raise OperationalError("DELETE FROM user_progress", {}, Exception("database is locked"))

    monkeypatch.setattr(Query, "delete", locked)
    db_session.add_all([
        _progress(ANON.user_id, 1, [1, 2], 2, T1),
        _progress(ANON.user_id, 5, [1, 2], 2, T1),
        _progress(PERM.user_id, 5, [2, 3], 3, T2),
    ])
    db_session.commit()

    result = AccountMigrationService(db_session).upgrade(ANON, PERM)

    assert result.success
    assert result.error is None
    assert result.moved_cases == [1]
    assert result.merged_cases == [5]

    rows = _rows(db_session, PERM.user_id)
    assert rows[1].completed_questions == [1, 2]
    assert rows[5].completed_questions == [1, 2, 3]
    assert rows[5].current_question_id == 3
    # The merged anonymous row is left behind
    assert list(_rows(db_session, ANON.user_id)) == [5]



def test_upgrade_without_anonymous_records(db_session):
    result = AccountMigrationService(db_session).upgrade(ANON, PERM)

    assert result.success
    assert result.moved_cases == []
    assert result.coins_moved == 0


def test_upgrade_same_account_is_noop(db_session):
    db_session.add(_progress("same", 1, [1], 1, T1))
    db_session.commit()

    result = AccountMigrationService(db_session).upgrade(AnonymousAccount("same"), PermanentAccount("same"))

    assert result.success
    assert list(_rows(db_session, "same")) == [1]


def test_upgrade_carries_coins_history_and_unlocks(db_session):
    ledger = CoinLedger(db_session)
    ledger.charge_coins(ANON.user_id, 11, "pay_anon")
    ledger.unlock_case(ANON.user_id, 2)
    ledger.charge_coins(ANON.user_id, 5, "pay_anon_2")
    ledger.unlock_case(ANON.user_id, 3)
    ledger.charge_coins(PERM.user_id, 10, "pay_perm")
    ledger.charge_coins(PERM.user_id, 5, "pay_perm_2")
    ledger.unlock_case(PERM.user_id, 3)

    result = AccountMigrationService(db_session).upgrade(ANON, PERM)

    assert result.coins_moved == 6
    db_session.expire_all()
    assert ledger.get_user_coins(PERM.user_id) == 16
    assert db_session.query(UserCoins).filter(UserCoins.user_id == ANON.user_id).first() is None
    assert ledger.get_unlocked_cases(PERM.user_id) == [2, 3]
    assert db_session.query(UnlockedCase).filter(UnlockedCase.user_id == ANON.user_id).count() == 0
    assert db_session.query(CoinTransaction).filter(CoinTransaction.user_id == ANON.user_id).count() == 0
    assert ledger.is_payment_already_processed(PERM.user_id, "pay_anon")


def test_upgrade_creates_permanent_wallet(db_session):
    CoinLedger(db_session).charge_coins(ANON.user_id, 23, "pay_anon")

    result = AccountMigrationService(db_session).upgrade(ANON, PERM)

    assert result.coins_moved == 23
    assert CoinLedger(db_session).get_user_coins(PERM.user_id) == 23
