"""
Account migration - fold an anonymous account into a permanent one

Runs once per Anonymous -> Permanent transition. Progress rows are merged
per case; coin balance, transaction history and purchased cases follow the
user to the permanent account.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from detective.models import CoinTransaction, PaymentClaim, UnlockedCase, UserCoins, UserProgress
from detective.services.progress_service import normalize_completed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnonymousAccount:
    user_id: str


@dataclass(frozen=True)
class PermanentAccount:
    user_id: str


AccountState = Union[AnonymousAccount, PermanentAccount]


@dataclass
class MergedProgress:
    current_question_id: int
    completed_questions: List[int]
    last_updated_at: datetime


@dataclass
class MergeResult:
    success: bool
    moved_cases: List[int] = field(default_factory=list)
    merged_cases: List[int] = field(default_factory=list)
    failed_cases: List[int] = field(default_factory=list)
    coins_moved: int = 0
    error: Optional[str] = None


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.min.replace(tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def merge_progress_records(anonymous: UserProgress, permanent: UserProgress) -> MergedProgress:
    """
    Merge two progress rows for the same case

    completed_questions is the union; current_question_id comes from the
    row updated most recently (the permanent row wins ties).
    """
    completed = normalize_completed(
        list(anonymous.completed_questions or []) + list(permanent.completed_questions or [])
    )
    anonymous_time = _as_utc(anonymous.last_updated_at)
    permanent_time = _as_utc(permanent.last_updated_at)

    if anonymous_time > permanent_time:
        return MergedProgress(anonymous.current_question_id, completed, anonymous_time)
    return MergedProgress(permanent.current_question_id, completed, permanent_time)


class AccountMigrationService:
    """Reconciles an anonymous user's records into a permanent account"""

    def __init__(self, db: Session):
        self.db = db

    def upgrade(self, anonymous: AnonymousAccount, permanent: PermanentAccount) -> MergeResult:
        """
        Move or merge every record of `anonymous` into `permanent`

        Per-case failures are collected; cleanup of leftover anonymous rows
        is best effort.
        """
        if anonymous.user_id == permanent.user_id:
            return MergeResult(success=True)

        logger.info(f"Migrating account {anonymous.user_id} -> {permanent.user_id}")
        result = self._migrate_progress(anonymous.user_id, permanent.user_id)
        if result.error is None:
            self._delete_anonymous_progress(anonymous.user_id)

        result.coins_moved = self._migrate_coins(anonymous.user_id, permanent.user_id)

        logger.info(
            f"Migration finished: moved={result.moved_cases}, merged={result.merged_cases}, "
            f"failed={result.failed_cases}, coins={result.coins_moved}"
        )
        return result

    def _migrate_progress(self, anonymous_id: str, permanent_id: str) -> MergeResult:
        try:
            anonymous_rows = self.db.query(UserProgress).filter(
                UserProgress.user_id == anonymous_id
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to read anonymous progress ({anonymous_id}): {str(e)}")
            return MergeResult(success=False, error=f"Failed to read anonymous progress: {str(e)}")

        if not anonymous_rows:
            logger.info(f"No progress to migrate for {anonymous_id}")
            return MergeResult(success=True)

        try:
            existing: Dict[int, UserProgress] = {
                row.case_id: row
                for row in self.db.query(UserProgress).filter(
                    UserProgress.user_id == permanent_id
                ).all()
            }
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to read permanent progress ({permanent_id}): {str(e)}")
            existing = {}

        result = MergeResult(success=True)
        for row in anonymous_rows:
            case_id = row.case_id
            target = existing.get(case_id)
            try:
                if target is None:
                    # Move, not copy
                    row.user_id = permanent_id
                    self.db.commit()
                    result.moved_cases.append(case_id)
                else:
                    merged = merge_progress_records(row, target)
                    target.current_question_id = merged.current_question_id
                    target.completed_questions = merged.completed_questions
                    target.last_updated_at = merged.last_updated_at
                    self.db.commit()
                    result.merged_cases.append(case_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to migrate progress for case {case_id}: {str(e)}")
                result.failed_cases.append(case_id)

        if result.failed_cases:
            result.success = False
            result.error = f"Failed to migrate cases: {result.failed_cases}"
        return result

    def _delete_anonymous_progress(self, anonymous_id: str) -> None:
        try:
            deleted = self.db.query(UserProgress).filter(
                UserProgress.user_id == anonymous_id
            ).delete(synchronize_session=False)
            self.db.commit()
            if deleted:
                logger.info(f"Deleted {deleted} leftover progress rows for {anonymous_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to delete anonymous progress ({anonymous_id}), ignored: {str(e)}")

    def _migrate_coins(self, anonymous_id: str, permanent_id: str) -> int:
        """Carry balance, history and purchased cases over; returns coins moved"""
        try:
            anonymous_wallet = self.db.query(UserCoins).filter(
                UserCoins.user_id == anonymous_id
            ).first()
            balance = anonymous_wallet.balance if anonymous_wallet else 0

            if anonymous_wallet is not None:
                permanent_wallet = self.db.query(UserCoins).filter(
                    UserCoins.user_id == permanent_id
                ).first()
                if permanent_wallet is None:
                    self.db.add(UserCoins(user_id=permanent_id, balance=balance))
                elif balance:
                    self.db.execute(
                        update(UserCoins)
                        .where(UserCoins.user_id == permanent_id)
                        .values(balance=UserCoins.balance + balance)
                        .execution_options(synchronize_session=False)
                    )
                self.db.delete(anonymous_wallet)

            self.db.query(CoinTransaction).filter(
                CoinTransaction.user_id == anonymous_id
            ).update({CoinTransaction.user_id: permanent_id}, synchronize_session=False)
            self.db.query(PaymentClaim).filter(
                PaymentClaim.user_id == anonymous_id
            ).update({PaymentClaim.user_id: permanent_id}, synchronize_session=False)

            owned = {
                row.case_id for row in self.db.query(UnlockedCase.case_id).filter(
                    UnlockedCase.user_id == permanent_id
                ).all()
            }
            for unlocked in self.db.query(UnlockedCase).filter(
                UnlockedCase.user_id == anonymous_id
            ).all():
                if unlocked.case_id in owned:
                    self.db.delete(unlocked)
                else:
                    unlocked.user_id = permanent_id

            self.db.commit()
            return balance
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to migrate coins {anonymous_id} -> {permanent_id}: {str(e)}")
            return 0
