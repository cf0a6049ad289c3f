"""
Progress store - per-user, per-case progress and derived lock status

Progress persistence must never block gameplay: writes log and swallow
backing-store failures, reads normalize missing rows and errors to
None / 0 / empty.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from detective.models import UserProgress
from detective.schemas.case import CaseData
from detective.schemas.progress import CaseLockStatus, CaseState, ProgressResponse

logger = logging.getLogger(__name__)


def normalize_completed(completed: Iterable[int], question_count: Optional[int] = None) -> List[int]:
    """Deduplicate, sort and (optionally) restrict to ordinals 1..question_count"""
    numbers: Set[int] = set()
    for value in completed or []:
        try:
            number = int(value)
        except (TypeError, ValueError):
            continue
        if question_count is not None and not 1 <= number <= question_count:
            continue
        numbers.add(number)
    return sorted(numbers)


def is_case_completed(completed: Iterable[int], case: CaseData) -> bool:
    """A case is completed when every one of its question ordinals is completed"""
    question_ids = {question.id for question in case.questions}
    if not question_ids:
        return False
    return set(normalize_completed(completed)) == question_ids


def compute_unlock_threshold(last_completed_case_id: int, last_accessible_case_id: int) -> int:
    """
    Highest playable case id
    
    One past the last full completion, but never below a case the user
    already has progress on, and never below case 1.
    """
    completed_next = last_completed_case_id + 1 if last_completed_case_id > 0 else 0
    accessible = last_accessible_case_id if last_accessible_case_id > 0 else 0
    return max(completed_next, accessible, 1)


class ProgressService:
    """Progress reads/writes for a single user"""
    
    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id
    
    def _get_row(self, case_id: int) -> Optional[UserProgress]:
        return self.db.query(UserProgress).filter(
            UserProgress.user_id == self.user_id,
            UserProgress.case_id == case_id
        ).first()
    
    def _upsert(
        self,
        case_id: int,
        question_id: int,
        completed: List[int]
    ) -> UserProgress:
        row = self._get_row(case_id)
        if row is None:
            row = UserProgress(user_id=self.user_id, case_id=case_id)
            self.db.add(row)
        row.current_question_id = question_id
        row.completed_questions = completed
        row.last_updated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(row)
        return row
    
    def save_progress(
        self,
        case_id: int,
        question_id: int,
        completed_questions: Iterable[int],
        question_count: Optional[int] = None
    ) -> Optional[UserProgress]:
        """
        Upsert progress keyed on (user_id, case_id)
        
        Never raises: failures are logged and None is returned.
        """
        completed = normalize_completed(completed_questions, question_count)
        try:
            try:
                row = self._upsert(case_id, question_id, completed)
            except IntegrityError:
                # Row created concurrently between our read and insert
                self.db.rollback()
                row = self._upsert(case_id, question_id, completed)
            
            logger.info(
                f"Progress saved: user={self.user_id}, case={case_id}, "
                f"current={question_id}, completed={completed}"
            )
            return row
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to save progress (user={self.user_id}, case={case_id}): {str(e)}")
            return None
    
    def record_correct_answer(
        self,
        case_id: int,
        question_id: int,
        question_count: Optional[int] = None
    ) -> Optional[UserProgress]:
        """Add a question to the completed set, keeping it as the current question"""
        existing = self.load_progress(case_id)
        completed = list(existing.completed_questions) if existing else []
        completed.append(question_id)
        return self.save_progress(case_id, question_id, completed, question_count)
    
    def load_progress(self, case_id: int) -> Optional[ProgressResponse]:
        """
        Stored progress for a case, or None when there is no row

        Returns a snapshot; a malformed completed list reads as empty without
        touching the stored row.
        """
        try:
            row = self._get_row(case_id)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to load progress (user={self.user_id}, case={case_id}): {str(e)}")
            return None
        
        if row is None:
            return None
        completed = row.completed_questions if isinstance(row.completed_questions, list) else []
        return ProgressResponse(
            user_id=row.user_id,
            case_id=row.case_id,
            current_question_id=row.current_question_id,
            completed_questions=normalize_completed(completed),
            last_updated_at=row.last_updated_at,
        )
    
    def clear_progress(self, case_id: int) -> bool:
        """Explicit reset of a case"""
        try:
            deleted = self.db.query(UserProgress).filter(
                UserProgress.user_id == self.user_id,
                UserProgress.case_id == case_id
            ).delete(synchronize_session=False)
            self.db.commit()
            logger.info(f"Progress cleared: user={self.user_id}, case={case_id}, rows={deleted}")
            return True
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to clear progress (user={self.user_id}, case={case_id}): {str(e)}")
            return False
    
    def list_progress(self) -> List[UserProgress]:
        try:
            return self.db.query(UserProgress).filter(
                UserProgress.user_id == self.user_id
            ).all()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to list progress (user={self.user_id}): {str(e)}")
            return []
    
    def get_last_completed_case_id(self, cases: Sequence[CaseData]) -> int:
        """
        Highest completed case id, or 0
        
        Scans every case and takes the maximum; a later case completed out
        of order still counts.
        """
        progress_by_case = {row.case_id: row for row in self.list_progress()}
        last_completed = 0
        for case in sorted(cases, key=lambda c: c.id):
            row = progress_by_case.get(case.id)
            if row is None:
                continue
            if is_case_completed(row.completed_questions or [], case):
                last_completed = max(last_completed, case.id)
        return last_completed
    
    def get_last_accessible_case_id(self, cases: Sequence[CaseData]) -> int:
        """Highest case id with any progress row, or 0"""
        known_ids = {case.id for case in cases}
        accessible = [row.case_id for row in self.list_progress() if row.case_id in known_ids]
        return max(accessible, default=0)
    
    def get_unlock_threshold(self, cases: Sequence[CaseData]) -> int:
        return compute_unlock_threshold(
            self.get_last_completed_case_id(cases),
            self.get_last_accessible_case_id(cases)
        )
    
    def get_case_lock_statuses(
        self,
        cases: Sequence[CaseData],
        purchased_case_ids: Iterable[int] = ()
    ) -> List[CaseLockStatus]:
        """Lock status for every case in one pass over the progress rows"""
        progress_by_case = {row.case_id: row for row in self.list_progress()}
        ordered = sorted(cases, key=lambda c: c.id)
        
        last_completed = 0
        last_accessible = 0
        completed_ids = set()
        for case in ordered:
            row = progress_by_case.get(case.id)
            if row is None:
                continue
            last_accessible = max(last_accessible, case.id)
            if is_case_completed(row.completed_questions or [], case):
                completed_ids.add(case.id)
                last_completed = max(last_completed, case.id)
        
        threshold = compute_unlock_threshold(last_completed, last_accessible)
        purchased = set(purchased_case_ids)
        
        statuses = []
        for case in ordered:
            is_purchased = case.id in purchased
            is_locked = case.id > threshold and not is_purchased
            is_current = case.id == threshold
            is_completed = case.id in completed_ids
            
            if is_completed:
                state = CaseState.COMPLETED
            elif is_locked:
                state = CaseState.LOCKED
            elif is_current:
                state = CaseState.CURRENT
            else:
                state = CaseState.UNLOCKED
            
            statuses.append(CaseLockStatus(
                case_id=case.id,
                state=state,
                is_locked=is_locked,
                is_current=is_current,
                is_completed=is_completed,
                is_purchased=is_purchased,
            ))
        return statuses
    
    def get_case_lock_status(
        self,
        case_id: int,
        cases: Sequence[CaseData],
        purchased_case_ids: Iterable[int] = ()
    ) -> Optional[CaseLockStatus]:
        for status in self.get_case_lock_statuses(cases, purchased_case_ids):
            if status.case_id == case_id:
                return status
        return None
    
    def is_case_playable(
        self,
        case_id: int,
        cases: Sequence[CaseData],
        purchased_case_ids: Iterable[int] = ()
    ) -> bool:
        """False for locked, unpurchased cases and for cases not in the list"""
        status = self.get_case_lock_status(case_id, cases, purchased_case_ids)
        return status is not None and not status.is_locked
