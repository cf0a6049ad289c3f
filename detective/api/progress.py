"""
User progress and case lock status API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

from detective.database import get_db
from detective.dependencies import get_case_repository
from detective.schemas.progress import (
    CaseLockStatus,
    ProgressOverview,
    ProgressResponse,
    ProgressSaveResponse,
    ProgressUpdate,
)
from detective.services.case_repository import CaseRepository
from detective.services.coin_service import CoinLedger
from detective.services.progress_service import ProgressService, compute_unlock_threshold

router = APIRouter(prefix="/api/users/{user_id}", tags=["progress"])
logger = logging.getLogger(__name__)


@router.put("/progress", response_model=ProgressSaveResponse)
async def save_progress(
    user_id: str,
    update: ProgressUpdate,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    """
    Save progress on a case

    Also called on first entry into a case (empty completed list) to
    record the case switch. Storage failures do not fail the request.
    Locked cases that were not bought with coins are rejected with 403.
    """
    case = await repository.get_case_by_id(update.case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="Case not found")

    service = ProgressService(db, user_id)
    cases = await repository.get_cases()
    purchased = CoinLedger(db).get_unlocked_cases(user_id)
    if not service.is_case_playable(update.case_id, cases, purchased):
        logger.warning(f"Rejected progress save on locked case (user={user_id}, case={update.case_id})")
        raise HTTPException(status_code=403, detail="Case is locked")

    row = service.save_progress(
        update.case_id,
        update.current_question_id,
        update.completed_questions,
        question_count=len(case.questions),
    )
    if row is None:
        return ProgressSaveResponse(saved=False)
    return ProgressSaveResponse(saved=True, progress=ProgressResponse.model_validate(row))


@router.get("/progress", response_model=ProgressOverview)
async def get_progress_overview(
    user_id: str,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    """
    Unlock thresholds and the lock status of every case

    - Completed cases never relock
    - One case past the last completion is playable
    - A case with progress stays playable
    - Coin-purchased cases are always playable
    """
    cases = await repository.get_cases()
    service = ProgressService(db, user_id)
    purchased = CoinLedger(db).get_unlocked_cases(user_id)

    last_completed = service.get_last_completed_case_id(cases)
    last_accessible = service.get_last_accessible_case_id(cases)

    return ProgressOverview(
        user_id=user_id,
        last_completed_case_id=last_completed,
        last_accessible_case_id=last_accessible,
        unlocked_threshold=compute_unlock_threshold(last_completed, last_accessible),
        cases=service.get_case_lock_statuses(cases, purchased),
    )


@router.get("/progress/{case_id}", response_model=Optional[ProgressResponse])
async def load_progress(user_id: str, case_id: int, db: Session = Depends(get_db)):
    """Stored progress for a case; null when the user has none"""
    return ProgressService(db, user_id).load_progress(case_id)


@router.delete("/progress/{case_id}")
async def clear_progress(user_id: str, case_id: int, db: Session = Depends(get_db)):
    cleared = ProgressService(db, user_id).clear_progress(case_id)
    if not cleared:
        raise HTTPException(status_code=500, detail="Failed to clear progress")
    return {"message": "Progress cleared", "case_id": case_id}


@router.get("/cases/{case_id}/lock-status", response_model=CaseLockStatus)
async def get_case_lock_status(
    user_id: str,
    case_id: int,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    cases = await repository.get_cases()
    purchased = CoinLedger(db).get_unlocked_cases(user_id)
    status = ProgressService(db, user_id).get_case_lock_status(case_id, cases, purchased)
    if status is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return status
