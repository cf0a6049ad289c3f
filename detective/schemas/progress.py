"""
Pydantic schemas for progress and case lock status
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional


class ProgressUpdate(BaseModel):
    """Schema for saving progress on a case"""
    case_id: int = Field(..., ge=1)
    current_question_id: int = Field(..., ge=1)
    completed_questions: List[int] = []


class ProgressResponse(BaseModel):
    """Stored progress for one (user, case)"""
    user_id: str
    case_id: int
    current_question_id: int
    completed_questions: List[int]
    last_updated_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True


class CaseState(str, Enum):
    LOCKED = "locked"
    CURRENT = "current"
    UNLOCKED = "unlocked"
    COMPLETED = "completed"


class CaseLockStatus(BaseModel):
    """Lock status of a case for one user"""
    case_id: int
    state: CaseState
    is_locked: bool
    is_current: bool
    is_completed: bool
    is_purchased: bool = False


class ProgressOverview(BaseModel):
    """Unlock thresholds and per-case lock status"""
    user_id: str
    last_completed_case_id: int
    last_accessible_case_id: int
    unlocked_threshold: int
    cases: List[CaseLockStatus]


class ProgressSaveResponse(BaseModel):
    """Progress writes never fail the request; `saved` reports the outcome"""
    saved: bool
    progress: Optional[ProgressResponse] = None
