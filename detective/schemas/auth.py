"""
Pydantic schemas for auth state events
"""
from pydantic import BaseModel, Field
from typing import Optional

from detective.services.auth_events import AuthEvent


class AuthEventRequest(BaseModel):
    """Auth-state-change event forwarded by the client"""
    session_id: str = Field(..., min_length=1)
    event: AuthEvent
    user_id: Optional[str] = None
    is_anonymous: bool = False
    previous_anonymous_id: Optional[str] = None


class AuthEventResponse(BaseModel):
    accepted: bool = True
    migration_started: bool = False


class AuthSessionState(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    is_anonymous: Optional[bool] = None
