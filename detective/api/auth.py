"""
Auth state event API endpoints
"""
from fastapi import APIRouter, Depends
import logging

from detective.dependencies import get_auth_hub
from detective.schemas.auth import AuthEventRequest, AuthEventResponse, AuthSessionState
from detective.services.account_migration import AnonymousAccount
from detective.services.auth_events import AuthEventHub

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/events", response_model=AuthEventResponse)
async def post_auth_event(
    request: AuthEventRequest,
    hub: AuthEventHub = Depends(get_auth_hub)
):
    """
    Forward an auth-state-change event

    An anonymous -> permanent transition starts the account migration in
    the background; the response does not wait for it.
    """
    task = await hub.handle_event(
        request.session_id,
        request.event,
        user_id=request.user_id,
        is_anonymous=request.is_anonymous,
        previous_anonymous_id=request.previous_anonymous_id,
    )
    if task is not None:
        logger.info(f"Account migration started for session {request.session_id}")
    return AuthEventResponse(accepted=True, migration_started=task is not None)


@router.get("/sessions/{session_id}", response_model=AuthSessionState)
async def get_session_state(session_id: str, hub: AuthEventHub = Depends(get_auth_hub)):
    state = hub.current_state(session_id)
    if state is None:
        return AuthSessionState(session_id=session_id)
    return AuthSessionState(
        session_id=session_id,
        user_id=state.user_id,
        is_anonymous=isinstance(state, AnonymousAccount),
    )
