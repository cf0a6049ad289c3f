"""
Auth state listener

Single place that watches auth-state-change events per client session and
triggers the anonymous -> permanent account migration. Sign-up, password
sign-in and OAuth callbacks all arrive here as SIGNED_IN events.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from detective.config import settings
from detective.services.account_migration import (
    AccountMigrationService,
    AccountState,
    AnonymousAccount,
    MergeResult,
    PermanentAccount,
)

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    USER_UPDATED = "USER_UPDATED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


def account_state(user_id: str, is_anonymous: bool) -> AccountState:
    return AnonymousAccount(user_id) if is_anonymous else PermanentAccount(user_id)


class AuthEventHub:
    """Tracks the account state of each auth session"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        poll_interval_ms: Optional[int] = None,
        poll_timeout_ms: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.poll_interval_ms = poll_interval_ms or settings.SESSION_POLL_INTERVAL_MS
        self.poll_timeout_ms = poll_timeout_ms or settings.SESSION_POLL_TIMEOUT_MS
        self._states: Dict[str, AccountState] = {}
        self._migrated: Set[Tuple[str, str]] = set()
        self._tasks: Set[asyncio.Task] = set()

    def current_state(self, session_id: str) -> Optional[AccountState]:
        return self._states.get(session_id)

    def current_principal(self, session_id: str) -> Optional[str]:
        state = self._states.get(session_id)
        return state.user_id if state else None

    async def handle_event(
        self,
        session_id: str,
        event: AuthEvent,
        user_id: Optional[str] = None,
        is_anonymous: bool = False,
        previous_anonymous_id: Optional[str] = None,
    ) -> Optional["asyncio.Task[Optional[MergeResult]]"]:
        """
        Record an auth event and start the migration on an upgrade

        `previous_anonymous_id` lets a client report the anonymous id it held
        before a redirect-based sign-in, when this process never saw it.

        Returns the detached migration task, if one was started.
        """
        event = AuthEvent(event)
        if event == AuthEvent.SIGNED_OUT or not user_id:
            self._states.pop(session_id, None)
            logger.info(f"Auth session {session_id} signed out")
            return None

        previous = self._states.get(session_id)
        if previous is None and previous_anonymous_id:
            previous = AnonymousAccount(previous_anonymous_id)

        new_state = account_state(user_id, is_anonymous)
        self._states[session_id] = new_state

        if not isinstance(previous, AnonymousAccount) or not isinstance(new_state, PermanentAccount):
            return None
        if previous.user_id == new_state.user_id:
            return None
        return self.upgrade(previous, new_state)

    def upgrade(
        self,
        anonymous: AnonymousAccount,
        permanent: PermanentAccount
    ) -> Optional["asyncio.Task[Optional[MergeResult]]"]:
        """Schedule the migration, at most once per (anonymous, permanent) pair"""
        key = (anonymous.user_id, permanent.user_id)
        if key in self._migrated:
            logger.debug(f"Migration {key} already started")
            return None
        self._migrated.add(key)

        task = asyncio.ensure_future(self._run_migration(anonymous, permanent))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _migrate(self, anonymous: AnonymousAccount, permanent: PermanentAccount) -> MergeResult:
        db = self.session_factory()
        try:
            return AccountMigrationService(db).upgrade(anonymous, permanent)
        finally:
            db.close()

    async def _run_migration(
        self,
        anonymous: AnonymousAccount,
        permanent: PermanentAccount
    ) -> Optional[MergeResult]:
        # Detached from sign-in: failures are only logged
        try:
            result = await run_in_threadpool(self._migrate, anonymous, permanent)
        except Exception as e:
            logger.error(
                f"Account migration {anonymous.user_id} -> {permanent.user_id} failed: {str(e)}",
                exc_info=True
            )
            return None

        if not result.success:
            logger.warning(f"Account migration finished with errors: {result.error}")
        return result

    async def wait_for_principal(
        self,
        session_id: str,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None
    ) -> Optional[str]:
        """
        Poll until the session has a principal, or give up after the timeout

        Fixed interval, no backoff.
        """
        timeout = (timeout_ms or self.poll_timeout_ms) / 1000
        interval = (interval_ms or self.poll_interval_ms) / 1000
        deadline = time.monotonic() + timeout

        while True:
            principal = self.current_principal(session_id)
            if principal:
                return principal
            if time.monotonic() >= deadline:
                logger.warning(f"Auth session {session_id} did not settle within {timeout:.1f}s")
                return None
            await asyncio.sleep(interval)

    async def drain(self) -> None:
        """Wait for running migrations (shutdown and tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
