from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from gatehouse.core.clock import ensure_utc, utc_now
from gatehouse.core.config import MembershipPolicy
from gatehouse.domain.models import User
from gatehouse.domain.views import FailureReason
from gatehouse.persistence.repos.users import update_user_fields
from gatehouse.persistence.transactions import expect_rowcount


logger = logging.getLogger(__name__)

# Column pairs backing each failure counter.
_COUNTER_COLUMNS = {
    FailureReason.PASSWORD: ("failed_password_count", "failed_password_window_start"),
    FailureReason.PASSWORD_ANSWER: ("failed_answer_count", "failed_answer_window_start"),
}


@dataclass(frozen=True)
class FailureOutcome:
    reason: FailureReason
    count: int
    window_start: datetime
    locked: bool
    values: dict[str, Any] = field(default_factory=dict)


class LockoutTracker:
    """Rolling-window failure counters and lock transitions for one policy."""

    def __init__(
        self,
        *,
        max_invalid_attempts: int,
        attempt_window_minutes: int,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        # Allow time injection for deterministic window tests.
        self._max_invalid_attempts = max_invalid_attempts
        self._window = timedelta(minutes=attempt_window_minutes)
        self._time_provider = time_provider or utc_now

    @classmethod
    def from_policy(
        cls,
        policy: MembershipPolicy,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> LockoutTracker:
        return cls(
            max_invalid_attempts=policy.max_invalid_password_attempts,
            attempt_window_minutes=policy.password_attempt_window_minutes,
            time_provider=time_provider,
        )

    def now(self) -> datetime:
        return ensure_utc(self._time_provider())

    def evaluate_failure(self, user: User, reason: FailureReason) -> FailureOutcome:
        # Pure transition: returns the column values to persist for one failure.
        now = self.now()
        count_column, window_column = _COUNTER_COLUMNS[reason]
        count = int(getattr(user, count_column) or 0)
        window_start = ensure_utc(getattr(user, window_column))
        locked = False
        if count == 0 or now > window_start + self._window:
            # A fresh window never locks; the threshold applies from the second failure on.
            count = 1
            window_start = now
        else:
            count += 1
            locked = count >= self._max_invalid_attempts
        values: dict[str, Any] = {count_column: count, window_column: window_start}
        if locked:
            values["is_locked_out"] = True
            values["last_lockout_at"] = now
        return FailureOutcome(reason=reason, count=count, window_start=window_start, locked=locked, values=values)

    async def record_failure(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user: User,
        reason: FailureReason,
    ) -> FailureOutcome:
        outcome = self.evaluate_failure(user, reason)
        result = await update_user_fields(session, tenant_id=tenant_id, user_id=user.id, values=outcome.values)
        expect_rowcount(result, 1, action=f"record {reason.value} failure")
        if outcome.locked:
            logger.warning(
                "user_locked_out tenant_id=%s user_id=%s reason=%s count=%s",
                tenant_id,
                user.id,
                reason.value,
                outcome.count,
            )
        return outcome

    async def record_success(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        user: User,
        record_login: bool = True,
    ) -> datetime:
        # Any correct password clears the password counter; answer failures keep accumulating.
        now = self.now()
        values: dict[str, Any] = {"failed_password_count": 0}
        if record_login:
            values["last_login_at"] = now
        result = await update_user_fields(session, tenant_id=tenant_id, user_id=user.id, values=values)
        expect_rowcount(result, 1, action="record successful password check")
        return now

    async def unlock(self, session: AsyncSession, *, tenant_id: str, user_id: str) -> datetime:
        now = self.now()
        result = await update_user_fields(
            session,
            tenant_id=tenant_id,
            user_id=user_id,
            values={
                "is_locked_out": False,
                "failed_password_count": 0,
                "failed_password_window_start": now,
                "failed_answer_count": 0,
                "failed_answer_window_start": now,
                "last_lockout_at": now,
            },
        )
        expect_rowcount(result, 1, action="unlock user")
        logger.info("user_unlocked tenant_id=%s user_id=%s", tenant_id, user_id)
        return now
