"""Block appeals: a blocked user asks for review, safety staff approve or deny."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Protocol, Sequence

from platesafe.obs import metrics
from platesafe.safety.domain.errors import ConflictError, NotFoundError, ValidationError, bounded
from platesafe.safety.domain.escalation import parse_enum
from platesafe.safety.domain.trust import (
    TrustChange,
    TrustChangeContext,
    TrustLedger,
    TrustReason,
    UserTrustState,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_APPEAL_REASON_LENGTH = 1000
PENDING_APPEAL_WINDOW = timedelta(days=7)


class AppealStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


@dataclass(frozen=True, slots=True)
class Appeal:
    appeal_id: str
    user_id: str
    reason: str
    created_at: datetime
    status: AppealStatus = AppealStatus.PENDING
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    trust_adjustment: int = 0


@dataclass(frozen=True)
class AppealDecision:
    appeal: Appeal
    state: UserTrustState
    trust_change: TrustChange | None = None

    @property
    def unblocked(self) -> bool:
        return self.appeal.status is AppealStatus.APPROVED


class AppealRepository(Protocol):
    async def add_unless_pending(self, appeal: Appeal, *, since: datetime) -> bool:
        """Store ``appeal`` unless the user has a pending appeal created at or after ``since``."""
        ...

    async def get(self, appeal_id: str) -> Appeal | None:
        ...

    async def list_by_status(self, status: AppealStatus | None = None, limit: int = 100) -> Sequence[Appeal]:
        ...

    async def list_for_user(self, user_id: str, limit: int = 10) -> Sequence[Appeal]:
        ...

    async def close(self, appeal: Appeal) -> Appeal | None:
        """Write the review fields only while the stored appeal is still pending."""
        ...


class AppealService:
    """Appeal lifecycle. Every appeal is reviewed at most once.

    Approval credits the optional ``appeal_approved`` adjustment while the
    account is still blocked, then unblocks it. Denial leaves the block as is.
    """

    def __init__(
        self,
        repository: AppealRepository,
        ledger: TrustLedger,
        *,
        pending_window: timedelta = PENDING_APPEAL_WINDOW,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self._ledger = ledger
        self.pending_window = pending_window
        self._timeout = timeout_seconds
        self._clock = clock

    async def submit(self, user_id: str, reason: str) -> Appeal:
        reason = (reason or "").strip()
        if not user_id or not reason:
            raise ValidationError("Missing required fields: user_id, reason")
        if len(reason) > MAX_APPEAL_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_APPEAL_REASON_LENGTH} characters")
        state = await self._ledger.find_state(user_id)
        if state is None or not state.blocked:
            raise ValidationError("User is not blocked or does not exist")

        now = self._clock()
        appeal = Appeal(appeal_id=uuid.uuid4().hex, user_id=user_id, reason=reason, created_at=now)
        added = await self._bounded(self._repo.add_unless_pending(appeal, since=now - self.pending_window))
        if not added:
            raise ConflictError("You already have a pending appeal. Please wait for review.")
        metrics.APPEALS_TOTAL.labels(stage="submitted", outcome="pending").inc()
        logger.info("appeal submitted", extra={"appeal_id": appeal.appeal_id, "user_id": user_id})
        return appeal

    async def get(self, appeal_id: str) -> Appeal:
        appeal = await self._bounded(self._repo.get(appeal_id))
        if appeal is None:
            raise NotFoundError("Appeal not found")
        return appeal

    async def list_appeals(self, status: AppealStatus | str | None = None, limit: int = 100) -> Sequence[Appeal]:
        wanted = parse_enum(AppealStatus, status, field_name="status") if status is not None else None
        return await self._bounded(self._repo.list_by_status(wanted, max(1, limit)))

    async def for_user(self, user_id: str, limit: int = 10) -> Sequence[Appeal]:
        return await self._bounded(self._repo.list_for_user(user_id, max(1, limit)))

    async def approve(
        self,
        appeal_id: str,
        *,
        reviewed_by: str,
        adjustment: int = 0,
        notes: str | None = None,
    ) -> AppealDecision:
        appeal = await self._close(appeal_id, AppealStatus.APPROVED, reviewed_by=reviewed_by, notes=notes, adjustment=adjustment)
        change = None
        if adjustment:
            change = await self._ledger.apply_change(
                appeal.user_id,
                adjustment,
                TrustReason.APPEAL_APPROVED,
                TrustChangeContext(
                    details=f"Appeal approved by admin. {notes or 'No additional notes.'}",
                    performed_by=reviewed_by,
                ),
            )
        state = await self._ledger.unblock(appeal.user_id, performed_by=reviewed_by)
        return AppealDecision(appeal=appeal, state=state, trust_change=change)

    async def deny(self, appeal_id: str, *, reviewed_by: str, notes: str | None = None) -> AppealDecision:
        appeal = await self._close(appeal_id, AppealStatus.DENIED, reviewed_by=reviewed_by, notes=notes)
        return AppealDecision(appeal=appeal, state=await self._ledger.get_state(appeal.user_id))

    async def _close(
        self,
        appeal_id: str,
        status: AppealStatus,
        *,
        reviewed_by: str,
        notes: str | None,
        adjustment: int = 0,
    ) -> Appeal:
        appeal = await self.get(appeal_id)
        if appeal.status is not AppealStatus.PENDING:
            raise ConflictError("Appeal has already been reviewed")
        closed = await self._bounded(
            self._repo.close(
                replace(
                    appeal,
                    status=status,
                    reviewed_by=reviewed_by,
                    reviewed_at=self._clock(),
                    review_notes=notes,
                    trust_adjustment=adjustment,
                )
            )
        )
        if closed is None:
            raise ConflictError("Appeal has already been reviewed")
        metrics.APPEALS_TOTAL.labels(stage="resolved", outcome=status.value).inc()
        logger.info(
            "appeal reviewed",
            extra={"appeal_id": appeal_id, "user_id": appeal.user_id, "status": status.value, "reviewed_by": reviewed_by},
        )
        return closed

    async def _bounded(self, awaitable):
        return await bounded(awaitable, self._timeout, dependency="appeal_store")


class InMemoryAppealRepository(AppealRepository):
    def __init__(self) -> None:
        self.appeals: dict[str, Appeal] = {}

    async def add_unless_pending(self, appeal: Appeal, *, since: datetime) -> bool:
        for existing in self.appeals.values():
            if (
                existing.user_id == appeal.user_id
                and existing.status is AppealStatus.PENDING
                and existing.created_at >= since
            ):
                return False
        self.appeals[appeal.appeal_id] = appeal
        return True

    async def get(self, appeal_id: str) -> Appeal | None:
        return self.appeals.get(appeal_id)

    async def list_by_status(self, status: AppealStatus | None = None, limit: int = 100) -> Sequence[Appeal]:
        items = [appeal for appeal in self.appeals.values() if status is None or appeal.status is status]
        items.sort(key=lambda appeal: appeal.created_at, reverse=True)
        return items[:limit]

    async def list_for_user(self, user_id: str, limit: int = 10) -> Sequence[Appeal]:
        items = [appeal for appeal in self.appeals.values() if appeal.user_id == user_id]
        items.sort(key=lambda appeal: appeal.created_at, reverse=True)
        return items[:limit]

    async def close(self, appeal: Appeal) -> Appeal | None:
        current = self.appeals.get(appeal.appeal_id)
        if current is None or current.status is not AppealStatus.PENDING:
            return None
        self.appeals[appeal.appeal_id] = appeal
        return appeal
