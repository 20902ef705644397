"""Public trust-and-safety actions.

Each action returns an :class:`ActionResult` carrying either the payload or an
explicit :class:`ErrorKind`. Only :class:`SafetyError` subclasses are mapped;
anything else is a programming error and propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, Sequence, TypeVar

from fastapi import status

from platesafe.safety.domain.appeals import Appeal, AppealDecision, AppealService
from platesafe.safety.domain.errors import ErrorKind, RateLimitExceeded, SafetyError
from platesafe.safety.domain.escalation import (
    Escalation,
    EscalationResult,
    EscalationService,
    Message,
    OwnerReputation,
    ResolutionResult,
    SweepReport,
)
from platesafe.safety.domain.rate_limit import RateLimitDecision, RateLimiter, RateLimitRequest
from platesafe.safety.domain.reports import Report, ReportOutcome, ReportReview, ReportService, ScreeningResult
from platesafe.safety.domain.trust import TrustChange, TrustLedger, TrustScoreHistoryEntry, UserTrustState

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ActionResult(Generic[T]):
    ok: bool
    data: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None
    status_code: int = status.HTTP_200_OK
    retryable: bool = False

    @classmethod
    def success(cls, data: T, *, status_code: int = status.HTTP_200_OK) -> "ActionResult[T]":
        return cls(ok=True, data=data, status_code=status_code)

    @classmethod
    def failure(cls, exc: SafetyError, *, data: Any = None) -> "ActionResult[Any]":
        return cls(
            ok=False,
            data=data,
            error=exc.kind,
            message=exc.detail,
            retry_after=getattr(exc, "retry_after", None),
            status_code=exc.status_code,
            retryable=exc.retryable,
        )


class SafetyService:
    def __init__(
        self,
        *,
        limiter: RateLimiter,
        ledger: TrustLedger,
        reports: ReportService,
        escalations: EscalationService,
        appeals: AppealService,
    ) -> None:
        self.limiter = limiter
        self.ledger = ledger
        self.reports = reports
        self.escalations = escalations
        self.appeals = appeals

    async def check_rate_limit(
        self,
        policy: str,
        *,
        subject_id: str | None = None,
        client_ip: str | None = None,
    ) -> ActionResult[RateLimitDecision]:
        try:
            decision = await self.limiter.admit(policy, RateLimitRequest(subject_id=subject_id, client_ip=client_ip))
        except SafetyError as exc:
            return ActionResult.failure(exc)
        if decision.allowed:
            return ActionResult.success(decision)
        return ActionResult.failure(
            RateLimitExceeded(decision.message, retry_after=decision.retry_after_seconds),
            data=decision,
        )

    async def submit_report(self, *, message_id: str, reporter_id: str, reason: str) -> ActionResult[ReportOutcome]:
        return await self._run(
            self.reports.submit_report(message_id=message_id, reporter_id=reporter_id, reason=reason),
            status_code=status.HTTP_201_CREATED,
        )

    async def get_trust_state(self, user_id: str) -> ActionResult[UserTrustState]:
        return await self._run(self.ledger.get_state(user_id))

    async def get_trust_history(self, user_id: str, limit: int = 50) -> ActionResult[Sequence[TrustScoreHistoryEntry]]:
        return await self._run(self.ledger.history(user_id, limit))

    async def create_message(
        self,
        *,
        plate: str,
        sender_id: str,
        text: str,
        urgency: str = "normal",
    ) -> ActionResult[Message]:
        return await self._run(
            self.escalations.create_message(plate=plate, sender_id=sender_id, text=text, urgency=urgency),
            status_code=status.HTTP_201_CREATED,
        )

    async def escalate_message(
        self,
        message_id: str,
        *,
        escalated_by: str,
        reason: str | None = None,
        authority_type: str | None = None,
    ) -> ActionResult[EscalationResult]:
        return await self._run(
            self.escalations.escalate(
                message_id,
                escalated_by=escalated_by,
                reason=reason,
                authority_type=authority_type,
            )
        )

    async def run_auto_escalation_sweep(self, *, limit: int | None = None) -> ActionResult[SweepReport]:
        return await self._run(self.escalations.run_sweep(limit=limit))

    async def resolve_escalation(
        self,
        escalation_id: str,
        outcome: str,
        *,
        actor_id: str,
        notes: str | None = None,
        authority_reference: str | None = None,
    ) -> ActionResult[ResolutionResult]:
        return await self._run(
            self.escalations.resolve(
                escalation_id,
                outcome,
                actor_id=actor_id,
                notes=notes,
                authority_reference=authority_reference,
            )
        )

    async def screen_message(
        self,
        *,
        sender_id: str | None,
        text: str,
        message_id: str | None = None,
    ) -> ActionResult[ScreeningResult]:
        return await self._run(self.reports.screen_message(sender_id=sender_id, text=text, message_id=message_id))

    async def record_owner_response(self, message_id: str, *, owner_id: str) -> ActionResult[Message]:
        return await self._run(self.escalations.record_owner_response(message_id, owner_id=owner_id))

    async def review_report(
        self,
        report_id: str,
        decision: str,
        *,
        reviewed_by: str,
        notes: str | None = None,
        action: str | None = None,
    ) -> ActionResult[ReportReview]:
        return await self._run(
            self.reports.review_report(report_id, decision, reviewed_by=reviewed_by, notes=notes, action=action)
        )

    async def list_reports(self, status: str | None = None, limit: int = 100) -> ActionResult[Sequence[Report]]:
        return await self._run(self.reports.list_reports(status, limit))

    async def adjust_trust(
        self,
        user_id: str,
        *,
        performed_by: str,
        adjustment: int = 0,
        blocked: bool | None = None,
        reason: str | None = None,
    ) -> ActionResult[tuple[UserTrustState, Optional[TrustChange]]]:
        return await self._run(
            self.ledger.admin_update(
                user_id,
                performed_by=performed_by,
                adjustment=adjustment,
                blocked=blocked,
                reason=reason,
            )
        )

    async def submit_appeal(self, *, user_id: str, reason: str) -> ActionResult[Appeal]:
        return await self._run(self.appeals.submit(user_id, reason), status_code=status.HTTP_201_CREATED)

    async def list_appeals(self, status_filter: str | None = None, limit: int = 100) -> ActionResult[Sequence[Appeal]]:
        return await self._run(self.appeals.list_appeals(status_filter, limit))

    async def user_appeals(self, user_id: str, limit: int = 10) -> ActionResult[Sequence[Appeal]]:
        return await self._run(self.appeals.for_user(user_id, limit))

    async def approve_appeal(
        self,
        appeal_id: str,
        *,
        reviewed_by: str,
        adjustment: int = 0,
        notes: str | None = None,
    ) -> ActionResult[AppealDecision]:
        return await self._run(
            self.appeals.approve(appeal_id, reviewed_by=reviewed_by, adjustment=adjustment, notes=notes)
        )

    async def deny_appeal(self, appeal_id: str, *, reviewed_by: str, notes: str | None = None) -> ActionResult[AppealDecision]:
        return await self._run(self.appeals.deny(appeal_id, reviewed_by=reviewed_by, notes=notes))

    async def pending_escalations(self, limit: int = 50) -> ActionResult[Sequence[Escalation]]:
        return await self._run(self.escalations.pending(limit))

    async def owner_reputation(self, owner_id: str) -> ActionResult[OwnerReputation]:
        return await self._run(self.escalations.owner_reputation(owner_id))

    async def _run(self, awaitable: Awaitable[T], *, status_code: int = status.HTTP_200_OK) -> ActionResult[T]:
        try:
            data = await awaitable
        except SafetyError as exc:
            if exc.retryable:
                logger.warning("safety action failed", extra={"error": exc.kind.value, "detail": exc.detail})
            return ActionResult.failure(exc)
        return ActionResult.success(data, status_code=status_code)
