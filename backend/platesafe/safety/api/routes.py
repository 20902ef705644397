"""HTTP surface for the trust-and-safety actions."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from platesafe.safety.api.errors import result_error_response
from platesafe.safety.container import SafetyContainer
from platesafe.safety.domain.appeals import Appeal, AppealDecision
from platesafe.safety.domain.errors import AuthorizationError
from platesafe.safety.domain.escalation import Escalation, Message, OwnerReputation, SweepReport
from platesafe.safety.domain.moderation import ModerationVerdict
from platesafe.safety.domain.rate_limit import RateLimitDecision
from platesafe.safety.domain.reports import Report
from platesafe.safety.domain.trust import TrustChange, TrustScoreHistoryEntry, UserTrustState

router = APIRouter(prefix="/api/safety/v1", tags=["safety"])


def get_container(request: Request) -> SafetyContainer:
    return request.app.state.safety


async def get_optional_actor(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> Optional[str]:
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


async def get_actor(actor: Optional[str] = Depends(get_optional_actor)) -> str:
    if actor is None:
        raise AuthorizationError("missing_actor")
    return actor


async def require_staff(
    actor: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
) -> str:
    if actor not in container.settings.safety_staff_ids:
        raise AuthorizationError("staff_only")
    return actor


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def _admit(
    container: SafetyContainer,
    policy: str,
    *,
    subject_id: Optional[str],
    request: Request,
) -> tuple[Optional[RateLimitDecision], Optional[JSONResponse]]:
    """Run ``policy`` for this request; the second item is the 429 to return when rejected."""

    admitted = await container.service.check_rate_limit(policy, subject_id=subject_id, client_ip=_client_ip(request))
    if admitted.ok:
        return admitted.data, None
    error = result_error_response(admitted)
    if admitted.data is not None:
        error.headers.update(admitted.data.headers())
    return admitted.data, error


class RateLimitCheckIn(BaseModel):
    subject_id: Optional[str] = None
    client_ip: Optional[str] = None


class RateLimitOut(BaseModel):
    policy: str
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    bracket: str
    skipped: bool
    degraded: bool

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitOut":
        return cls(
            policy=decision.policy,
            allowed=decision.allowed,
            limit=decision.limit,
            remaining=decision.remaining,
            retry_after_seconds=decision.retry_after_seconds,
            bracket=decision.bracket,
            skipped=decision.skipped,
            degraded=decision.degraded,
        )


class TrustStateOut(BaseModel):
    user_id: str
    trust_score: int
    blocked: bool
    blocked_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: UserTrustState) -> "TrustStateOut":
        return cls(
            user_id=state.user_id,
            trust_score=state.trust_score,
            blocked=state.blocked,
            blocked_reason=state.blocked_reason,
            blocked_at=state.blocked_at,
        )


class HistoryEntryOut(BaseModel):
    previous_score: int
    new_score: int
    change: int
    reason: str
    details: Optional[str] = None
    related_report_id: Optional[str] = None
    related_message_id: Optional[str] = None
    performed_by: str
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: TrustScoreHistoryEntry) -> "HistoryEntryOut":
        return cls(
            previous_score=entry.previous_score,
            new_score=entry.new_score,
            change=entry.change,
            reason=entry.reason.value,
            details=entry.details,
            related_report_id=entry.related_report_id,
            related_message_id=entry.related_message_id,
            performed_by=entry.performed_by,
            created_at=entry.created_at,
        )


class TrustHistoryOut(BaseModel):
    user_id: str
    entries: list[HistoryEntryOut]


class TrustChangeOut(BaseModel):
    previous_score: int
    new_score: int
    change: int
    blocked: bool
    newly_blocked: bool

    @classmethod
    def from_change(cls, change: TrustChange) -> "TrustChangeOut":
        return cls(
            previous_score=change.previous_score,
            new_score=change.new_score,
            change=change.change,
            blocked=change.blocked,
            newly_blocked=change.newly_blocked,
        )


class ReportIn(BaseModel):
    message_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)


class ReportOut(BaseModel):
    report_id: str
    reported_user_id: str
    message_id: str
    status: str
    penalty: int
    repeat_offender: bool
    user_blocked: bool
    new_trust_score: int


class MessageIn(BaseModel):
    plate: str = Field(..., min_length=1, max_length=16)
    text: str = Field(..., min_length=1, max_length=1000)
    urgency: str = Field(default="normal", pattern=r"^(normal|urgent|emergency)$")


class MessageOut(BaseModel):
    message_id: str
    plate: str
    sender_id: str
    urgency: str
    created_at: datetime
    escalation_deadline: Optional[datetime] = None
    escalated: bool
    escalation_level: str
    has_response: bool
    resolved: bool
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_message(cls, message: Message) -> "MessageOut":
        return cls(
            message_id=message.message_id,
            plate=message.plate,
            sender_id=message.sender_id,
            urgency=message.urgency.value,
            created_at=message.created_at,
            escalation_deadline=message.escalation_deadline,
            escalated=message.escalated,
            escalation_level=message.current_level.value,
            has_response=message.has_response,
            resolved=message.resolved,
            resolved_at=message.resolved_at,
        )


class EscalateIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    authority_type: Optional[str] = None


class EscalationOut(BaseModel):
    escalation_id: str
    message_id: str
    plate: str
    escalated_by: str
    level: str
    urgency: str
    escalated_at: datetime
    reason: Optional[str] = None
    authority_type: Optional[str] = None
    authority_contacted: bool
    authority_contacted_at: Optional[datetime] = None
    authority_reference: Optional[str] = None
    resolved: bool
    resolved_at: Optional[datetime] = None
    outcome: Optional[str] = None
    outcome_notes: Optional[str] = None

    @classmethod
    def from_escalation(cls, escalation: Escalation) -> "EscalationOut":
        return cls(
            escalation_id=escalation.escalation_id,
            message_id=escalation.message_id,
            plate=escalation.plate,
            escalated_by=escalation.escalated_by,
            level=escalation.level.value,
            urgency=escalation.urgency.value,
            escalated_at=escalation.escalated_at,
            reason=escalation.reason,
            authority_type=escalation.authority_type.value if escalation.authority_type else None,
            authority_contacted=escalation.authority_contacted,
            authority_contacted_at=escalation.authority_contacted_at,
            authority_reference=escalation.authority_reference,
            resolved=escalation.resolved,
            resolved_at=escalation.resolved_at,
            outcome=escalation.outcome.value if escalation.outcome else None,
            outcome_notes=escalation.outcome_notes,
        )


class EscalationResultOut(BaseModel):
    message: MessageOut
    escalation: EscalationOut


class ResolveIn(BaseModel):
    outcome: str
    notes: Optional[str] = Field(default=None, max_length=1000)
    authority_reference: Optional[str] = Field(default=None, max_length=128)


class ResolutionOut(BaseModel):
    message: MessageOut
    escalation: EscalationOut
    owner_credited: bool


class SweepOut(BaseModel):
    scanned: int
    escalated: list[str]
    skipped: list[str]
    failed: list[str]

    @classmethod
    def from_report(cls, report: SweepReport) -> "SweepOut":
        return cls(
            scanned=report.scanned,
            escalated=list(report.escalated),
            skipped=list(report.skipped),
            failed=list(report.failed),
        )


class ReputationOut(BaseModel):
    owner_id: str
    escalations_received: int
    escalations_resolved: int

    @classmethod
    def from_reputation(cls, reputation: OwnerReputation) -> "ReputationOut":
        return cls(
            owner_id=reputation.owner_id,
            escalations_received=reputation.escalations_received,
            escalations_resolved=reputation.escalations_resolved,
        )


class ScreenIn(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000)
    message_id: Optional[str] = None


class VerdictOut(BaseModel):
    allowed: bool
    flagged: bool
    severity: str
    action: str
    categories: list[str]
    reason: Optional[str] = None

    @classmethod
    def from_verdict(cls, verdict: ModerationVerdict, *, allowed: bool) -> "VerdictOut":
        return cls(
            allowed=allowed,
            flagged=verdict.flagged,
            severity=verdict.severity.value,
            action=verdict.action.value,
            categories=list(verdict.flagged_categories),
            reason=verdict.reason,
        )


class AppealSubmitIn(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class AppealReviewIn(BaseModel):
    adjustment: int = Field(default=0, ge=-100, le=100)
    notes: Optional[str] = Field(default=None, max_length=1000)


class AppealDenyIn(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class AppealOut(BaseModel):
    appeal_id: str
    user_id: str
    reason: str
    status: str
    created_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    trust_adjustment: int = 0

    @classmethod
    def from_appeal(cls, appeal: Appeal) -> "AppealOut":
        return cls(
            appeal_id=appeal.appeal_id,
            user_id=appeal.user_id,
            reason=appeal.reason,
            status=appeal.status.value,
            created_at=appeal.created_at,
            reviewed_by=appeal.reviewed_by,
            reviewed_at=appeal.reviewed_at,
            review_notes=appeal.review_notes,
            trust_adjustment=appeal.trust_adjustment,
        )


class AppealDecisionOut(BaseModel):
    appeal: AppealOut
    state: TrustStateOut
    change: Optional[TrustChangeOut] = None
    user_unblocked: bool

    @classmethod
    def from_decision(cls, decision: AppealDecision) -> "AppealDecisionOut":
        return cls(
            appeal=AppealOut.from_appeal(decision.appeal),
            state=TrustStateOut.from_state(decision.state),
            change=TrustChangeOut.from_change(decision.trust_change) if decision.trust_change else None,
            user_unblocked=decision.unblocked,
        )


class ReportReviewIn(BaseModel):
    status: str
    notes: Optional[str] = Field(default=None, max_length=1000)
    action: Optional[str] = None


class ReportSummaryOut(BaseModel):
    report_id: str
    reported_user_id: str
    reporter_id: str
    message_id: str
    reason: str
    status: str
    created_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None

    @classmethod
    def from_report(cls, report: Report) -> "ReportSummaryOut":
        return cls(
            report_id=report.report_id,
            reported_user_id=report.reported_user_id,
            reporter_id=report.reporter_id,
            message_id=report.message_id,
            reason=report.reason,
            status=report.status.value,
            created_at=report.created_at,
            reviewed_by=report.reviewed_by,
            reviewed_at=report.reviewed_at,
            review_notes=report.review_notes,
        )


class ReportReviewOut(BaseModel):
    report: ReportSummaryOut
    action: Optional[str] = None
    state: Optional[TrustStateOut] = None
    change: Optional[TrustChangeOut] = None


class TrustUpdateIn(BaseModel):
    adjustment: int = Field(default=0, ge=-100, le=100)
    blocked: Optional[bool] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class TrustUpdateOut(BaseModel):
    state: TrustStateOut
    change: Optional[TrustChangeOut] = None


@router.post("/rate-limits/{policy}/check", response_model=RateLimitOut)
async def check_rate_limit(
    policy: str,
    payload: RateLimitCheckIn,
    response: Response,
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.check_rate_limit(
        policy,
        subject_id=payload.subject_id,
        client_ip=payload.client_ip,
    )
    if not result.ok:
        error = result_error_response(result)
        if result.data is not None:
            error.headers.update(result.data.headers())
        return error
    response.headers.update(result.data.headers())
    return RateLimitOut.from_decision(result.data)


@router.post("/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: MessageIn,
    request: Request,
    response: Response,
    sender: Optional[str] = Depends(get_optional_actor),
    container: SafetyContainer = Depends(get_container),
):
    decision, rejected = await _admit(container, "message", subject_id=sender, request=request)
    if rejected is not None:
        return rejected
    service = container.service
    sender_id = sender or f"guest:{_client_ip(request) or 'unknown'}"
    screened = await service.screen_message(sender_id=sender, text=payload.text)
    if not screened.ok:
        return result_error_response(screened)
    created = await service.create_message(
        plate=payload.plate,
        sender_id=sender_id,
        text=payload.text,
        urgency=payload.urgency,
    )
    if not created.ok:
        return result_error_response(created)
    response.headers.update(decision.headers())
    return MessageOut.from_message(created.data)


@router.post("/messages/{message_id}/escalate", response_model=EscalationResultOut)
async def escalate_message(
    message_id: str,
    payload: EscalateIn,
    request: Request,
    actor: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
):
    _, rejected = await _admit(container, "api", subject_id=actor, request=request)
    if rejected is not None:
        return rejected
    result = await container.service.escalate_message(
        message_id,
        escalated_by=actor,
        reason=payload.reason,
        authority_type=payload.authority_type,
    )
    if not result.ok:
        return result_error_response(result)
    return EscalationResultOut(
        message=MessageOut.from_message(result.data.message),
        escalation=EscalationOut.from_escalation(result.data.escalation),
    )


@router.post("/messages/{message_id}/response", response_model=MessageOut)
async def record_owner_response(
    message_id: str,
    owner: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.record_owner_response(message_id, owner_id=owner)
    if not result.ok:
        return result_error_response(result)
    return MessageOut.from_message(result.data)


@router.post("/reports", response_model=ReportOut, status_code=status.HTTP_201_CREATED)
async def submit_report(
    payload: ReportIn,
    request: Request,
    reporter: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
):
    _, rejected = await _admit(container, "api", subject_id=reporter, request=request)
    if rejected is not None:
        return rejected
    result = await container.service.submit_report(
        message_id=payload.message_id,
        reporter_id=reporter,
        reason=payload.reason,
    )
    if not result.ok:
        return result_error_response(result)
    outcome = result.data
    return ReportOut(
        report_id=outcome.report.report_id,
        reported_user_id=outcome.report.reported_user_id,
        message_id=outcome.report.message_id,
        status=outcome.report.status.value,
        penalty=outcome.penalty,
        repeat_offender=outcome.analysis.is_repeat_offender,
        user_blocked=outcome.trust_change.blocked,
        new_trust_score=outcome.trust_change.new_score,
    )


@router.get("/trust/{user_id}", response_model=TrustStateOut)
async def get_trust_state(user_id: str, container: SafetyContainer = Depends(get_container)):
    result = await container.service.get_trust_state(user_id)
    if not result.ok:
        return result_error_response(result)
    return TrustStateOut.from_state(result.data)


@router.get("/trust/{user_id}/history", response_model=TrustHistoryOut)
async def get_trust_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.get_trust_history(user_id, limit)
    if not result.ok:
        return result_error_response(result)
    return TrustHistoryOut(user_id=user_id, entries=[HistoryEntryOut.from_entry(entry) for entry in result.data])


@router.post("/moderation/screen", response_model=VerdictOut)
async def screen_message(
    payload: ScreenIn,
    sender: Optional[str] = Depends(get_optional_actor),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.screen_message(sender_id=sender, text=payload.text, message_id=payload.message_id)
    if not result.ok:
        return result_error_response(result)
    return VerdictOut.from_verdict(result.data.verdict, allowed=result.data.allowed)


@router.post("/escalations/sweep", response_model=SweepOut)
async def run_sweep(
    limit: Optional[int] = Query(default=None, ge=1),
    _staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.run_auto_escalation_sweep(limit=limit)
    if not result.ok:
        return result_error_response(result)
    return SweepOut.from_report(result.data)


@router.get("/escalations/pending", response_model=list[EscalationOut])
async def pending_escalations(
    limit: int = Query(default=50, ge=1, le=200),
    _staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.pending_escalations(limit)
    if not result.ok:
        return result_error_response(result)
    return [EscalationOut.from_escalation(item) for item in result.data]


@router.post("/escalations/{escalation_id}/resolve", response_model=ResolutionOut)
async def resolve_escalation(
    escalation_id: str,
    payload: ResolveIn,
    actor: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.resolve_escalation(
        escalation_id,
        payload.outcome,
        actor_id=actor,
        notes=payload.notes,
        authority_reference=payload.authority_reference,
    )
    if not result.ok:
        return result_error_response(result)
    return ResolutionOut(
        message=MessageOut.from_message(result.data.message),
        escalation=EscalationOut.from_escalation(result.data.escalation),
        owner_credited=result.data.owner_credited,
    )


@router.get("/owners/{owner_id}/reputation", response_model=ReputationOut)
async def owner_reputation(owner_id: str, container: SafetyContainer = Depends(get_container)):
    result = await container.service.owner_reputation(owner_id)
    if not result.ok:
        return result_error_response(result)
    return ReputationOut.from_reputation(result.data)



@router.get("/reports", response_model=list[ReportSummaryOut])
async def list_reports(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=200),
    _staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.list_reports(status_filter, limit)
    if not result.ok:
        return result_error_response(result)
    return [ReportSummaryOut.from_report(report) for report in result.data]


@router.patch("/reports/{report_id}", response_model=ReportReviewOut)
async def review_report(
    report_id: str,
    payload: ReportReviewIn,
    staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.review_report(
        report_id,
        payload.status,
        reviewed_by=staff,
        notes=payload.notes,
        action=payload.action,
    )
    if not result.ok:
        return result_error_response(result)
    review = result.data
    return ReportReviewOut(
        report=ReportSummaryOut.from_report(review.report),
        action=review.action.value if review.action else None,
        state=TrustStateOut.from_state(review.state) if review.state else None,
        change=TrustChangeOut.from_change(review.trust_change) if review.trust_change else None,
    )


@router.patch("/trust/{user_id}", response_model=TrustUpdateOut)
async def update_trust(
    user_id: str,
    payload: TrustUpdateIn,
    staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.adjust_trust(
        user_id,
        performed_by=staff,
        adjustment=payload.adjustment,
        blocked=payload.blocked,
        reason=payload.reason,
    )
    if not result.ok:
        return result_error_response(result)
    state, change = result.data
    return TrustUpdateOut(
        state=TrustStateOut.from_state(state),
        change=TrustChangeOut.from_change(change) if change else None,
    )


@router.post("/appeals", response_model=AppealOut, status_code=status.HTTP_201_CREATED)
async def submit_appeal(
    payload: AppealSubmitIn,
    request: Request,
    actor: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
):
    _, rejected = await _admit(container, "api", subject_id=actor, request=request)
    if rejected is not None:
        return rejected
    result = await container.service.submit_appeal(user_id=actor, reason=payload.reason)
    if not result.ok:
        return result_error_response(result)
    return AppealOut.from_appeal(result.data)


@router.get("/appeals", response_model=list[AppealOut])
async def list_appeals(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=200),
    _staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.list_appeals(status_filter, limit)
    if not result.ok:
        return result_error_response(result)
    return [AppealOut.from_appeal(appeal) for appeal in result.data]


@router.get("/appeals/users/{user_id}", response_model=list[AppealOut])
async def user_appeals(
    user_id: str,
    actor: str = Depends(get_actor),
    container: SafetyContainer = Depends(get_container),
):
    if actor != user_id and actor not in container.settings.safety_staff_ids:
        raise AuthorizationError("own_appeals_only")
    result = await container.service.user_appeals(user_id)
    if not result.ok:
        return result_error_response(result)
    return [AppealOut.from_appeal(appeal) for appeal in result.data]


@router.post("/appeals/{appeal_id}/approve", response_model=AppealDecisionOut)
async def approve_appeal(
    appeal_id: str,
    payload: AppealReviewIn,
    staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.approve_appeal(
        appeal_id,
        reviewed_by=staff,
        adjustment=payload.adjustment,
        notes=payload.notes,
    )
    if not result.ok:
        return result_error_response(result)
    return AppealDecisionOut.from_decision(result.data)


@router.post("/appeals/{appeal_id}/deny", response_model=AppealDecisionOut)
async def deny_appeal(
    appeal_id: str,
    payload: AppealDenyIn,
    staff: str = Depends(require_staff),
    container: SafetyContainer = Depends(get_container),
):
    result = await container.service.deny_appeal(appeal_id, reviewed_by=staff, notes=payload.notes)
    if not result.ok:
        return result_error_response(result)
    return AppealDecisionOut.from_decision(result.data)
