"""User reports and content screening: the two paths that penalise senders."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol, Sequence

from platesafe.obs import metrics
from platesafe.safety.domain.errors import ConflictError, NotFoundError, ValidationError, bounded
from platesafe.safety.domain.escalation import Message, parse_enum
from platesafe.safety.domain.moderation import ContentModerator, ModerationAction, ModerationVerdict
from platesafe.safety.domain.offenders import OffenderAnalysis, RepeatOffenderAnalyzer
from platesafe.safety.domain.trust import (
    TrustChange,
    TrustChangeContext,
    TrustLedger,
    TrustReason,
    UserTrustState,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


class ReportStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    DISMISSED = "dismissed"
    ACTION_TAKEN = "action_taken"


REVIEWED_STATUSES = frozenset({ReportStatus.REVIEWED, ReportStatus.DISMISSED, ReportStatus.ACTION_TAKEN})


class ReportAction(str, Enum):
    BLOCK = "block"
    ADJUST_TRUST = "adjust_trust"


@dataclass(frozen=True, slots=True)
class Report:
    report_id: str
    reported_user_id: str
    reporter_id: str
    message_id: str
    reason: str
    created_at: datetime
    status: ReportStatus = ReportStatus.PENDING
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None


class ReportRepository(Protocol):
    async def insert_if_absent(self, report: Report) -> bool:
        """Store ``report`` unless ``(message_id, reporter_id)`` already exists."""
        ...

    async def discard(self, report_id: str) -> None:
        ...

    async def list_for_user(self, reported_user_id: str, limit: int = 50) -> Sequence[Report]:
        ...

    async def get(self, report_id: str) -> Report | None:
        ...

    async def list_by_status(self, status: ReportStatus | None = None, limit: int = 100) -> Sequence[Report]:
        """Newest first; ``None`` lists every status."""
        ...

    async def save_review(self, report: Report) -> Report | None:
        """Persist the review fields of ``report``; ``None`` when the row is gone."""
        ...


class MessageSource(Protocol):
    async def get_message(self, message_id: str) -> Message | None:
        ...


class ContentRejected(ValidationError):
    """Screening blocked the content outright."""

    detail = "Message blocked by content moderation"

    def __init__(self, verdict: ModerationVerdict) -> None:
        super().__init__(verdict.reason or self.detail)
        self.verdict = verdict


@dataclass(frozen=True)
class ReportOutcome:
    report: Report
    penalty: int
    analysis: OffenderAnalysis
    trust_change: TrustChange


@dataclass(frozen=True)
class ScreeningResult:
    verdict: ModerationVerdict
    trust_change: TrustChange | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict.action is not ModerationAction.BLOCK


@dataclass(frozen=True)
class ReportReview:
    report: Report
    action: ReportAction | None = None
    state: UserTrustState | None = None
    trust_change: TrustChange | None = None


class ReportService:
    """Orchestrates report submission, staff review and message screening.

    Penalties are ``base * multiplier`` where the multiplier comes from the
    repeat-offender analysis of *prior* violations: it is computed before the
    current report's history entry is written.
    """

    def __init__(
        self,
        reports: ReportRepository,
        messages: MessageSource,
        ledger: TrustLedger,
        analyzer: RepeatOffenderAnalyzer,
        moderator: ContentModerator,
        *,
        report_penalty: int = 10,
        ai_moderation_penalty: int = 10,
        review_penalty: int = 20,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._reports = reports
        self._messages = messages
        self._ledger = ledger
        self._analyzer = analyzer
        self._moderator = moderator
        self.report_penalty = report_penalty
        self.ai_moderation_penalty = ai_moderation_penalty
        self.review_penalty = review_penalty
        self._timeout = timeout_seconds
        self._clock = clock

    async def submit_report(self, *, message_id: str, reporter_id: str, reason: str) -> ReportOutcome:
        reason = (reason or "").strip()
        if not message_id or not reporter_id or not reason:
            raise ValidationError("Missing required fields: message_id, reporter_id, reason")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")

        await self._ledger.ensure_not_blocked(reporter_id)
        message = await bounded(self._messages.get_message(message_id), self._timeout, dependency="message_store")
        if message is None:
            raise NotFoundError("Message not found")
        reported_user_id = message.sender_id
        if reported_user_id == reporter_id:
            raise ValidationError("You cannot report your own messages")

        report = Report(
            report_id=uuid.uuid4().hex,
            reported_user_id=reported_user_id,
            reporter_id=reporter_id,
            message_id=message_id,
            reason=reason,
            created_at=self._clock(),
        )
        inserted = await bounded(self._reports.insert_if_absent(report), self._timeout, dependency="report_store")
        if not inserted:
            raise ConflictError("You have already reported this message")

        analysis = await self._analyzer.analyze(reported_user_id)
        penalty = self.report_penalty * analysis.escalation_multiplier
        details = f"Reported for: {reason}"
        if analysis.is_repeat_offender:
            details += f" (repeat offender, x{analysis.escalation_multiplier} penalty)"
        try:
            change = await self._ledger.apply_change(
                reported_user_id,
                -penalty,
                TrustReason.REPORT_RECEIVED,
                TrustChangeContext(
                    details=details,
                    related_report_id=report.report_id,
                    related_message_id=message_id,
                    performed_by=reporter_id,
                ),
            )
        except Exception:
            await self._compensate(report)
            raise

        metrics.REPORTS_SUBMITTED.labels(repeat_offender=str(analysis.is_repeat_offender).lower()).inc()
        logger.info(
            "report submitted",
            extra={
                "report_id": report.report_id,
                "reported_user_id": reported_user_id,
                "penalty": penalty,
                "repeat_offender": analysis.is_repeat_offender,
                "newly_blocked": change.newly_blocked,
            },
        )
        return ReportOutcome(report=report, penalty=penalty, analysis=analysis, trust_change=change)

    async def screen_message(self, *, sender_id: str | None, text: str, message_id: str | None = None) -> ScreeningResult:
        """Gate outgoing content: blocked senders and ``block`` verdicts are rejected.

        A ``block`` verdict costs the sender an ``ai_moderation`` penalty before
        the rejection is raised; ``flag`` verdicts are logged only.
        """

        if not text or not text.strip():
            raise ValidationError("text must not be empty")
        if sender_id:
            await self._ledger.ensure_not_blocked(sender_id)
        verdict = await self._moderator.screen(text, user_id=sender_id)
        if verdict.action is ModerationAction.FLAG:
            logger.warning(
                "message flagged for review",
                extra={"user_id": sender_id, "categories": list(verdict.flagged_categories)},
            )
            return ScreeningResult(verdict=verdict)
        if verdict.action is not ModerationAction.BLOCK:
            return ScreeningResult(verdict=verdict)

        if sender_id:
            analysis = await self._analyzer.analyze(sender_id)
            await self._ledger.apply_change(
                sender_id,
                -self.ai_moderation_penalty * analysis.escalation_multiplier,
                TrustReason.AI_MODERATION,
                TrustChangeContext(details=verdict.reason, related_message_id=message_id),
            )
        raise ContentRejected(verdict)

    async def review_report(
        self,
        report_id: str,
        status: ReportStatus | str,
        *,
        reviewed_by: str,
        notes: str | None = None,
        action: ReportAction | str | None = None,
    ) -> ReportReview:
        """Record a staff decision and optionally act on the reported user.

        ``block`` is only accepted together with ``action_taken``; ``adjust_trust``
        costs the reported user ``review_penalty`` points as an ``admin_adjustment``.
        A report may be reviewed again; the latest decision wins.
        """

        new_status = parse_enum(ReportStatus, status, field_name="status")
        if new_status not in REVIEWED_STATUSES:
            raise ValidationError("status must be one of reviewed, dismissed, action_taken")
        report_action = parse_enum(ReportAction, action, field_name="action") if action is not None else None
        if report_action is ReportAction.BLOCK and new_status is not ReportStatus.ACTION_TAKEN:
            raise ValidationError("block requires status action_taken")

        report = await bounded(self._reports.get(report_id), self._timeout, dependency="report_store")
        if report is None:
            raise NotFoundError("Report not found")
        reviewed = replace(
            report,
            status=new_status,
            reviewed_by=reviewed_by,
            reviewed_at=self._clock(),
            review_notes=notes if notes is not None else report.review_notes,
        )
        saved = await bounded(self._reports.save_review(reviewed), self._timeout, dependency="report_store")
        if saved is None:
            raise NotFoundError("Report not found")

        state = None
        change = None
        if report_action is ReportAction.BLOCK:
            state = await self._ledger.block(
                saved.reported_user_id,
                f"Blocked by admin: {notes or 'Policy violation'}",
                performed_by=reviewed_by,
            )
        elif report_action is ReportAction.ADJUST_TRUST:
            change = await self._ledger.apply_change(
                saved.reported_user_id,
                -self.review_penalty,
                TrustReason.ADMIN_ADJUSTMENT,
                TrustChangeContext(
                    details=f"Report reviewed: {notes or saved.reason}",
                    related_report_id=saved.report_id,
                    related_message_id=saved.message_id,
                    performed_by=reviewed_by,
                ),
            )

        action_label = report_action.value if report_action else "none"
        metrics.REPORT_REVIEWS.labels(status=new_status.value, action=action_label).inc()
        logger.info(
            "report reviewed",
            extra={"report_id": report_id, "status": new_status.value, "action": action_label, "reviewed_by": reviewed_by},
        )
        return ReportReview(report=saved, action=report_action, state=state, trust_change=change)

    async def list_reports(self, status: ReportStatus | str | None = None, limit: int = 100) -> Sequence[Report]:
        wanted = parse_enum(ReportStatus, status, field_name="status") if status is not None else None
        return await bounded(
            self._reports.list_by_status(wanted, max(1, limit)),
            self._timeout,
            dependency="report_store",
        )

    async def reports_against(self, user_id: str, limit: int = 50) -> Sequence[Report]:
        return await bounded(self._reports.list_for_user(user_id, limit), self._timeout, dependency="report_store")

    async def _compensate(self, report: Report) -> None:
        try:
            await bounded(self._reports.discard(report.report_id), self._timeout, dependency="report_store")
        except Exception:  # noqa: BLE001 - the original ledger failure is re-raised by the caller
            logger.error(
                "failed to discard report after ledger failure",
                extra={"report_id": report.report_id},
                exc_info=True,
            )


class InMemoryReportRepository(ReportRepository):
    def __init__(self) -> None:
        self.reports: dict[str, Report] = {}

    async def insert_if_absent(self, report: Report) -> bool:
        for existing in self.reports.values():
            if existing.message_id == report.message_id and existing.reporter_id == report.reporter_id:
                return False
        self.reports[report.report_id] = report
        return True

    async def discard(self, report_id: str) -> None:
        self.reports.pop(report_id, None)

    async def list_for_user(self, reported_user_id: str, limit: int = 50) -> Sequence[Report]:
        items = [report for report in self.reports.values() if report.reported_user_id == reported_user_id]
        items.sort(key=lambda report: report.created_at, reverse=True)
        return items[:limit]

    async def get(self, report_id: str) -> Report | None:
        return self.reports.get(report_id)

    async def list_by_status(self, status: ReportStatus | None = None, limit: int = 100) -> Sequence[Report]:
        items = [report for report in self.reports.values() if status is None or report.status is status]
        items.sort(key=lambda report: report.created_at, reverse=True)
        return items[:limit]

    async def save_review(self, report: Report) -> Report | None:
        if report.report_id not in self.reports:
            return None
        self.reports[report.report_id] = report
        return report
