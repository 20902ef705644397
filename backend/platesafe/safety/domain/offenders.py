"""Repeat-offender analysis over recent trust history."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from platesafe.safety.domain.errors import bounded
from platesafe.safety.domain.trust import VIOLATION_REASONS, TrustReason, TrustRepository, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OffenderAnalysis:
    user_id: str
    is_repeat_offender: bool
    report_count: int
    ai_moderation_count: int
    escalation_multiplier: int
    recent_violations: int
    degraded: bool = False


class RepeatOffenderAnalyzer:
    """Advisory read-only classification; callers pick the penalty.

    Store failures return the conservative default (no violations, multiplier 1).
    """

    def __init__(
        self,
        repository: TrustRepository,
        *,
        window: timedelta = timedelta(days=30),
        report_threshold: int = 3,
        ai_moderation_threshold: int = 5,
        multiplier: int = 2,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self.window = window
        self.report_threshold = report_threshold
        self.ai_moderation_threshold = ai_moderation_threshold
        self.multiplier = multiplier
        self._timeout = timeout_seconds
        self._clock = clock

    async def analyze(self, user_id: str) -> OffenderAnalysis:
        since = self._clock() - self.window
        try:
            entries = await bounded(
                self._repo.list_history(user_id, since=since, reasons=VIOLATION_REASONS),
                self._timeout,
                dependency="trust_store",
            )
        except Exception:  # noqa: BLE001 - advisory read degrades to the neutral answer
            logger.warning("repeat offender lookup failed", extra={"user_id": user_id}, exc_info=True)
            return OffenderAnalysis(
                user_id=user_id,
                is_repeat_offender=False,
                report_count=0,
                ai_moderation_count=0,
                escalation_multiplier=1,
                recent_violations=0,
                degraded=True,
            )
        report_count = sum(1 for entry in entries if entry.reason is TrustReason.REPORT_RECEIVED)
        ai_count = sum(1 for entry in entries if entry.reason is TrustReason.AI_MODERATION)
        repeat = report_count >= self.report_threshold or ai_count >= self.ai_moderation_threshold
        return OffenderAnalysis(
            user_id=user_id,
            is_repeat_offender=repeat,
            report_count=report_count,
            ai_moderation_count=ai_count,
            escalation_multiplier=self.multiplier if repeat else 1,
            recent_violations=len(entries),
        )
