"""Trust score ledger: bounded scores, append-only history and auto-block."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Collection, Protocol, Sequence

from platesafe.obs import metrics
from platesafe.safety.domain.errors import AccountBlocked, NotFoundError, ValidationError, bounded

logger = logging.getLogger(__name__)

AUTO_BLOCK_THRESHOLD = 50
DEFAULT_TRUST_SCORE = 100
MIN_SCORE = 0
MAX_SCORE = 100


class TrustReason(str, Enum):
    REPORT_RECEIVED = "report_received"
    AI_MODERATION = "ai_moderation"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    APPEAL_APPROVED = "appeal_approved"
    TIME_BONUS = "time_bonus"
    INITIAL = "initial"


VIOLATION_REASONS: frozenset[TrustReason] = frozenset({TrustReason.REPORT_RECEIVED, TrustReason.AI_MODERATION})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp(value: int, minimum: int = MIN_SCORE, maximum: int = MAX_SCORE) -> int:
    return max(minimum, min(maximum, value))


@dataclass(frozen=True, slots=True)
class TrustChangeContext:
    details: str | None = None
    related_report_id: str | None = None
    related_message_id: str | None = None
    performed_by: str = "system"


@dataclass(frozen=True, slots=True)
class TrustScoreHistoryEntry:
    """Immutable record of one ledger mutation."""

    user_id: str
    previous_score: int
    new_score: int
    change: int
    reason: TrustReason
    created_at: datetime
    details: str | None = None
    related_report_id: str | None = None
    related_message_id: str | None = None
    performed_by: str = "system"
    sequence: int = 0


@dataclass(frozen=True, slots=True)
class UserTrustState:
    user_id: str
    trust_score: int = DEFAULT_TRUST_SCORE
    blocked: bool = False
    blocked_reason: str | None = None
    blocked_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class TrustChange:
    """Outcome of :meth:`TrustLedger.apply_change`."""

    user_id: str
    previous_score: int
    new_score: int
    change: int
    blocked: bool
    newly_blocked: bool
    blocked_reason: str | None
    history_entry: TrustScoreHistoryEntry


TrustMutation = Callable[[UserTrustState], "tuple[UserTrustState, TrustScoreHistoryEntry]"]


class TrustRepository(Protocol):
    """Storage contract for trust state and its history."""

    async def get_state(self, user_id: str) -> UserTrustState | None:
        ...

    async def mutate(
        self,
        user_id: str,
        *,
        default_score: int,
        mutation: TrustMutation,
    ) -> tuple[UserTrustState, TrustScoreHistoryEntry]:
        """Load (creating with ``default_score`` if absent) and lock the state,
        apply ``mutation`` and persist the new state and history entry together.
        Returns the stored entry with its sequence assigned."""
        ...

    async def list_history(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        since: datetime | None = None,
        reasons: Collection[TrustReason] | None = None,
    ) -> Sequence[TrustScoreHistoryEntry]:
        """Entries newest first (created_at, then sequence)."""
        ...

    async def clear_block(self, user_id: str) -> UserTrustState | None:
        ...


def auto_block_reason(threshold: int, reason: TrustReason) -> str:
    return f"Automatic block: Trust score dropped below {threshold} due to {reason.value}"


class TrustLedger:
    """Sole writer of trust scores and block flags.

    Blocking is sticky: a recovering score never unblocks; only
    :meth:`unblock` (the administrative path) clears it.
    """

    def __init__(
        self,
        repository: TrustRepository,
        *,
        auto_block_threshold: int = AUTO_BLOCK_THRESHOLD,
        default_score: int = DEFAULT_TRUST_SCORE,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repository
        self.auto_block_threshold = auto_block_threshold
        self.default_score = clamp(default_score)
        self._timeout = timeout_seconds
        self._clock = clock

    @property
    def repository(self) -> TrustRepository:
        return self._repo

    async def apply_change(
        self,
        user_id: str,
        delta: int,
        reason: TrustReason,
        context: TrustChangeContext | None = None,
    ) -> TrustChange:
        if not isinstance(reason, TrustReason):
            raise TypeError(f"reason must be a TrustReason, got {reason!r}")
        ctx = context or TrustChangeContext()
        now = self._clock()
        threshold = self.auto_block_threshold
        newly_blocked = False

        def mutation(current: UserTrustState) -> tuple[UserTrustState, TrustScoreHistoryEntry]:
            nonlocal newly_blocked
            new_score = clamp(current.trust_score + delta)
            entry = TrustScoreHistoryEntry(
                user_id=user_id,
                previous_score=current.trust_score,
                new_score=new_score,
                change=delta,
                reason=reason,
                created_at=now,
                details=ctx.details,
                related_report_id=ctx.related_report_id,
                related_message_id=ctx.related_message_id,
                performed_by=ctx.performed_by,
            )
            updated = replace(current, trust_score=new_score)
            newly_blocked = new_score < threshold and not current.blocked
            if newly_blocked:
                updated = replace(
                    updated,
                    blocked=True,
                    blocked_reason=auto_block_reason(threshold, reason),
                    blocked_at=now,
                )
            return updated, entry

        state, entry = await bounded(
            self._repo.mutate(user_id, default_score=self.default_score, mutation=mutation),
            self._timeout,
            dependency="trust_store",
        )
        metrics.TRUST_CHANGES.labels(reason=reason.value).inc()
        logger.info(
            "trust score updated",
            extra={
                "user_id": user_id,
                "previous_score": entry.previous_score,
                "new_score": entry.new_score,
                "change": delta,
                "reason": reason.value,
            },
        )
        if newly_blocked:
            metrics.TRUST_AUTO_BLOCKS.labels(reason=reason.value).inc()
            logger.warning(
                "account auto-blocked",
                extra={"user_id": user_id, "new_score": entry.new_score, "reason": reason.value},
            )
        return TrustChange(
            user_id=user_id,
            previous_score=entry.previous_score,
            new_score=entry.new_score,
            change=delta,
            blocked=state.blocked,
            newly_blocked=newly_blocked,
            blocked_reason=state.blocked_reason,
            history_entry=entry,
        )

    async def find_state(self, user_id: str) -> UserTrustState | None:
        return await bounded(self._repo.get_state(user_id), self._timeout, dependency="trust_store")

    async def get_state(self, user_id: str) -> UserTrustState:
        """Current state; first-seen users read as trusted and unblocked."""

        state = await self.find_state(user_id)
        return state or UserTrustState(user_id=user_id, trust_score=self.default_score)

    async def history(self, user_id: str, limit: int = 50) -> Sequence[TrustScoreHistoryEntry]:
        return await bounded(
            self._repo.list_history(user_id, limit=max(0, limit)),
            self._timeout,
            dependency="trust_store",
        )

    async def ensure_not_blocked(self, user_id: str) -> None:
        state = await self.find_state(user_id)
        if state is not None and state.blocked:
            raise AccountBlocked(state.blocked_reason)

    async def unblock(self, user_id: str, *, performed_by: str = "admin") -> UserTrustState:
        """Administrative unblock; the score itself is left untouched."""

        state = await bounded(self._repo.clear_block(user_id), self._timeout, dependency="trust_store")
        if state is None:
            raise NotFoundError("user_not_found")
        logger.info("account unblocked", extra={"user_id": user_id, "performed_by": performed_by})
        return state

    async def block(self, user_id: str, reason: str, *, performed_by: str = "admin") -> UserTrustState:
        """Administrative block. The score is unchanged; the history records a zero change."""

        now = self._clock()

        def mutation(current: UserTrustState) -> tuple[UserTrustState, TrustScoreHistoryEntry]:
            entry = TrustScoreHistoryEntry(
                user_id=user_id,
                previous_score=current.trust_score,
                new_score=current.trust_score,
                change=0,
                reason=TrustReason.ADMIN_ADJUSTMENT,
                created_at=now,
                details=reason,
                performed_by=performed_by,
            )
            return replace(current, blocked=True, blocked_reason=reason, blocked_at=now), entry

        state, _ = await bounded(
            self._repo.mutate(user_id, default_score=self.default_score, mutation=mutation),
            self._timeout,
            dependency="trust_store",
        )
        metrics.TRUST_CHANGES.labels(reason=TrustReason.ADMIN_ADJUSTMENT.value).inc()
        logger.warning("account blocked by staff", extra={"user_id": user_id, "performed_by": performed_by})
        return state

    async def admin_update(
        self,
        user_id: str,
        *,
        performed_by: str,
        adjustment: int = 0,
        blocked: bool | None = None,
        reason: str | None = None,
    ) -> tuple[UserTrustState, TrustChange | None]:
        """Staff override: optional ``admin_adjustment`` delta, then an explicit block or unblock.

        The delta is applied first so an explicit unblock is not undone by an
        auto-block triggered by the same update.
        """

        if not adjustment and blocked is None:
            raise ValidationError("adjustment or blocked is required")
        change = None
        if adjustment:
            change = await self.apply_change(
                user_id,
                adjustment,
                TrustReason.ADMIN_ADJUSTMENT,
                TrustChangeContext(details=reason or "Adjusted by safety staff", performed_by=performed_by),
            )
        if blocked is True:
            state = await self.block(user_id, reason or "Blocked by admin", performed_by=performed_by)
        elif blocked is False:
            state = await self.unblock(user_id, performed_by=performed_by)
        else:
            state = await self.get_state(user_id)
        return state, change


class InMemoryTrustRepository(TrustRepository):
    """Reference repository used in tests and developer environments."""

    def __init__(self) -> None:
        self.states: dict[str, UserTrustState] = {}
        self.entries: list[TrustScoreHistoryEntry] = []
        self._sequence = itertools.count(1)

    async def get_state(self, user_id: str) -> UserTrustState | None:
        return self.states.get(user_id)

    async def mutate(
        self,
        user_id: str,
        *,
        default_score: int,
        mutation: TrustMutation,
    ) -> tuple[UserTrustState, TrustScoreHistoryEntry]:
        # No await between read and write, so this is atomic on the event loop.
        current = self.states.get(user_id) or UserTrustState(user_id=user_id, trust_score=default_score)
        updated, entry = mutation(current)
        entry = replace(entry, sequence=next(self._sequence))
        self.states[user_id] = updated
        self.entries.append(entry)
        return updated, entry

    async def list_history(
        self,
        user_id: str,
        *,
        limit: int | None = None,
        since: datetime | None = None,
        reasons: Collection[TrustReason] | None = None,
    ) -> Sequence[TrustScoreHistoryEntry]:
        matches = [
            entry
            for entry in self.entries
            if entry.user_id == user_id
            and (since is None or entry.created_at >= since)
            and (reasons is None or entry.reason in reasons)
        ]
        matches.sort(key=lambda entry: (entry.created_at, entry.sequence), reverse=True)
        return matches if limit is None else matches[:limit]

    async def clear_block(self, user_id: str) -> UserTrustState | None:
        state = self.states.get(user_id)
        if state is None:
            return None
        updated = replace(state, blocked=False, blocked_reason=None, blocked_at=None)
        self.states[user_id] = updated
        return updated
