"""Escalation state machine for unanswered urgent messages.

Levels progress along a fixed ladder::

    none -> reminder_sent -> authority_notified -> towing_requested

``resolved`` is orthogonal and may be set at any level. Outcomes feed the
plate owner's reputation counters, never the trust score.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Collection, Protocol, Sequence

from platesafe.obs import metrics
from platesafe.safety.domain.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    bounded,
)
from platesafe.safety.domain.identity import InMemoryPlateDirectory, PlateDirectory, normalize_plate
from platesafe.safety.domain.notifications import NotificationDispatcher
from platesafe.safety.domain.trust import TrustLedger, utcnow

logger = logging.getLogger(__name__)

AUTO_ESCALATION_ACTOR = "system-auto-escalation"
DEFAULT_ESCALATION_REASON = "No response within deadline"
AUTO_ESCALATION_REASON = "Auto-escalated: No response within deadline"


class Urgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"


ESCALATABLE_URGENCIES = frozenset({Urgency.URGENT, Urgency.EMERGENCY})


class EscalationLevel(str, Enum):
    NONE = "none"
    REMINDER_SENT = "reminder_sent"
    AUTHORITY_NOTIFIED = "authority_notified"
    TOWING_REQUESTED = "towing_requested"


ESCALATION_LADDER: tuple[EscalationLevel, ...] = (
    EscalationLevel.NONE,
    EscalationLevel.REMINDER_SENT,
    EscalationLevel.AUTHORITY_NOTIFIED,
    EscalationLevel.TOWING_REQUESTED,
)
AUTHORITY_LEVELS = frozenset({EscalationLevel.AUTHORITY_NOTIFIED, EscalationLevel.TOWING_REQUESTED})


class EscalationOutcome(str, Enum):
    OWNER_RESPONDED = "owner_responded"
    OWNER_MOVED_CAR = "owner_moved_car"
    TOWED = "towed"
    TICKET_ISSUED = "ticket_issued"
    DISMISSED = "dismissed"


OWNER_ACTION_OUTCOMES = frozenset({EscalationOutcome.OWNER_RESPONDED, EscalationOutcome.OWNER_MOVED_CAR})


class AuthorityType(str, Enum):
    PARKING_ENFORCEMENT = "parking_enforcement"
    TOWING_COMPANY = "towing_company"
    POLICE = "police"
    PROPERTY_MANAGER = "property_manager"


class ReputationCounter(str, Enum):
    ESCALATIONS_RECEIVED = "escalations_received"
    ESCALATIONS_RESOLVED = "escalations_resolved"


class EscalationAtMaximum(ConflictError):
    detail = "Message already escalated to maximum level"


class NotEligibleForEscalation(ValidationError):
    detail = "Message is not eligible for escalation: only urgent or emergency messages can be escalated"


def next_level(level: EscalationLevel) -> EscalationLevel:
    index = ESCALATION_LADDER.index(level)
    if index + 1 >= len(ESCALATION_LADDER):
        raise EscalationAtMaximum()
    return ESCALATION_LADDER[index + 1]


@dataclass(frozen=True, slots=True)
class Message:
    message_id: str
    plate: str
    sender_id: str
    text: str
    urgency: Urgency
    created_at: datetime
    escalation_deadline: datetime | None = None
    escalated: bool = False
    escalated_at: datetime | None = None
    escalation_level: EscalationLevel = EscalationLevel.NONE
    escalation_reason: str | None = None
    has_response: bool = False
    resolved: bool = False
    resolved_at: datetime | None = None

    @property
    def current_level(self) -> EscalationLevel:
        return self.escalation_level if self.escalated else EscalationLevel.NONE

    def is_overdue(self, now: datetime) -> bool:
        return (
            self.escalation_deadline is not None
            and self.escalation_deadline <= now
            and not self.escalated
            and not self.resolved
            and not self.has_response
        )


@dataclass(frozen=True, slots=True)
class Escalation:
    escalation_id: str
    message_id: str
    plate: str
    escalated_by: str
    level: EscalationLevel
    urgency: Urgency
    escalated_at: datetime
    reason: str | None = None
    authority_type: AuthorityType | None = None
    authority_contacted: bool = False
    authority_contacted_at: datetime | None = None
    authority_reference: str | None = None
    resolved: bool = False
    resolved_at: datetime | None = None
    outcome: EscalationOutcome | None = None
    outcome_notes: str | None = None


@dataclass(frozen=True, slots=True)
class OwnerReputation:
    owner_id: str
    escalations_received: int = 0
    escalations_resolved: int = 0


@dataclass(frozen=True)
class EscalationPlan:
    """Writes to apply atomically for one message.

    ``escalations`` are inserted or replaced by id; ``counter`` is incremented
    on the plate owner (if the plate is claimed). The repository fills in
    ``owner_id``.
    """

    message: Message
    escalations: tuple[Escalation, ...] = ()
    counter: ReputationCounter | None = None
    owner_id: str | None = None


EscalationPlanner = Callable[[Message, Sequence[Escalation]], "EscalationPlan | None"]


class EscalationRepository(Protocol):
    """Storage contract for messages' escalation state."""

    async def add_message(self, message: Message) -> Message:
        ...

    async def get_message(self, message_id: str) -> Message | None:
        ...

    async def apply(self, message_id: str, planner: EscalationPlanner) -> EscalationPlan | None:
        """Lock the message, call ``planner`` with it and its escalations and
        persist the returned plan in one unit. Raises NotFoundError when the
        message is missing; returns None when the planner declines."""
        ...

    async def list_overdue(self, now: datetime, limit: int) -> Sequence[Message]:
        ...

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        ...

    async def list_escalations(self, message_id: str) -> Sequence[Escalation]:
        ...

    async def list_pending(self, limit: int) -> Sequence[Escalation]:
        ...

    async def plate_owner(self, plate: str) -> str | None:
        ...

    async def owner_reputation(self, owner_id: str) -> OwnerReputation:
        ...


@dataclass(frozen=True)
class EscalationResult:
    message: Message
    escalation: Escalation


@dataclass(frozen=True)
class ResolutionResult:
    message: Message
    escalation: Escalation
    owner_credited: bool


@dataclass(frozen=True)
class SweepReport:
    scanned: int
    escalated: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    duration_seconds: float = 0.0

    @property
    def escalated_count(self) -> int:
        return len(self.escalated)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class EscalationDeadlines:
    urgent: timedelta = timedelta(minutes=15)
    emergency: timedelta = timedelta(minutes=5)

    def for_urgency(self, urgency: Urgency, created_at: datetime) -> datetime | None:
        if urgency is Urgency.URGENT:
            return created_at + self.urgent
        if urgency is Urgency.EMERGENCY:
            return created_at + self.emergency
        return None


def parse_enum(enum_type, value, *, field_name: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"invalid_{field_name}") from None


class EscalationService:
    """Sole writer of message escalation fields, escalation records and owner reputation."""

    def __init__(
        self,
        repository: EscalationRepository,
        *,
        dispatcher: NotificationDispatcher | None = None,
        ledger: TrustLedger | None = None,
        staff_ids: Collection[str] = (),
        deadlines: EscalationDeadlines | None = None,
        sweep_batch_size: int = 100,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._repo = repository
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._staff_ids = frozenset(staff_ids)
        self.deadlines = deadlines or EscalationDeadlines()
        self.sweep_batch_size = max(1, sweep_batch_size)
        self._timeout = timeout_seconds
        self._clock = clock
        self._new_id = id_factory

    @property
    def repository(self) -> EscalationRepository:
        return self._repo

    async def create_message(
        self,
        *,
        plate: str,
        sender_id: str,
        text: str,
        urgency: Urgency | str = Urgency.NORMAL,
    ) -> Message:
        """Persist a new message with its escalation deadline stamped."""

        level = parse_enum(Urgency, urgency, field_name="urgency")
        now = self._clock()
        message = Message(
            message_id=self._new_id(),
            plate=normalize_plate(plate),
            sender_id=sender_id,
            text=text,
            urgency=level,
            created_at=now,
            escalation_deadline=self.deadlines.for_urgency(level, now),
        )
        return await self._bounded(self._repo.add_message(message))

    async def get_message(self, message_id: str) -> Message:
        message = await self._bounded(self._repo.get_message(message_id))
        if message is None:
            raise NotFoundError("message_not_found")
        return message

    async def escalate(
        self,
        message_id: str,
        *,
        escalated_by: str,
        reason: str | None = None,
        authority_type: AuthorityType | str | None = None,
    ) -> EscalationResult:
        await self._ensure_not_blocked(escalated_by)
        authority = (
            parse_enum(AuthorityType, authority_type, field_name="authority_type")
            if authority_type is not None
            else AuthorityType.PARKING_ENFORCEMENT
        )
        now = self._clock()

        def planner(message: Message, existing: Sequence[Escalation]) -> EscalationPlan:  # noqa: ARG001
            level = next_level(message.current_level)
            if message.urgency not in ESCALATABLE_URGENCIES:
                raise NotEligibleForEscalation()
            if message.resolved:
                raise ConflictError("message_already_resolved")
            return self._plan_transition(
                message,
                level,
                escalated_by=escalated_by,
                reason=reason or DEFAULT_ESCALATION_REASON,
                authority_type=authority,
                now=now,
            )

        plan = await self._bounded(self._repo.apply(message_id, planner))
        assert plan is not None
        escalation = plan.escalations[0]
        metrics.ESCALATIONS_TOTAL.labels(level=escalation.level.value, source="manual").inc()
        logger.info(
            "message escalated",
            extra={"message_id": message_id, "level": escalation.level.value, "escalated_by": escalated_by},
        )
        self._notify(plan.owner_id, "escalation.level_reached", plan.message, escalation)
        return EscalationResult(message=plan.message, escalation=escalation)

    async def run_sweep(self, *, now: datetime | None = None, limit: int | None = None) -> SweepReport:
        """Move overdue, unattended messages to ``reminder_sent``.

        Safe to run concurrently with manual escalation: the overdue predicate
        is re-checked under the message lock, so a message is never
        transitioned twice. Work is capped at the batch size; the rest is picked
        up on the next tick.
        """

        started = time.perf_counter()
        now = now or self._clock()
        batch = max(1, min(limit or self.sweep_batch_size, self.sweep_batch_size))
        candidates = await self._bounded(self._repo.list_overdue(now, batch))
        escalated: list[str] = []
        skipped: list[str] = []
        failed: list[str] = []

        def planner(message: Message, existing: Sequence[Escalation]) -> EscalationPlan | None:  # noqa: ARG001
            if not message.is_overdue(now) or message.urgency not in ESCALATABLE_URGENCIES:
                return None
            return self._plan_transition(
                message,
                EscalationLevel.REMINDER_SENT,
                escalated_by=AUTO_ESCALATION_ACTOR,
                reason=AUTO_ESCALATION_REASON,
                authority_type=None,
                now=now,
            )

        for candidate in candidates:
            try:
                plan = await self._bounded(self._repo.apply(candidate.message_id, planner))
            except Exception:  # noqa: BLE001 - reported in the sweep result; message stays eligible
                logger.exception("auto-escalation failed", extra={"message_id": candidate.message_id})
                failed.append(candidate.message_id)
                continue
            if plan is None:
                skipped.append(candidate.message_id)
                continue
            escalated.append(candidate.message_id)
            metrics.ESCALATIONS_TOTAL.labels(level=EscalationLevel.REMINDER_SENT.value, source="sweep").inc()
            self._notify(plan.owner_id, "escalation.auto_escalated", plan.message, plan.escalations[0])

        duration = time.perf_counter() - started
        metrics.ESCALATION_SWEEP_BATCH.observe(len(escalated))
        metrics.ESCALATION_SWEEP_DURATION.observe(duration)
        if escalated or failed:
            logger.info(
                "auto-escalation sweep finished",
                extra={"escalated": len(escalated), "failed": len(failed), "scanned": len(candidates)},
            )
        return SweepReport(
            scanned=len(candidates),
            escalated=tuple(escalated),
            skipped=tuple(skipped),
            failed=tuple(failed),
            duration_seconds=duration,
        )

    async def resolve(
        self,
        escalation_id: str,
        outcome: EscalationOutcome | str,
        *,
        actor_id: str,
        notes: str | None = None,
        authority_reference: str | None = None,
    ) -> ResolutionResult:
        result_outcome: EscalationOutcome = parse_enum(EscalationOutcome, outcome, field_name="outcome")
        target = await self._bounded(self._repo.get_escalation(escalation_id))
        if target is None:
            raise NotFoundError("escalation_not_found")
        message = await self.get_message(target.message_id)
        owner_id = await self._bounded(self._repo.plate_owner(target.plate))
        allowed = {owner_id, target.escalated_by, message.sender_id} | self._staff_ids
        if actor_id not in allowed:
            raise AuthorizationError("only the plate owner, the sender or safety staff can resolve an escalation")
        now = self._clock()

        def planner(message: Message, existing: Sequence[Escalation]) -> EscalationPlan:
            current = next((item for item in existing if item.escalation_id == escalation_id), None)
            if current is None:
                raise NotFoundError("escalation_not_found")
            if current.resolved:
                raise ConflictError("escalation_already_resolved")
            closed = tuple(
                replace(
                    item,
                    resolved=True,
                    resolved_at=now,
                    outcome=result_outcome,
                    outcome_notes=notes,
                    authority_reference=authority_reference if item.escalation_id == escalation_id else item.authority_reference,
                )
                for item in existing
                if not item.resolved
            )
            return EscalationPlan(
                message=replace(message, resolved=True, resolved_at=message.resolved_at or now),
                escalations=closed,
                counter=ReputationCounter.ESCALATIONS_RESOLVED if result_outcome in OWNER_ACTION_OUTCOMES else None,
            )

        plan = await self._bounded(self._repo.apply(target.message_id, planner))
        assert plan is not None
        resolved = next(item for item in plan.escalations if item.escalation_id == escalation_id)
        metrics.ESCALATIONS_RESOLVED.labels(outcome=result_outcome.value).inc()
        logger.info(
            "escalation resolved",
            extra={"escalation_id": escalation_id, "outcome": result_outcome.value, "actor_id": actor_id},
        )
        self._notify(resolved.escalated_by, "escalation.resolved", plan.message, resolved)
        return ResolutionResult(
            message=plan.message,
            escalation=resolved,
            owner_credited=plan.counter is ReputationCounter.ESCALATIONS_RESOLVED and plan.owner_id is not None,
        )

    async def record_owner_response(self, message_id: str, *, owner_id: str) -> Message:
        """The plate owner answered: close the message and any open escalations."""

        await self._ensure_not_blocked(owner_id)
        message = await self.get_message(message_id)
        plate_owner = await self._bounded(self._repo.plate_owner(message.plate))
        if plate_owner is None or plate_owner != owner_id:
            raise AuthorizationError("only the plate owner can respond to this message")
        now = self._clock()

        def planner(current: Message, existing: Sequence[Escalation]) -> EscalationPlan:
            if current.has_response:
                raise ConflictError("message_already_answered")
            closed = tuple(
                replace(
                    item,
                    resolved=True,
                    resolved_at=now,
                    outcome=EscalationOutcome.OWNER_RESPONDED,
                    outcome_notes="Owner responded",
                )
                for item in existing
                if not item.resolved
            )
            return EscalationPlan(
                message=replace(current, has_response=True, resolved=True, resolved_at=current.resolved_at or now),
                escalations=closed,
                counter=ReputationCounter.ESCALATIONS_RESOLVED if current.escalated else None,
            )

        plan = await self._bounded(self._repo.apply(message_id, planner))
        assert plan is not None
        if plan.escalations:
            metrics.ESCALATIONS_RESOLVED.labels(outcome=EscalationOutcome.OWNER_RESPONDED.value).inc()
        self._notify(plan.message.sender_id, "message.owner_responded", plan.message, None)
        return plan.message

    async def pending(self, limit: int = 50) -> Sequence[Escalation]:
        return await self._bounded(self._repo.list_pending(max(1, limit)))

    async def escalations_for(self, message_id: str) -> Sequence[Escalation]:
        return await self._bounded(self._repo.list_escalations(message_id))

    async def owner_reputation(self, owner_id: str) -> OwnerReputation:
        return await self._bounded(self._repo.owner_reputation(owner_id))

    async def _ensure_not_blocked(self, user_id: str) -> None:
        if self._ledger is not None:
            await self._ledger.ensure_not_blocked(user_id)

    def _plan_transition(
        self,
        message: Message,
        level: EscalationLevel,
        *,
        escalated_by: str,
        reason: str,
        authority_type: AuthorityType | None,
        now: datetime,
    ) -> EscalationPlan:
        contacted = level in AUTHORITY_LEVELS
        escalation = Escalation(
            escalation_id=self._new_id(),
            message_id=message.message_id,
            plate=message.plate,
            escalated_by=escalated_by,
            level=level,
            urgency=message.urgency,
            escalated_at=now,
            reason=reason,
            authority_type=authority_type,
            authority_contacted=contacted,
            authority_contacted_at=now if contacted else None,
        )
        updated = replace(
            message,
            escalated=True,
            escalated_at=now,
            escalation_level=level,
            escalation_reason=reason,
        )
        return EscalationPlan(
            message=updated,
            escalations=(escalation,),
            counter=ReputationCounter.ESCALATIONS_RECEIVED,
        )

    def _notify(self, user_id: str | None, event_type: str, message: Message, escalation: Escalation | None) -> None:
        if self._dispatcher is None or not user_id:
            return
        event: dict[str, object] = {
            "type": event_type,
            "message_id": message.message_id,
            "plate": message.plate,
            "urgency": message.urgency.value,
        }
        if escalation is not None:
            event["escalation_id"] = escalation.escalation_id
            event["level"] = escalation.level.value
            if escalation.outcome is not None:
                event["outcome"] = escalation.outcome.value
        self._dispatcher.dispatch(user_id, event)

    async def _bounded(self, awaitable):
        return await bounded(awaitable, self._timeout, dependency="escalation_store")


class InMemoryEscalationRepository(EscalationRepository):
    """Reference repository used in tests and developer environments."""

    def __init__(self, directory: PlateDirectory | None = None) -> None:
        self.directory = directory or InMemoryPlateDirectory()
        self.messages: dict[str, Message] = {}
        self.escalations: dict[str, Escalation] = {}
        self.reputation: dict[str, OwnerReputation] = {}

    async def add_message(self, message: Message) -> Message:
        if message.message_id in self.messages:
            raise ConflictError("message_exists")
        self.messages[message.message_id] = message
        return message

    async def get_message(self, message_id: str) -> Message | None:
        return self.messages.get(message_id)

    async def apply(self, message_id: str, planner: EscalationPlanner) -> EscalationPlan | None:
        message = self.messages.get(message_id)
        if message is None:
            raise NotFoundError("message_not_found")
        owner_id = await self.plate_owner(message.plate)
        # Re-read after the await; planning and writes below do not yield.
        message = self.messages[message_id]
        existing = [item for item in self.escalations.values() if item.message_id == message_id]
        existing.sort(key=lambda item: item.escalated_at)
        plan = planner(message, existing)
        if plan is None:
            return None
        self.messages[message_id] = plan.message
        for escalation in plan.escalations:
            self.escalations[escalation.escalation_id] = escalation
        if plan.counter is not None and owner_id:
            current = self.reputation.get(owner_id) or OwnerReputation(owner_id=owner_id)
            field_name = plan.counter.value
            self.reputation[owner_id] = replace(current, **{field_name: getattr(current, field_name) + 1})
        return replace(plan, owner_id=owner_id)

    async def list_overdue(self, now: datetime, limit: int) -> Sequence[Message]:
        overdue = [message for message in self.messages.values() if message.is_overdue(now)]
        overdue.sort(key=lambda message: message.escalation_deadline or now)
        return overdue[:limit]

    async def get_escalation(self, escalation_id: str) -> Escalation | None:
        return self.escalations.get(escalation_id)

    async def list_escalations(self, message_id: str) -> Sequence[Escalation]:
        items = [item for item in self.escalations.values() if item.message_id == message_id]
        return sorted(items, key=lambda item: item.escalated_at)

    async def list_pending(self, limit: int) -> Sequence[Escalation]:
        items = [item for item in self.escalations.values() if not item.resolved and item.authority_contacted]
        items.sort(key=lambda item: item.escalated_at, reverse=True)
        return items[:limit]

    async def plate_owner(self, plate: str) -> str | None:
        return await self.directory.owner_of(plate)

    async def owner_reputation(self, owner_id: str) -> OwnerReputation:
        return self.reputation.get(owner_id) or OwnerReputation(owner_id=owner_id)
