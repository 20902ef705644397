from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from platesafe.safety.domain.errors import (
    AccountBlocked,
    AuthorizationError,
    ConflictError,
    DependencyTimeout,
    ErrorKind,
    NotFoundError,
    ValidationError,
)
from platesafe.safety.domain.escalation import (
    AUTO_ESCALATION_ACTOR,
    ESCALATION_LADDER,
    EscalationAtMaximum,
    EscalationDeadlines,
    EscalationLevel,
    EscalationOutcome,
    EscalationService,
    InMemoryEscalationRepository,
    Urgency,
    next_level,
)
from platesafe.safety.domain.notifications import NotificationDispatcher
from platesafe.safety.domain.trust import TrustReason

STAFF = "staff-moderator-1"
OWNER = "owner-1"
SENDER = "sender-1"
PLATE = "KX 4410"


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    async def notify(self, user_id, event) -> None:
        self.events.append((user_id, dict(event)))


class StaleOverdueRepository(InMemoryEscalationRepository):
    """Returns a pre-captured overdue list, as if read just before a manual escalation."""

    def __init__(self, directory) -> None:
        super().__init__(directory)
        self.stale = None

    async def list_overdue(self, now, limit):
        if self.stale is not None:
            return self.stale
        return await super().list_overdue(now, limit)


class FailingApplyRepository(InMemoryEscalationRepository):
    def __init__(self, directory, failing_ids) -> None:
        super().__init__(directory)
        self.failing_ids = set(failing_ids)

    async def apply(self, message_id, planner):
        if message_id in self.failing_ids:
            raise ConnectionError("lost connection to message store")
        return await super().apply(message_id, planner)



class HangingApplyRepository(InMemoryEscalationRepository):
    async def apply(self, message_id, planner):
        await asyncio.sleep(1)
        return await super().apply(message_id, planner)

@pytest.fixture
def owned_directory(directory):
    directory.claim(OWNER, PLATE)
    return directory


@pytest.fixture
def service(container, owned_directory) -> EscalationService:
    return container.escalations


async def urgent_message(service: EscalationService, urgency: str = "urgent", sender: str = SENDER):
    return await service.create_message(plate=PLATE, sender_id=sender, text="Blocking my driveway", urgency=urgency)


def test_ladder_is_ordered_and_capped():
    assert ESCALATION_LADDER[0] is EscalationLevel.NONE
    assert next_level(EscalationLevel.NONE) is EscalationLevel.REMINDER_SENT
    assert next_level(EscalationLevel.AUTHORITY_NOTIFIED) is EscalationLevel.TOWING_REQUESTED
    with pytest.raises(EscalationAtMaximum):
        next_level(EscalationLevel.TOWING_REQUESTED)


def test_deadlines_by_urgency(clock):
    deadlines = EscalationDeadlines()

    assert deadlines.for_urgency(Urgency.URGENT, clock.now) == clock.now + timedelta(minutes=15)
    assert deadlines.for_urgency(Urgency.EMERGENCY, clock.now) == clock.now + timedelta(minutes=5)
    assert deadlines.for_urgency(Urgency.NORMAL, clock.now) is None


@pytest.mark.asyncio
async def test_create_message_stamps_deadline_and_normalises_plate(service, clock):
    message = await service.create_message(plate=" kx 4410 ", sender_id=SENDER, text="hi", urgency="emergency")

    assert message.plate == "KX 4410"
    assert message.escalation_deadline == clock.now + timedelta(minutes=5)
    with pytest.raises(ValidationError):
        await service.create_message(plate=PLATE, sender_id=SENDER, text="hi", urgency="whenever")


@pytest.mark.asyncio
async def test_manual_escalation_walks_the_ladder_then_conflicts(service):
    message = await urgent_message(service)

    first = await service.escalate(message.message_id, escalated_by=SENDER)
    second = await service.escalate(message.message_id, escalated_by=SENDER, reason="Still blocked")
    third = await service.escalate(message.message_id, escalated_by=SENDER, authority_type="towing_company")

    assert [result.escalation.level for result in (first, second, third)] == [
        EscalationLevel.REMINDER_SENT,
        EscalationLevel.AUTHORITY_NOTIFIED,
        EscalationLevel.TOWING_REQUESTED,
    ]
    assert not first.escalation.authority_contacted
    assert second.escalation.authority_contacted
    assert second.escalation.authority_contacted_at is not None
    assert third.message.escalation_level is EscalationLevel.TOWING_REQUESTED
    assert third.message.escalated

    with pytest.raises(ConflictError) as excinfo:
        await service.escalate(message.message_id, escalated_by=SENDER)
    assert "maximum" in excinfo.value.detail

    reputation = await service.owner_reputation(OWNER)
    assert reputation.escalations_received == 3
    assert len(await service.escalations_for(message.message_id)) == 3


@pytest.mark.asyncio
async def test_normal_message_is_not_eligible(service):
    message = await urgent_message(service, urgency="normal")

    with pytest.raises(ValidationError) as excinfo:
        await service.escalate(message.message_id, escalated_by=SENDER)

    assert "not eligible for escalation" in excinfo.value.detail


@pytest.mark.asyncio
async def test_missing_message_is_not_found(service):
    with pytest.raises(NotFoundError):
        await service.escalate("does-not-exist", escalated_by=SENDER)


@pytest.mark.asyncio
async def test_resolved_message_cannot_be_escalated(service):
    message = await urgent_message(service)
    await service.record_owner_response(message.message_id, owner_id=OWNER)

    with pytest.raises(ConflictError):
        await service.escalate(message.message_id, escalated_by=SENDER)


@pytest.mark.asyncio
async def test_sweep_escalates_overdue_messages_once(service, clock):
    overdue = await urgent_message(service)
    emergency = await urgent_message(service, urgency="emergency")
    normal = await urgent_message(service, urgency="normal")
    clock.advance(minutes=15)
    fresh = await service.create_message(plate=PLATE, sender_id=SENDER, text="later", urgency="urgent")

    first = await service.run_sweep()
    second = await service.run_sweep()

    assert set(first.escalated) == {overdue.message_id, emergency.message_id}
    assert second.escalated == ()
    swept = await service.get_message(overdue.message_id)
    assert swept.escalation_level is EscalationLevel.REMINDER_SENT
    history = await service.escalations_for(overdue.message_id)
    assert [item.escalated_by for item in history] == [AUTO_ESCALATION_ACTOR]
    assert not (await service.get_message(normal.message_id)).escalated
    assert not (await service.get_message(fresh.message_id)).escalated


@pytest.mark.asyncio
async def test_sweep_skips_messages_with_owner_response(service, clock):
    message = await urgent_message(service)
    await service.record_owner_response(message.message_id, owner_id=OWNER)
    clock.advance(minutes=30)

    report = await service.run_sweep()

    assert report.scanned == 0
    assert report.escalated == ()


@pytest.mark.asyncio
async def test_sweep_rechecks_under_lock_after_concurrent_manual_escalation(owned_directory, clock):
    repository = StaleOverdueRepository(owned_directory)
    service = EscalationService(repository, clock=clock)
    message = await urgent_message(service)
    clock.advance(minutes=20)
    repository.stale = list(await repository.list_overdue(clock.now, 10))

    await service.escalate(message.message_id, escalated_by=SENDER)
    report = await service.run_sweep()

    assert report.escalated == ()
    assert report.skipped == (message.message_id,)
    assert len(await service.escalations_for(message.message_id)) == 1


@pytest.mark.asyncio
async def test_sweep_reports_failures_and_retries_next_tick(owned_directory, clock):
    repository = FailingApplyRepository(owned_directory, failing_ids=())
    service = EscalationService(repository, clock=clock)
    healthy = await urgent_message(service)
    broken = await urgent_message(service)
    repository.failing_ids.add(broken.message_id)
    clock.advance(minutes=16)

    first = await service.run_sweep()
    repository.failing_ids.clear()
    second = await service.run_sweep()

    assert first.escalated == (healthy.message_id,)
    assert first.failed == (broken.message_id,)
    assert second.escalated == (broken.message_id,)


@pytest.mark.asyncio
async def test_sweep_caps_batch_size(owned_directory, clock):
    service = EscalationService(InMemoryEscalationRepository(owned_directory), sweep_batch_size=2, clock=clock)
    for _ in range(3):
        await urgent_message(service, urgency="emergency")
    clock.advance(minutes=6)

    first = await service.run_sweep()
    second = await service.run_sweep()

    assert first.escalated_count == 2
    assert second.escalated_count == 1


@pytest.mark.asyncio
async def test_owner_resolution_credits_reputation(service):
    message = await urgent_message(service)
    escalated = await service.escalate(message.message_id, escalated_by=SENDER)

    result = await service.resolve(
        escalated.escalation.escalation_id,
        "owner_moved_car",
        actor_id=OWNER,
        notes="Moved within five minutes",
    )

    assert result.owner_credited
    assert result.escalation.resolved
    assert result.escalation.outcome is EscalationOutcome.OWNER_MOVED_CAR
    assert result.message.resolved and result.message.resolved_at is not None
    reputation = await service.owner_reputation(OWNER)
    assert (reputation.escalations_received, reputation.escalations_resolved) == (1, 1)

    with pytest.raises(ConflictError):
        await service.resolve(escalated.escalation.escalation_id, "dismissed", actor_id=OWNER)


@pytest.mark.asyncio
async def test_staff_resolution_with_enforcement_outcome_does_not_credit(service):
    message = await urgent_message(service)
    await service.escalate(message.message_id, escalated_by=SENDER)
    escalated = await service.escalate(message.message_id, escalated_by=SENDER)

    result = await service.resolve(
        escalated.escalation.escalation_id,
        EscalationOutcome.TICKET_ISSUED,
        actor_id=STAFF,
        authority_reference="PE-2291",
    )

    assert not result.owner_credited
    assert result.escalation.authority_reference == "PE-2291"
    assert (await service.owner_reputation(OWNER)).escalations_resolved == 0
    assert all(item.resolved for item in await service.escalations_for(message.message_id))


@pytest.mark.asyncio
async def test_resolution_requires_owner_sender_or_staff(service):
    message = await urgent_message(service)
    escalated = await service.escalate(message.message_id, escalated_by=SENDER)

    with pytest.raises(AuthorizationError):
        await service.resolve(escalated.escalation.escalation_id, "dismissed", actor_id="stranger")
    with pytest.raises(ValidationError):
        await service.resolve(escalated.escalation.escalation_id, "vanished", actor_id=OWNER)
    with pytest.raises(NotFoundError):
        await service.resolve("missing", "dismissed", actor_id=OWNER)

    dismissed = await service.resolve(escalated.escalation.escalation_id, "dismissed", actor_id=SENDER)
    assert dismissed.escalation.outcome is EscalationOutcome.DISMISSED


@pytest.mark.asyncio
async def test_owner_response_closes_open_escalations(service):
    message = await urgent_message(service)
    await service.escalate(message.message_id, escalated_by=SENDER)

    with pytest.raises(AuthorizationError):
        await service.record_owner_response(message.message_id, owner_id="not-the-owner")
    answered = await service.record_owner_response(message.message_id, owner_id=OWNER)

    assert answered.has_response and answered.resolved
    escalations = await service.escalations_for(message.message_id)
    assert [item.outcome for item in escalations] == [EscalationOutcome.OWNER_RESPONDED]
    assert (await service.owner_reputation(OWNER)).escalations_resolved == 1
    with pytest.raises(ConflictError):
        await service.record_owner_response(message.message_id, owner_id=OWNER)


@pytest.mark.asyncio
async def test_pending_lists_unresolved_authority_escalations(service, clock):
    first = await urgent_message(service)
    second = await urgent_message(service)
    await service.escalate(first.message_id, escalated_by=SENDER)
    await service.escalate(first.message_id, escalated_by=SENDER)
    clock.advance(minutes=1)
    await service.escalate(second.message_id, escalated_by=SENDER)
    await service.escalate(second.message_id, escalated_by=SENDER)

    pending = await service.pending()

    assert [item.message_id for item in pending] == [second.message_id, first.message_id]
    assert all(item.level is EscalationLevel.AUTHORITY_NOTIFIED for item in pending)


@pytest.mark.asyncio
async def test_owner_is_notified_after_transition(owned_directory, clock):
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier)
    service = EscalationService(InMemoryEscalationRepository(owned_directory), dispatcher=dispatcher, clock=clock)
    message = await urgent_message(service)

    await service.escalate(message.message_id, escalated_by=SENDER)
    await dispatcher.drain()

    assert notifier.events == [
        (
            OWNER,
            {
                "type": "escalation.level_reached",
                "message_id": message.message_id,
                "plate": PLATE,
                "urgency": "urgent",
                "escalation_id": notifier.events[0][1]["escalation_id"],
                "level": "reminder_sent",
            },
        )
    ]


@pytest.mark.asyncio
async def test_blocked_sender_cannot_escalate(container, service):
    message = await urgent_message(service, sender="sender-blocked-1")
    change = await container.ledger.apply_change("sender-blocked-1", -60, TrustReason.REPORT_RECEIVED)

    with pytest.raises(AccountBlocked) as excinfo:
        await service.escalate(message.message_id, escalated_by="sender-blocked-1")

    assert excinfo.value.detail == change.blocked_reason
    stored = await service.get_message(message.message_id)
    assert not stored.escalated and stored.escalation_level is EscalationLevel.NONE
    assert await service.escalations_for(message.message_id) == []


@pytest.mark.asyncio
async def test_blocked_owner_cannot_respond(container, service):
    message = await urgent_message(service)
    await service.escalate(message.message_id, escalated_by=SENDER)
    change = await container.ledger.apply_change(OWNER, -60, TrustReason.AI_MODERATION)

    with pytest.raises(AccountBlocked) as excinfo:
        await service.record_owner_response(message.message_id, owner_id=OWNER)

    assert excinfo.value.detail == change.blocked_reason
    stored = await service.get_message(message.message_id)
    assert not stored.has_response and not stored.resolved
    assert [item.resolved for item in await service.escalations_for(message.message_id)] == [False]


@pytest.mark.asyncio
async def test_escalation_store_timeout_leaves_message_unchanged(container, owned_directory, clock):
    repository = HangingApplyRepository(owned_directory)
    service = EscalationService(repository, timeout_seconds=0.01, clock=clock)
    message = await urgent_message(service)

    with pytest.raises(DependencyTimeout) as excinfo:
        await service.escalate(message.message_id, escalated_by=SENDER)

    assert excinfo.value.retryable
    assert not repository.messages[message.message_id].escalated
    assert repository.escalations == {}

    container.service.escalations = service
    result = await container.service.escalate_message(message.message_id, escalated_by=SENDER)

    assert not result.ok
    assert result.error is ErrorKind.DEPENDENCY_TIMEOUT
    assert result.retryable and result.status_code == 503
    assert not repository.messages[message.message_id].escalated
