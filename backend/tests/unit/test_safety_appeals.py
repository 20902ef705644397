from __future__ import annotations

import asyncio

import pytest

from platesafe.safety.domain.appeals import AppealService, AppealStatus, InMemoryAppealRepository
from platesafe.safety.domain.errors import AccountBlocked, ConflictError, NotFoundError, ValidationError
from platesafe.safety.domain.trust import TrustReason

STAFF = "staff-moderator-1"


class RacingAppealRepository(InMemoryAppealRepository):
    """Yields before the conditional close so two reviews can interleave."""

    async def close(self, appeal):
        await asyncio.sleep(0)
        return await super().close(appeal)


async def blocked_user(container, user_id: str = "sender-b", delta: int = -70) -> str:
    await container.ledger.apply_change(user_id, delta, TrustReason.REPORT_RECEIVED)
    return user_id


@pytest.fixture
def appeals(container) -> AppealService:
    return container.appeals


@pytest.mark.asyncio
async def test_only_blocked_users_can_appeal(appeals):
    with pytest.raises(ValidationError) as excinfo:
        await appeals.submit("never-blocked", "please")

    assert excinfo.value.detail == "User is not blocked or does not exist"


@pytest.mark.asyncio
async def test_one_pending_appeal_per_week(container, appeals, clock):
    user_id = await blocked_user(container)
    first = await appeals.submit(user_id, "I was parked legally")

    with pytest.raises(ConflictError):
        await appeals.submit(user_id, "Still waiting")
    clock.advance(days=8)
    second = await appeals.submit(user_id, "Following up")

    assert first.status is AppealStatus.PENDING
    assert [item.appeal_id for item in await appeals.for_user(user_id)] == [second.appeal_id, first.appeal_id]


@pytest.mark.asyncio
async def test_approval_credits_then_unblocks(container, appeals):
    user_id = await blocked_user(container)
    appeal = await appeals.submit(user_id, "Misunderstanding")

    decision = await appeals.approve(appeal.appeal_id, reviewed_by=STAFF, adjustment=15, notes="ok")

    assert decision.unblocked
    assert decision.appeal.status is AppealStatus.APPROVED
    assert decision.appeal.reviewed_by == STAFF
    assert decision.appeal.trust_adjustment == 15
    assert not decision.state.blocked and decision.state.trust_score == 45
    entry = decision.trust_change.history_entry
    assert entry.reason is TrustReason.APPEAL_APPROVED
    assert entry.details == "Appeal approved by admin. ok"
    await container.ledger.ensure_not_blocked(user_id)


@pytest.mark.asyncio
async def test_denial_keeps_block(container, appeals):
    user_id = await blocked_user(container)
    appeal = await appeals.submit(user_id, "Not me")

    decision = await appeals.deny(appeal.appeal_id, reviewed_by=STAFF, notes="evidence is clear")

    assert not decision.unblocked
    assert decision.appeal.status is AppealStatus.DENIED
    assert decision.appeal.review_notes == "evidence is clear"
    assert decision.state.blocked and decision.state.trust_score == 30
    with pytest.raises(AccountBlocked):
        await container.ledger.ensure_not_blocked(user_id)


@pytest.mark.asyncio
async def test_reviewed_appeal_cannot_be_reviewed_again(container, appeals):
    user_id = await blocked_user(container)
    appeal = await appeals.submit(user_id, "Please")
    await appeals.deny(appeal.appeal_id, reviewed_by=STAFF)

    with pytest.raises(ConflictError) as excinfo:
        await appeals.approve(appeal.appeal_id, reviewed_by=STAFF, adjustment=50)

    assert excinfo.value.detail == "Appeal has already been reviewed"
    assert (await container.ledger.get_state(user_id)).blocked
    with pytest.raises(NotFoundError):
        await appeals.deny("missing", reviewed_by=STAFF)


@pytest.mark.asyncio
async def test_concurrent_reviews_credit_once(container, clock):
    appeals = AppealService(RacingAppealRepository(), container.ledger, clock=clock)
    user_id = await blocked_user(container)
    appeal = await appeals.submit(user_id, "Please")

    results = await asyncio.gather(
        appeals.approve(appeal.appeal_id, reviewed_by=STAFF, adjustment=10),
        appeals.approve(appeal.appeal_id, reviewed_by="staff-2", adjustment=10),
        return_exceptions=True,
    )

    assert sum(isinstance(result, ConflictError) for result in results) == 1
    assert (await container.ledger.get_state(user_id)).trust_score == 40
    assert len(await container.ledger.history(user_id)) == 2


@pytest.mark.asyncio
async def test_listing_filters_by_status(container, appeals, clock):
    first = await appeals.submit(await blocked_user(container, "sender-c"), "one")
    clock.advance(minutes=1)
    second = await appeals.submit(await blocked_user(container, "sender-d"), "two")
    await appeals.approve(first.appeal_id, reviewed_by=STAFF)

    pending = await appeals.list_appeals("pending")
    everything = await appeals.list_appeals()

    assert [item.appeal_id for item in pending] == [second.appeal_id]
    assert [item.appeal_id for item in everything] == [second.appeal_id, first.appeal_id]
    with pytest.raises(ValidationError):
        await appeals.list_appeals("closed")
