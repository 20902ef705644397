from __future__ import annotations

import asyncio

import pytest

from platesafe.safety.domain.errors import AccountBlocked, DependencyTimeout, NotFoundError, ValidationError
from platesafe.safety.domain.trust import (
    InMemoryTrustRepository,
    TrustChangeContext,
    TrustLedger,
    TrustReason,
)


class SlowTrustRepository(InMemoryTrustRepository):
    async def mutate(self, user_id, *, default_score, mutation):
        await asyncio.sleep(1)
        return await super().mutate(user_id, default_score=default_score, mutation=mutation)


@pytest.fixture
def repository() -> InMemoryTrustRepository:
    return InMemoryTrustRepository()


@pytest.fixture
def ledger(repository, clock) -> TrustLedger:
    return TrustLedger(repository, clock=clock)


@pytest.mark.asyncio
async def test_first_change_creates_state_and_clamps_to_bounds(ledger):
    raised = await ledger.apply_change("user-1", 25, TrustReason.TIME_BONUS)
    floored = await ledger.apply_change("user-2", -250, TrustReason.ADMIN_ADJUSTMENT)

    assert (raised.previous_score, raised.new_score) == (100, 100)
    assert raised.history_entry.change == 25
    assert (floored.previous_score, floored.new_score) == (100, 0)


@pytest.mark.asyncio
async def test_zero_delta_still_appends_history(ledger, repository):
    await ledger.apply_change("user-1", 0, TrustReason.INITIAL, TrustChangeContext(details="seeded"))

    history = await ledger.history("user-1")
    assert len(history) == 1
    assert history[0].previous_score == history[0].new_score == 100
    assert history[0].details == "seeded"
    assert len(repository.entries) == 1


@pytest.mark.asyncio
async def test_auto_block_below_threshold_stamps_reason(ledger, clock):
    await ledger.apply_change("user-1", -50, TrustReason.REPORT_RECEIVED)
    at_threshold = await ledger.get_state("user-1")
    change = await ledger.apply_change("user-1", -1, TrustReason.AI_MODERATION)

    assert at_threshold.trust_score == 50 and not at_threshold.blocked
    assert change.blocked and change.newly_blocked
    assert change.blocked_reason == "Automatic block: Trust score dropped below 50 due to ai_moderation"
    state = await ledger.get_state("user-1")
    assert state.blocked_at == clock.now


@pytest.mark.asyncio
async def test_block_is_sticky_when_score_recovers(ledger):
    await ledger.apply_change("user-1", -60, TrustReason.ADMIN_ADJUSTMENT)
    recovered = await ledger.apply_change("user-1", 60, TrustReason.TIME_BONUS)
    again = await ledger.apply_change("user-1", -70, TrustReason.REPORT_RECEIVED)

    assert recovered.new_score == 100
    assert recovered.blocked and not recovered.newly_blocked
    assert not again.newly_blocked
    assert again.blocked_reason.endswith("due to admin_adjustment")


@pytest.mark.asyncio
async def test_reason_must_be_a_trust_reason(ledger, repository):
    with pytest.raises(TypeError):
        await ledger.apply_change("user-1", -10, "report_received")  # type: ignore[arg-type]

    assert repository.entries == []


@pytest.mark.asyncio
async def test_history_is_newest_first_with_sequence_tiebreak(ledger, clock):
    await ledger.apply_change("user-1", -1, TrustReason.REPORT_RECEIVED)
    await ledger.apply_change("user-1", -2, TrustReason.REPORT_RECEIVED)
    clock.advance(seconds=1)
    await ledger.apply_change("user-1", -3, TrustReason.AI_MODERATION)

    history = await ledger.history("user-1")
    limited = await ledger.history("user-1", limit=2)

    assert [entry.change for entry in history] == [-3, -2, -1]
    assert [entry.change for entry in limited] == [-3, -2]


@pytest.mark.asyncio
async def test_concurrent_changes_chain_without_lost_updates(ledger):
    await asyncio.gather(*(ledger.apply_change("user-1", -1, TrustReason.REPORT_RECEIVED) for _ in range(10)))

    state = await ledger.get_state("user-1")
    history = list(reversed(await ledger.history("user-1")))

    assert state.trust_score == 90
    assert len(history) == 10
    for earlier, later in zip(history, history[1:]):
        assert later.previous_score == earlier.new_score


@pytest.mark.asyncio
async def test_unknown_user_reads_as_default_without_persisting(ledger):
    state = await ledger.get_state("ghost")

    assert state.trust_score == 100 and not state.blocked
    assert await ledger.find_state("ghost") is None


@pytest.mark.asyncio
async def test_ensure_not_blocked_carries_block_reason(ledger):
    await ledger.ensure_not_blocked("fresh-user")
    await ledger.apply_change("user-1", -60, TrustReason.REPORT_RECEIVED)

    with pytest.raises(AccountBlocked) as excinfo:
        await ledger.ensure_not_blocked("user-1")

    assert excinfo.value.reason == "Automatic block: Trust score dropped below 50 due to report_received"
    assert excinfo.value.status_code == 403


@pytest.mark.asyncio
async def test_unblock_clears_flag_and_keeps_score(ledger):
    await ledger.apply_change("user-1", -60, TrustReason.REPORT_RECEIVED)

    state = await ledger.unblock("user-1")

    assert not state.blocked and state.blocked_reason is None
    assert state.trust_score == 40
    with pytest.raises(NotFoundError):
        await ledger.unblock("nobody")


@pytest.mark.asyncio
async def test_store_timeout_applies_nothing(clock):
    repository = SlowTrustRepository()
    ledger = TrustLedger(repository, timeout_seconds=0.01, clock=clock)

    with pytest.raises(DependencyTimeout):
        await ledger.apply_change("user-1", -10, TrustReason.REPORT_RECEIVED)

    assert repository.states == {}
    assert repository.entries == []


@pytest.mark.asyncio
async def test_staff_adjustment_is_recorded_as_admin_adjustment(ledger):
    state, change = await ledger.admin_update("user-1", performed_by="staff-1", adjustment=-15, reason="chargeback abuse")

    assert state.trust_score == 85 and not state.blocked
    entry = change.history_entry
    assert (entry.reason, entry.change, entry.performed_by) == (TrustReason.ADMIN_ADJUSTMENT, -15, "staff-1")
    assert entry.details == "chargeback abuse"


@pytest.mark.asyncio
async def test_staff_block_keeps_score_and_shows_reason(ledger):
    state, change = await ledger.admin_update("user-1", performed_by="staff-1", blocked=True)

    assert change is None
    assert state.blocked and state.trust_score == 100
    assert state.blocked_reason == "Blocked by admin"
    [entry] = await ledger.history("user-1")
    assert (entry.reason, entry.change) == (TrustReason.ADMIN_ADJUSTMENT, 0)
    with pytest.raises(AccountBlocked) as excinfo:
        await ledger.ensure_not_blocked("user-1")
    assert excinfo.value.detail == "Blocked by admin"


@pytest.mark.asyncio
async def test_staff_unblock_wins_over_same_update_penalty(ledger):
    await ledger.apply_change("user-1", -40, TrustReason.REPORT_RECEIVED)

    state, change = await ledger.admin_update("user-1", performed_by="staff-1", adjustment=-20, blocked=False)

    assert change.newly_blocked
    assert state.trust_score == 40 and not state.blocked


@pytest.mark.asyncio
async def test_staff_update_needs_a_change(ledger):
    with pytest.raises(ValidationError):
        await ledger.admin_update("user-1", performed_by="staff-1")
    with pytest.raises(NotFoundError):
        await ledger.admin_update("ghost", performed_by="staff-1", blocked=False)
