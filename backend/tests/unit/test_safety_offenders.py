from __future__ import annotations

from datetime import timedelta

import pytest

from platesafe.safety.domain.offenders import RepeatOffenderAnalyzer
from platesafe.safety.domain.trust import InMemoryTrustRepository, TrustLedger, TrustReason


class UnavailableTrustRepository(InMemoryTrustRepository):
    async def list_history(self, user_id, *, limit=None, since=None, reasons=None):
        raise ConnectionError("trust store unreachable")


async def record(ledger: TrustLedger, user_id: str, reason: TrustReason, times: int) -> None:
    for _ in range(times):
        await ledger.apply_change(user_id, -1, reason)


@pytest.fixture
def repository() -> InMemoryTrustRepository:
    return InMemoryTrustRepository()


@pytest.fixture
def ledger(repository, clock) -> TrustLedger:
    return TrustLedger(repository, clock=clock)


@pytest.fixture
def analyzer(repository, clock) -> RepeatOffenderAnalyzer:
    return RepeatOffenderAnalyzer(repository, clock=clock)


@pytest.mark.asyncio
async def test_three_reports_double_the_multiplier(ledger, analyzer):
    await record(ledger, "user-1", TrustReason.REPORT_RECEIVED, 3)

    analysis = await analyzer.analyze("user-1")

    assert analysis.is_repeat_offender
    assert analysis.report_count == 3
    assert analysis.escalation_multiplier == 2


@pytest.mark.asyncio
async def test_two_reports_keep_multiplier_at_one(ledger, analyzer):
    await record(ledger, "user-1", TrustReason.REPORT_RECEIVED, 2)

    analysis = await analyzer.analyze("user-1")

    assert not analysis.is_repeat_offender
    assert analysis.escalation_multiplier == 1
    assert analysis.recent_violations == 2


@pytest.mark.asyncio
async def test_five_moderation_hits_make_a_repeat_offender(ledger, analyzer):
    await record(ledger, "user-1", TrustReason.AI_MODERATION, 4)
    assert not (await analyzer.analyze("user-1")).is_repeat_offender

    await record(ledger, "user-1", TrustReason.AI_MODERATION, 1)
    analysis = await analyzer.analyze("user-1")

    assert analysis.is_repeat_offender
    assert analysis.ai_moderation_count == 5


@pytest.mark.asyncio
async def test_only_violations_inside_the_window_count(ledger, analyzer, clock):
    await record(ledger, "user-1", TrustReason.REPORT_RECEIVED, 3)
    clock.advance(days=31)
    await record(ledger, "user-1", TrustReason.REPORT_RECEIVED, 1)
    await ledger.apply_change("user-1", 5, TrustReason.TIME_BONUS)

    analysis = await analyzer.analyze("user-1")

    assert analysis.report_count == 1
    assert analysis.recent_violations == 1
    assert analysis.escalation_multiplier == 1


@pytest.mark.asyncio
async def test_store_failure_returns_conservative_default(clock):
    analyzer = RepeatOffenderAnalyzer(UnavailableTrustRepository(), window=timedelta(days=30), clock=clock)

    analysis = await analyzer.analyze("user-1")

    assert analysis.degraded
    assert not analysis.is_repeat_offender
    assert analysis.escalation_multiplier == 1
    assert analysis.report_count == analysis.ai_moderation_count == 0
