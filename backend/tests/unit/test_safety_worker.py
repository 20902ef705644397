from __future__ import annotations

import asyncio

import pytest

from platesafe.safety.domain.escalation import EscalationService, InMemoryEscalationRepository, SweepReport
from platesafe.safety.workers.auto_escalation import AutoEscalationWorker


class ScriptedEscalations:
    """Stands in for the service; replays sweep outcomes tick by tick."""

    def __init__(self, outcomes, *, sweep_batch_size: int = 2) -> None:
        self.outcomes = list(outcomes)
        self.sweep_batch_size = sweep_batch_size
        self.calls = 0
        self.exhausted = asyncio.Event()

    async def run_sweep(self) -> SweepReport:
        self.calls += 1
        if not self.outcomes:
            self.exhausted.set()
            return SweepReport(scanned=0)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.mark.asyncio
async def test_process_once_escalates_overdue_messages(directory, clock):
    directory.claim("owner-1", "KX 4410")
    service = EscalationService(InMemoryEscalationRepository(directory), clock=clock)
    message = await service.create_message(plate="KX 4410", sender_id="sender-1", text="blocked in", urgency="urgent")
    clock.advance(minutes=16)
    worker = AutoEscalationWorker(service, poll_interval=0.01)

    report = await worker.process_once()

    assert report.escalated == (message.message_id,)


@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_the_loop(caplog):
    escalations = ScriptedEscalations([RuntimeError("store unavailable"), SweepReport(scanned=1, escalated=("m-1",))])
    worker = AutoEscalationWorker(escalations, poll_interval=0.01)

    task = asyncio.create_task(worker.run_forever())
    await asyncio.wait_for(escalations.exhausted.wait(), timeout=1)
    worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert escalations.calls >= 3
    assert not worker.running
    assert any(record.getMessage() == "auto-escalation tick failed" for record in caplog.records)


@pytest.mark.asyncio
async def test_full_batch_triggers_immediate_follow_up_tick():
    full = SweepReport(scanned=2, escalated=("m-1", "m-2"))
    escalations = ScriptedEscalations([full, full], sweep_batch_size=2)
    worker = AutoEscalationWorker(escalations, poll_interval=30)

    task = asyncio.create_task(worker.run_forever())
    await asyncio.wait_for(escalations.exhausted.wait(), timeout=1)
    worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert escalations.calls == 3


@pytest.mark.asyncio
async def test_stop_interrupts_the_wait():
    escalations = ScriptedEscalations([])
    worker = AutoEscalationWorker(escalations, poll_interval=30)

    task = asyncio.create_task(worker.run_forever())
    await asyncio.wait_for(escalations.exhausted.wait(), timeout=1)
    worker.stop()
    await asyncio.wait_for(task, timeout=1)

    assert escalations.calls == 1
