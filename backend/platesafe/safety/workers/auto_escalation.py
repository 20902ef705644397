"""Worker that escalates unattended urgent messages on a fixed tick."""

from __future__ import annotations

import asyncio
import logging

from platesafe.safety.domain.escalation import EscalationService, SweepReport

_LOG = logging.getLogger(__name__)


class AutoEscalationWorker:
	"""Runs the escalation sweep every ``poll_interval`` seconds.

	A full batch is followed immediately by another tick so backlogs drain
	without waiting for the interval.
	"""

	def __init__(
		self,
		escalations: EscalationService,
		*,
		poll_interval: float = 60.0,
	) -> None:
		self.escalations = escalations
		self.poll_interval = poll_interval
		self._running = False
		self._wakeup = asyncio.Event()

	@property
	def running(self) -> bool:
		return self._running

	async def run_forever(self) -> None:
		self._running = True
		self._wakeup.clear()
		while self._running:
			try:
				report = await self.process_once()
			except Exception:  # noqa: BLE001 - keep the loop alive; next tick retries
				_LOG.exception("auto-escalation tick failed")
				report = None
			if report is not None and report.escalated_count >= self.escalations.sweep_batch_size:
				continue
			try:
				await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
			except asyncio.TimeoutError:
				pass

	def stop(self) -> None:
		self._running = False
		self._wakeup.set()

	async def process_once(self) -> SweepReport:
		return await self.escalations.run_sweep()
