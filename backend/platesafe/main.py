"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from platesafe import __version__
from platesafe.infra import postgres
from platesafe.infra.redis import redis_client
from platesafe.obs import logging as obs_logging
from platesafe.obs import middleware
from platesafe.safety.api.errors import install_error_handlers
from platesafe.safety.api.routes import router as safety_router
from platesafe.safety.container import SafetyContainer, build_container
from platesafe.safety.workers.auto_escalation import AutoEscalationWorker
from platesafe.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def create_app(
	app_settings: Optional[Settings] = None,
	*,
	container: Optional[SafetyContainer] = None,
) -> FastAPI:
	"""Build the API. A prebuilt ``container`` skips all store wiring (used by tests)."""
	cfg = app_settings or (container.settings if container is not None else default_settings)

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		obs_logging.configure_logging()
		pool = None
		safety = container
		if safety is None:
			if cfg.safety_use_postgres:
				pool = await postgres.init_pool()
				await postgres.apply_schema(pool)
			safety = build_container(cfg, redis=redis_client, pool=pool)
		app.state.safety = safety
		await safety.start()

		worker: AutoEscalationWorker | None = None
		worker_task: asyncio.Task | None = None
		if cfg.escalation_sweep_enabled:
			worker = AutoEscalationWorker(safety.escalations, poll_interval=cfg.escalation_sweep_interval_seconds)
			worker_task = asyncio.create_task(worker.run_forever(), name="safety-auto-escalation")
		logger.info(
			"platesafe started",
			extra={"version": __version__, "commit": cfg.git_commit, "sweep_enabled": cfg.escalation_sweep_enabled},
		)
		try:
			yield
		finally:
			if worker is not None and worker_task is not None:
				worker.stop()
				worker_task.cancel()
				await asyncio.gather(worker_task, return_exceptions=True)
			await safety.aclose()
			if pool is not None:
				await postgres.close_pool()

	app = FastAPI(title="PlateSafe Trust & Safety", version=__version__, lifespan=lifespan)
	install_error_handlers(app)
	middleware.install(app)
	app.include_router(safety_router)

	@app.get("/health/live", include_in_schema=False)
	async def live() -> dict[str, str]:
		return {"status": "ok"}

	@app.get("/health/ready", include_in_schema=False)
	async def ready() -> dict[str, str]:
		safety: SafetyContainer = app.state.safety
		return {"status": "ok", "counter_store": safety.counter_store.state.value}

	@app.get("/metrics", include_in_schema=False)
	async def metrics_endpoint() -> Response:
		return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

	return app


app = create_app()
