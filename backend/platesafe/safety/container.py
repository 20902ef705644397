"""Explicit wiring of the trust-and-safety services.

``build_container`` is the only place that picks store implementations. The
app factory builds one per process; tests build their own with in-memory
stores and stub collaborators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import asyncpg
import httpx
from redis.asyncio import Redis

from platesafe.infra.redis import RedisProxy
from platesafe.settings import Settings
from platesafe.safety.domain.appeals import AppealRepository, AppealService, InMemoryAppealRepository
from platesafe.safety.domain.counters import FailoverCounterStore, InMemoryCounterStore, StoreState
from platesafe.safety.domain.escalation import (
    EscalationDeadlines,
    EscalationRepository,
    EscalationService,
    InMemoryEscalationRepository,
)
from platesafe.safety.domain.identity import IdentityResolver, InMemoryPlateDirectory, PlateDirectory
from platesafe.safety.domain.moderation import AllowAllClassifier, ContentClassifier, ContentModerator
from platesafe.safety.domain.notifications import NotificationDispatcher, Notifier, NullNotifier
from platesafe.safety.domain.offenders import RepeatOffenderAnalyzer
from platesafe.safety.domain.rate_limit import RateLimitConfig, RateLimiter, default_policies
from platesafe.safety.domain.reports import InMemoryReportRepository, ReportRepository, ReportService
from platesafe.safety.domain.trust import InMemoryTrustRepository, TrustLedger, TrustRepository, utcnow
from platesafe.safety.service import SafetyService

logger = logging.getLogger(__name__)


@dataclass
class SafetyContainer:
    settings: Settings
    counter_store: FailoverCounterStore
    directory: PlateDirectory
    identity: IdentityResolver
    limiter: RateLimiter
    trust_repository: TrustRepository
    ledger: TrustLedger
    analyzer: RepeatOffenderAnalyzer
    moderator: ContentModerator
    dispatcher: NotificationDispatcher
    escalation_repository: EscalationRepository
    escalations: EscalationService
    report_repository: ReportRepository
    reports: ReportService
    appeal_repository: AppealRepository
    appeals: AppealService
    service: SafetyService
    http_client: Optional[httpx.AsyncClient] = field(default=None, repr=False)

    async def start(self) -> StoreState:
        state = await self.counter_store.connect()
        logger.info("safety container started", extra={"counter_store": state.value})
        return state

    async def aclose(self) -> None:
        await self.dispatcher.drain()
        if self.http_client is not None:
            await self.http_client.aclose()


def _build_classifier(settings: Settings) -> tuple[ContentClassifier, Optional[httpx.AsyncClient]]:
    if not settings.moderation_api_base or not settings.moderation_api_key:
        return AllowAllClassifier(), None
    from platesafe.safety.infra.moderation_client import HttpModerationClassifier

    client = httpx.AsyncClient()
    classifier = HttpModerationClassifier(
        http=client,
        base_url=settings.moderation_api_base,
        api_key=settings.moderation_api_key,
        model=settings.moderation_model,
        request_timeout=settings.moderation_timeout_seconds,
    )
    return classifier, client


def build_container(
    settings: Settings,
    *,
    redis: Redis | RedisProxy | None = None,
    pool: asyncpg.Pool | None = None,
    directory: PlateDirectory | None = None,
    classifier: ContentClassifier | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SafetyContainer:
    """Assemble the services for one process.

    PostgreSQL repositories are used when ``pool`` is given; otherwise every
    repository is in-memory. The rate limiter uses Redis when ``redis`` is
    given and ``settings.rate_limit_use_redis`` is set, falling back to
    in-process counters otherwise.
    """

    timeout = settings.store_timeout_seconds
    if pool is not None:
        from platesafe.safety.infra.appeal_repo import PostgresAppealRepository
        from platesafe.safety.infra.escalation_repo import PostgresEscalationRepository
        from platesafe.safety.infra.plate_directory import PostgresPlateDirectory
        from platesafe.safety.infra.report_repo import PostgresReportRepository
        from platesafe.safety.infra.trust_repo import PostgresTrustRepository

        directory = directory or PostgresPlateDirectory(pool)
        trust_repository: TrustRepository = PostgresTrustRepository(pool)
        escalation_repository: EscalationRepository = PostgresEscalationRepository(pool)
        report_repository: ReportRepository = PostgresReportRepository(pool)
        appeal_repository: AppealRepository = PostgresAppealRepository(pool)
    else:
        directory = directory or InMemoryPlateDirectory()
        trust_repository = InMemoryTrustRepository()
        escalation_repository = InMemoryEscalationRepository(directory)
        report_repository = InMemoryReportRepository()
        appeal_repository = InMemoryAppealRepository()

    primary = None
    if redis is not None and settings.rate_limit_use_redis:
        from platesafe.safety.infra.redis_counters import RedisCounterStore

        primary = RedisCounterStore(redis)
    counter_store = FailoverCounterStore(
        primary,
        InMemoryCounterStore(),
        timeout_seconds=settings.counter_store_timeout_seconds,
    )

    identity = IdentityResolver(directory, cache_ttl_seconds=settings.identity_cache_ttl_seconds)
    limiter = RateLimiter(
        counter_store,
        default_policies(
            identity,
            RateLimitConfig(
                guest_messages_per_minute=settings.guest_messages_per_minute,
                registered_messages_per_minute=settings.registered_messages_per_minute,
                api_requests_per_window=settings.api_requests_per_window,
                api_window_seconds=settings.api_window_seconds,
                plate_claims_per_hour=settings.plate_claims_per_hour,
                ocr_requests_per_hour=settings.ocr_requests_per_hour,
                identity_timeout_seconds=timeout,
            ),
        ),
    )
    ledger = TrustLedger(
        trust_repository,
        auto_block_threshold=settings.trust_auto_block_threshold,
        default_score=settings.trust_default_score,
        timeout_seconds=timeout,
        clock=clock,
    )
    analyzer = RepeatOffenderAnalyzer(
        trust_repository,
        window=timedelta(days=settings.repeat_offender_window_days),
        report_threshold=settings.repeat_offender_report_threshold,
        ai_moderation_threshold=settings.repeat_offender_ai_threshold,
        multiplier=settings.repeat_offender_multiplier,
        timeout_seconds=timeout,
        clock=clock,
    )

    http_client = None
    if classifier is None:
        classifier, http_client = _build_classifier(settings)
    moderator = ContentModerator(classifier, timeout_seconds=settings.moderation_timeout_seconds)
    dispatcher = NotificationDispatcher(notifier or NullNotifier())

    escalations = EscalationService(
        escalation_repository,
        dispatcher=dispatcher,
        ledger=ledger,
        staff_ids=settings.safety_staff_ids,
        deadlines=EscalationDeadlines(
            urgent=timedelta(minutes=settings.urgent_deadline_minutes),
            emergency=timedelta(minutes=settings.emergency_deadline_minutes),
        ),
        sweep_batch_size=settings.escalation_sweep_batch_size,
        timeout_seconds=timeout,
        clock=clock,
    )
    reports = ReportService(
        report_repository,
        escalation_repository,
        ledger,
        analyzer,
        moderator,
        report_penalty=settings.trust_report_penalty,
        ai_moderation_penalty=settings.trust_ai_moderation_penalty,
        review_penalty=settings.trust_review_penalty,
        timeout_seconds=timeout,
        clock=clock,
    )
    appeals = AppealService(
        appeal_repository,
        ledger,
        pending_window=timedelta(days=settings.appeal_pending_window_days),
        timeout_seconds=timeout,
        clock=clock,
    )
    service = SafetyService(limiter=limiter, ledger=ledger, reports=reports, escalations=escalations, appeals=appeals)
    return SafetyContainer(
        settings=settings,
        counter_store=counter_store,
        directory=directory,
        identity=identity,
        limiter=limiter,
        trust_repository=trust_repository,
        ledger=ledger,
        analyzer=analyzer,
        moderator=moderator,
        dispatcher=dispatcher,
        escalation_repository=escalation_repository,
        escalations=escalations,
        report_repository=report_repository,
        reports=reports,
        appeal_repository=appeal_repository,
        appeals=appeals,
        service=service,
        http_client=http_client,
    )
