"""Per-identity rate limiting with guest/registered quotas."""

from __future__ import annotations

import ipaddress
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Protocol

from platesafe.obs import metrics
from platesafe.safety.domain.counters import CounterSnapshot, CounterStore
from platesafe.safety.domain.errors import DependencyTimeout, RateLimitExceeded, ValidationError, bounded
from platesafe.safety.domain.identity import IdentityResolver

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Too many requests. Please try again later."


@dataclass(frozen=True, slots=True)
class RateLimitRequest:
    """The parts of an inbound request the limiter keys and classifies on."""

    subject_id: str | None = None
    client_ip: str | None = None


def normalize_ip(address: str | None) -> str:
    """Canonical textual address; IPv6-mapped IPv4 collapses to plain IPv4."""

    if not address:
        return "unknown"
    candidate = address.strip()
    try:
        parsed = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate.removeprefix("::ffff:")
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        return str(parsed.ipv4_mapped)
    return str(parsed)


def subject_or_ip(request: RateLimitRequest) -> str:
    return request.subject_id or normalize_ip(request.client_ip)


def ip_only(request: RateLimitRequest) -> str:
    return normalize_ip(request.client_ip)


def looks_like_guest(subject_id: str | None) -> bool:
    """Cheap syntactic guess used to split the guest/registered policy pair."""

    return not subject_id or subject_id.startswith("guest") or len(subject_id) <= 12


@dataclass(frozen=True, slots=True)
class Quota:
    limit: int
    bracket: str = "default"
    message: str = DEFAULT_MESSAGE


class QuotaResolver(Protocol):
    """Resolves the quota that applies to a request (may perform I/O)."""

    async def resolve(self, request: RateLimitRequest) -> Quota:
        ...


@dataclass(frozen=True)
class StaticQuota(QuotaResolver):
    quota: Quota

    async def resolve(self, request: RateLimitRequest) -> Quota:  # noqa: ARG002 - interface parity
        return self.quota


class RegistrationQuota(QuotaResolver):
    """Picks the guest or registered quota by asking the identity resolver.

    Lookup failures fall back to the guest quota, the most restrictive bracket.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        *,
        guest: Quota,
        registered: Quota,
        timeout_seconds: float | None = None,
    ) -> None:
        self._identity = identity
        self.guest = guest
        self.registered = registered
        self._timeout = timeout_seconds

    async def resolve(self, request: RateLimitRequest) -> Quota:
        if not request.subject_id:
            return self.guest
        try:
            registered = await bounded(
                self._identity.is_registered(request.subject_id),
                self._timeout,
                dependency="identity",
            )
        except Exception:  # noqa: BLE001 - quota lookup degrades to the strictest bracket
            logger.warning(
                "identity lookup failed, applying guest quota",
                extra={"subject_id": request.subject_id},
                exc_info=True,
            )
            return self.guest
        return self.registered if registered else self.guest


@dataclass(frozen=True)
class RateLimitPolicy:
    """Window, quota, key and skip rules for one limiter."""

    name: str
    window_seconds: int
    quota: QuotaResolver
    key: Callable[[RateLimitRequest], str] = subject_or_ip
    skip: Callable[[RateLimitRequest], bool] | None = None
    fail_open: bool = True


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    policy: str
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    bracket: str = "default"
    message: str | None = None
    skipped: bool = False
    degraded: bool = False

    def raise_for_status(self) -> None:
        if not self.allowed:
            raise RateLimitExceeded(self.message, retry_after=self.retry_after_seconds)

    def headers(self) -> dict[str, str]:
        """IETF draft ``RateLimit-*`` headers plus ``Retry-After`` on rejection."""

        if self.skipped:
            return {}
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
            headers["RateLimit-Reset"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """Admit-or-reject decisions over a pluggable counter store.

    Counters are namespaced ``<namespace>:<policy>:<key>``. A rejected hit is
    not counted.
    """

    def __init__(
        self,
        store: CounterStore,
        policies: Iterable[RateLimitPolicy] = (),
        *,
        namespace: str = "rl",
    ) -> None:
        self._store = store
        self._namespace = namespace
        self._policies: dict[str, RateLimitPolicy] = {}
        for policy in policies:
            self.register(policy)

    @property
    def store(self) -> CounterStore:
        return self._store

    @property
    def policies(self) -> Mapping[str, RateLimitPolicy]:
        return dict(self._policies)

    def register(self, policy: RateLimitPolicy) -> None:
        self._policies[policy.name] = policy

    def policy(self, name: str) -> RateLimitPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise ValidationError(f"unknown_rate_limit_policy:{name}") from None

    def counter_key(self, policy: RateLimitPolicy, request: RateLimitRequest) -> str:
        return f"{self._namespace}:{policy.name}:{policy.key(request)}"

    async def admit(self, policy: RateLimitPolicy | str, request: RateLimitRequest) -> RateLimitDecision:
        if isinstance(policy, str):
            policy = self.policy(policy)
        if policy.skip is not None and policy.skip(request):
            metrics.record_rate_limit(policy.name, True, skipped=True)
            return RateLimitDecision(
                policy=policy.name,
                allowed=True,
                limit=0,
                remaining=0,
                retry_after_seconds=0,
                skipped=True,
            )

        quota = await policy.quota.resolve(request)
        key = self.counter_key(policy, request)
        try:
            current = await self._store.peek(key)
            if current is not None and current.count >= quota.limit:
                decision = self._reject(policy, quota, current)
            else:
                decision = self._evaluate(policy, quota, await self._store.increment(key, policy.window_seconds))
        except DependencyTimeout:
            raise
        except Exception as exc:  # noqa: BLE001 - fallback store failure
            if not policy.fail_open:
                raise DependencyTimeout("counter_store_unavailable") from exc
            logger.warning(
                "counter store failed, admitting request",
                extra={"policy": policy.name},
                exc_info=True,
            )
            decision = RateLimitDecision(
                policy=policy.name,
                allowed=True,
                limit=quota.limit,
                remaining=quota.limit,
                retry_after_seconds=0,
                bracket=quota.bracket,
                degraded=True,
            )
        metrics.record_rate_limit(policy.name, decision.allowed)
        return decision

    async def check(self, policy: RateLimitPolicy | str, request: RateLimitRequest) -> RateLimitDecision:
        """Like :meth:`admit` but raises :class:`RateLimitExceeded` on rejection."""

        decision = await self.admit(policy, request)
        decision.raise_for_status()
        return decision

    def _evaluate(self, policy: RateLimitPolicy, quota: Quota, snapshot: CounterSnapshot) -> RateLimitDecision:
        # A concurrent hit may push the count past the quota between peek and increment.
        if snapshot.count > quota.limit:
            return self._reject(policy, quota, snapshot)
        return RateLimitDecision(
            policy=policy.name,
            allowed=True,
            limit=quota.limit,
            remaining=max(0, quota.limit - snapshot.count),
            retry_after_seconds=0,
            bracket=quota.bracket,
        )

    def _reject(self, policy: RateLimitPolicy, quota: Quota, snapshot: CounterSnapshot) -> RateLimitDecision:
        return RateLimitDecision(
            policy=policy.name,
            allowed=False,
            limit=quota.limit,
            remaining=0,
            retry_after_seconds=_retry_after(snapshot.reset_in, policy.window_seconds),
            bracket=quota.bracket,
            message=quota.message,
        )


def _retry_after(reset_in: float, window_seconds: int) -> int:
    if reset_in <= 0:
        return window_seconds
    return max(1, min(window_seconds, math.ceil(reset_in)))


@dataclass(frozen=True)
class RateLimitConfig:
    guest_messages_per_minute: int = 1
    registered_messages_per_minute: int = 10
    api_requests_per_window: int = 100
    api_window_seconds: int = 900
    plate_claims_per_hour: int = 5
    ocr_requests_per_hour: int = 20
    identity_timeout_seconds: float | None = None
    extra: Mapping[str, RateLimitPolicy] = field(default_factory=dict)


def guest_message_quota(limit: int) -> Quota:
    return Quota(
        limit=limit,
        bracket="guest",
        message=(
            f"Too many requests. Guest senders can send {limit} message(s) per minute. "
            "Please wait a moment before sending another message."
        ),
    )


def registered_message_quota(limit: int) -> Quota:
    return Quota(
        limit=limit,
        bracket="registered",
        message=f"Too many requests. Registered senders can send {limit} messages per minute. Please slow down.",
    )


def default_policies(identity: IdentityResolver, config: RateLimitConfig | None = None) -> list[RateLimitPolicy]:
    """Factory pairing the deployed defaults with their keys and skip rules."""

    cfg = config or RateLimitConfig()
    guest = guest_message_quota(cfg.guest_messages_per_minute)
    registered = registered_message_quota(cfg.registered_messages_per_minute)
    policies = [
        RateLimitPolicy(
            name="message",
            window_seconds=60,
            quota=RegistrationQuota(
                identity,
                guest=guest,
                registered=registered,
                timeout_seconds=cfg.identity_timeout_seconds,
            ),
        ),
        RateLimitPolicy(
            name="guest",
            window_seconds=60,
            quota=StaticQuota(guest),
            skip=lambda request: not looks_like_guest(request.subject_id),
        ),
        RateLimitPolicy(
            name="registered",
            window_seconds=60,
            quota=StaticQuota(registered),
            skip=lambda request: looks_like_guest(request.subject_id),
        ),
        RateLimitPolicy(
            name="api",
            window_seconds=cfg.api_window_seconds,
            quota=StaticQuota(
                Quota(
                    limit=cfg.api_requests_per_window,
                    message="Too many requests from this IP. Please try again later.",
                )
            ),
            key=ip_only,
        ),
        RateLimitPolicy(
            name="plate_claim",
            window_seconds=3600,
            quota=StaticQuota(
                Quota(limit=cfg.plate_claims_per_hour, message="Too many plate claims. Please try again later.")
            ),
        ),
        RateLimitPolicy(
            name="ocr",
            window_seconds=3600,
            quota=StaticQuota(
                Quota(limit=cfg.ocr_requests_per_hour, message="Too many OCR requests. Please try again later.")
            ),
        ),
    ]
    policies.extend(cfg.extra.values())
    return policies
