"""Central registry for Prometheus metrics used by the safety core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

RATE_LIMIT_DECISIONS = Counter(
	"platesafe_rate_limit_decisions_total",
	"Rate limiter decisions",
	["policy", "outcome"],
)

COUNTER_STORE_STATE = Gauge(
	"platesafe_counter_store_connected",
	"Shared counter store state (1=connected, 0=degraded to in-process)",
)

COUNTER_STORE_ERRORS = Counter(
	"platesafe_counter_store_errors_total",
	"Counter store failures by backend",
	["backend"],
)

TRUST_CHANGES = Counter(
	"platesafe_trust_changes_total",
	"Trust score ledger mutations",
	["reason"],
)

TRUST_AUTO_BLOCKS = Counter(
	"platesafe_trust_auto_blocks_total",
	"Accounts blocked because their trust score crossed the floor",
	["reason"],
)

REPORTS_SUBMITTED = Counter(
	"platesafe_reports_submitted_total",
	"Reports accepted against message senders",
	["repeat_offender"],
)

MODERATION_VERDICTS = Counter(
	"platesafe_moderation_verdicts_total",
	"Content moderation verdicts",
	["action", "severity"],
)

ESCALATIONS_TOTAL = Counter(
	"platesafe_escalations_total",
	"Escalation transitions",
	["level", "source"],
)

ESCALATIONS_RESOLVED = Counter(
	"platesafe_escalations_resolved_total",
	"Escalation resolutions",
	["outcome"],
)

ESCALATION_SWEEP_BATCH = Histogram(
	"platesafe_escalation_sweep_batch_size",
	"Messages escalated per sweep tick",
	buckets=(0, 1, 5, 10, 25, 50, 100, 250),
)

ESCALATION_SWEEP_DURATION = Histogram(
	"platesafe_escalation_sweep_duration_seconds",
	"Auto-escalation sweep duration",
	buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0),
)

REPORT_REVIEWS = Counter(
	"platesafe_report_reviews_total",
	"Staff decisions on abuse reports",
	["status", "action"],
)

APPEALS_TOTAL = Counter(
	"platesafe_appeals_total",
	"Block appeals by lifecycle stage",
	["stage", "outcome"],
)

NOTIFICATION_FAILURES = Counter(
	"platesafe_notification_failures_total",
	"Fire-and-forget notifications that failed to deliver",
	["event"],
)

REQUEST_COUNTER = Counter(
	"platesafe_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)


def record_rate_limit(policy: str, allowed: bool, *, skipped: bool = False) -> None:
	outcome = "skipped" if skipped else ("allowed" if allowed else "rejected")
	RATE_LIMIT_DECISIONS.labels(policy=policy, outcome=outcome).inc()

REQUEST_LATENCY = Histogram(
	"platesafe_http_request_duration_seconds",
	"HTTP request latency",
	["route", "method"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)
