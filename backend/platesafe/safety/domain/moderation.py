"""Content moderation verdicts and the classifier interface."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Protocol

from platesafe.obs import metrics
from platesafe.safety.domain.errors import bounded

logger = logging.getLogger(__name__)


class ModerationAction(str, Enum):
    ALLOW = "allow"
    FLAG = "flag"
    BLOCK = "block"


class SeverityTier(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    ERROR = "error"


HIGH_SEVERITY_CATEGORIES = frozenset(
    {
        "hate",
        "hate/threatening",
        "self-harm",
        "self-harm/intent",
        "sexual/minors",
        "violence/graphic",
    }
)
MEDIUM_SEVERITY_CATEGORIES = frozenset(
    {
        "harassment",
        "harassment/threatening",
        "violence",
        "sexual",
    }
)


@dataclass(frozen=True)
class ModerationVerdict:
    flagged: bool
    severity: SeverityTier
    action: ModerationAction
    categories: Mapping[str, bool] = field(default_factory=dict)

    @property
    def flagged_categories(self) -> tuple[str, ...]:
        return tuple(sorted(name for name, hit in self.categories.items() if hit))

    @property
    def reason(self) -> str | None:
        if not self.flagged:
            return None
        return f"Content flagged for: {', '.join(self.flagged_categories)}"


CLEAN_VERDICT = ModerationVerdict(flagged=False, severity=SeverityTier.NONE, action=ModerationAction.ALLOW)


def verdict_from_categories(flagged: bool, categories: Mapping[str, bool]) -> ModerationVerdict:
    """Map classifier categories to a severity tier and recommended action."""

    if not flagged:
        return ModerationVerdict(flagged=False, severity=SeverityTier.NONE, action=ModerationAction.ALLOW, categories=categories)
    hits = {name for name, hit in categories.items() if hit}
    if hits & HIGH_SEVERITY_CATEGORIES:
        severity, action = SeverityTier.HIGH, ModerationAction.BLOCK
    elif hits & MEDIUM_SEVERITY_CATEGORIES:
        severity, action = SeverityTier.MEDIUM, ModerationAction.FLAG
    else:
        severity, action = SeverityTier.LOW, ModerationAction.ALLOW
    return ModerationVerdict(flagged=True, severity=severity, action=action, categories=categories)


class ContentClassifier(Protocol):
    """Third-party content classifier interface for dependency injection."""

    async def classify(self, text: str) -> ModerationVerdict:
        ...


class AllowAllClassifier(ContentClassifier):
    """Default stub used when no classifier is configured."""

    async def classify(self, text: str) -> ModerationVerdict:  # noqa: ARG002 - interface parity
        return CLEAN_VERDICT


class ContentModerator:
    """Runs the classifier within a bound; failures allow the content and log."""

    def __init__(self, classifier: ContentClassifier, *, timeout_seconds: float | None = None) -> None:
        self._classifier = classifier
        self._timeout = timeout_seconds

    async def screen(self, text: str, *, user_id: str | None = None) -> ModerationVerdict:
        try:
            verdict = await bounded(self._classifier.classify(text), self._timeout, dependency="moderation")
        except Exception:  # noqa: BLE001 - classifier outages must not stop messaging
            logger.error("content moderation failed, allowing content", extra={"user_id": user_id}, exc_info=True)
            verdict = ModerationVerdict(flagged=False, severity=SeverityTier.ERROR, action=ModerationAction.ALLOW)
        metrics.MODERATION_VERDICTS.labels(action=verdict.action.value, severity=verdict.severity.value).inc()
        if verdict.flagged:
            logger.info(
                "content moderation verdict",
                extra={
                    "user_id": user_id,
                    "severity": verdict.severity.value,
                    "action": verdict.action.value,
                    "categories": list(verdict.flagged_categories),
                },
            )
        return verdict
