from __future__ import annotations

import asyncio
import json
import logging

import httpx
import pytest

from platesafe.safety.domain.moderation import (
    AllowAllClassifier,
    ContentModerator,
    ModerationAction,
    SeverityTier,
    verdict_from_categories,
)
from platesafe.safety.infra.moderation_client import HttpModerationClassifier


class HangingClassifier:
    async def classify(self, text: str):
        await asyncio.sleep(1)


def test_high_severity_category_blocks():
    verdict = verdict_from_categories(True, {"violence/graphic": True, "harassment": False})

    assert verdict.severity is SeverityTier.HIGH
    assert verdict.action is ModerationAction.BLOCK
    assert verdict.flagged_categories == ("violence/graphic",)
    assert verdict.reason == "Content flagged for: violence/graphic"


def test_medium_severity_category_flags():
    verdict = verdict_from_categories(True, {"harassment": True})

    assert verdict.severity is SeverityTier.MEDIUM
    assert verdict.action is ModerationAction.FLAG


def test_unknown_flagged_category_is_low_and_allowed():
    verdict = verdict_from_categories(True, {"illicit": True})

    assert verdict.flagged
    assert verdict.severity is SeverityTier.LOW
    assert verdict.action is ModerationAction.ALLOW


def test_clean_result_has_no_reason():
    verdict = verdict_from_categories(False, {"hate": False})

    assert verdict.severity is SeverityTier.NONE
    assert verdict.reason is None


@pytest.mark.asyncio
async def test_http_classifier_posts_text_and_maps_first_result():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"results": [{"flagged": True, "categories": {"hate": True, "violence": False}}]},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        classifier = HttpModerationClassifier(http=http, base_url="https://moderation.test/v1/", api_key="sk-test")
        verdict = await classifier.classify("you people")

    request = seen[0]
    assert str(request.url) == "https://moderation.test/v1/moderations"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content) == {"model": "omni-moderation-latest", "input": "you people"}
    assert verdict.action is ModerationAction.BLOCK


@pytest.mark.asyncio
async def test_http_classifier_empty_results_is_clean():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))) as http:
        classifier = HttpModerationClassifier(http=http, base_url="https://moderation.test/v1", api_key="sk-test")
        verdict = await classifier.classify("hello")

    assert not verdict.flagged


@pytest.mark.asyncio
async def test_provider_error_is_allowed_with_error_severity(caplog):
    transport = httpx.MockTransport(lambda request: httpx.Response(503, json={"error": "overloaded"}))
    async with httpx.AsyncClient(transport=transport) as http:
        moderator = ContentModerator(
            HttpModerationClassifier(http=http, base_url="https://moderation.test/v1", api_key="sk-test")
        )
        with caplog.at_level(logging.ERROR, logger="platesafe.safety.domain.moderation"):
            verdict = await moderator.screen("hello", user_id="user-1")

    assert verdict.action is ModerationAction.ALLOW
    assert verdict.severity is SeverityTier.ERROR
    assert any("allowing content" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_slow_classifier_is_bounded():
    moderator = ContentModerator(HangingClassifier(), timeout_seconds=0.01)

    verdict = await moderator.screen("hello")

    assert verdict.severity is SeverityTier.ERROR


@pytest.mark.asyncio
async def test_allow_all_classifier_is_clean():
    verdict = await ContentModerator(AllowAllClassifier()).screen("anything")

    assert verdict.action is ModerationAction.ALLOW
    assert not verdict.flagged
