"""HTTP client for an OpenAI-compatible moderation endpoint."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from platesafe.safety.domain.moderation import ContentClassifier, ModerationVerdict, verdict_from_categories


@dataclass
class HttpModerationClassifier(ContentClassifier):
    """Posts text to ``{base_url}/moderations`` and maps the first result."""

    http: httpx.AsyncClient
    base_url: str
    api_key: str
    model: str = "omni-moderation-latest"
    request_timeout: float = 3.0

    async def classify(self, text: str) -> ModerationVerdict:
        response = await self.http.post(
            f"{self.base_url.rstrip('/')}/moderations",
            json={"model": self.model, "input": text},
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.request_timeout,
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        if not results:
            return verdict_from_categories(False, {})
        first = results[0]
        categories = {str(name): bool(hit) for name, hit in (first.get("categories") or {}).items()}
        return verdict_from_categories(bool(first.get("flagged")), categories)
