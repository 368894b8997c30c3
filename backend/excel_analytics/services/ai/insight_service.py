from __future__ import annotations

import logging
from typing import Any

import httpx

from excel_analytics.config import Settings, split_csv
from excel_analytics.exceptions import NoProviderConfigured
from excel_analytics.schemas.insight import Insight
from excel_analytics.services.ai.prompt_builder import build_insight_prompt
from excel_analytics.services.ai.providers import PROVIDER_CLASSES, InsightProvider

logger = logging.getLogger(__name__)


class InsightService:
    """Chooses an insight provider and runs dataset analysis through it.

    Built once at startup and shared by reference; holds no clients.
    """

    def __init__(self, providers: list[InsightProvider], prompt_sample_rows: int = 20) -> None:
        self.providers = providers
        self.prompt_sample_rows = prompt_sample_rows

    @property
    def is_configured(self) -> bool:
        return any(p.is_configured for p in self.providers)

    def select_provider(self) -> InsightProvider:
        """First provider, in priority order, that has a credential."""
        for provider in self.providers:
            if provider.is_configured:
                return provider
        raise NoProviderConfigured()

    async def generate(
        self,
        column_schema: list[dict[str, Any]],
        statistics: dict[str, Any],
        records: list[dict[str, Any]],
    ) -> Insight:
        provider = self.select_provider()
        prompt = build_insight_prompt(
            column_schema, statistics, records, sample_limit=self.prompt_sample_rows
        )
        return await provider.analyze(prompt)


def build_insight_service(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> InsightService:
    """Instantiate providers in the configured priority order."""
    providers: list[InsightProvider] = []
    for name in split_csv(settings.insight_provider_order):
        provider_cls = PROVIDER_CLASSES.get(name.lower())
        if provider_cls is None:
            logger.warning("Ignoring unknown insight provider %r", name)
            continue
        providers.append(provider_cls.from_settings(settings, transport=transport))

    configured = [p.name for p in providers if p.is_configured]
    if configured:
        logger.info("Insight providers configured: %s", ", ".join(configured))
    else:
        logger.warning("No AI API key configured; uploads will be processed without insights")
    return InsightService(providers, prompt_sample_rows=settings.insight_prompt_sample_rows)
