"""Azure OpenAI client shared by the router and the answer pipeline."""

from __future__ import annotations

from openai import AsyncAzureOpenAI

from concierge.config import Settings


def create_client(settings: Settings) -> AsyncAzureOpenAI:
    """Build an async client for ``{endpoint}/openai/deployments/...``.

    SDK retries are disabled: a failed call is reported once and the
    caller decides how to degrade.
    """
    return AsyncAzureOpenAI(
        azure_endpoint=settings.openai_endpoint,
        api_key=settings.openai_api_key or "not-set",
        api_version=settings.openai_api_version,
        timeout=settings.http_timeout,
        max_retries=0,
    )
