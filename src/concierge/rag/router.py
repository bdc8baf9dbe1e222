"""Data-source routing: pick the retrieval source for a query.

A small classification call asks the routing deployment for the index
of the best source.  Routing is best-effort: any failure (transport
error, error status, unparsable or out-of-range answer) falls back to
source 0 so the user still gets an answer.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Sequence

from openai import AsyncAzureOpenAI

from concierge.config import Settings, get_settings
from concierge.models import ChatTurn, DataSourceDescriptor
from concierge.rag.client import create_client

logger = logging.getLogger(__name__)

FALLBACK_INDEX = 0

ROUTER_PROMPT = """\
You route user questions to the knowledge base most likely to answer them.

=== KNOWLEDGE BASES ===
{sources}
=======================

Recent conversation:
{history}

User question: {query}

Reply with only the number of the best knowledge base and nothing else."""

_INT_RE = re.compile(r"-?\d+")


def format_sources(descriptors: Sequence[DataSourceDescriptor]) -> str:
    """Format the catalogue as a numbered list for the routing prompt."""
    lines = []
    for i, d in enumerate(descriptors):
        line = f"{i}: {d.name}"
        if d.description:
            line += f" - {d.description}"
        if d.keywords:
            line += f" (keywords: {', '.join(d.keywords)})"
        lines.append(line)
    return "\n".join(lines)


def format_history(turns: Sequence[ChatTurn]) -> str:
    if not turns:
        return "(none)"
    return "\n".join(f"{t.role}: {t.content}" for t in turns)


def parse_source_index(text: Optional[str], n_sources: int) -> Optional[int]:
    """Return the first integer in ``text`` if it is a valid index, else None."""
    if not text:
        return None
    match = _INT_RE.search(text)
    if match is None:
        return None
    index = int(match.group())
    if 0 <= index < n_sources:
        return index
    return None


class DataSourceRouter:
    """Selects one of N configured retrieval sources for a query.

    Parameters
    ----------
    descriptors : sequence of DataSourceDescriptor
        Routing metadata, in catalogue order.
    client : AsyncAzureOpenAI, optional
        Shared client; created from settings on first use if omitted.
    """

    def __init__(
        self,
        descriptors: Sequence[DataSourceDescriptor],
        client: Optional[AsyncAzureOpenAI] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.descriptors = list(descriptors)
        self.deployment = self.settings.resolved_router_deployment
        self.max_tokens = self.settings.router_max_tokens
        self.history_turns = self.settings.router_history_turns
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> AsyncAzureOpenAI:
        if self._client is None:
            self._client = create_client(self.settings)
        return self._client

    def build_prompt(self, query: str, history: Sequence[ChatTurn] = ()) -> str:
        recent = list(history)[-self.history_turns:] if self.history_turns > 0 else []
        return ROUTER_PROMPT.format(
            sources=format_sources(self.descriptors),
            history=format_history(recent),
            query=query,
        )

    async def select(self, query: str, history: Sequence[ChatTurn] = ()) -> int:
        """Return the index of the source to ground ``query`` in.  Never raises."""
        n = len(self.descriptors)
        if n <= 1:
            return FALLBACK_INDEX

        prompt = self.build_prompt(query, history)
        try:
            response = await self.client.chat.completions.create(
                model=self.deployment,
                messages=[{"role": "user", "content": prompt}],
                temperature=0,
                max_tokens=self.max_tokens,
            )
            choices = getattr(response, "choices", None) or []
            content = choices[0].message.content if choices else None
        except Exception as exc:
            logger.warning("Routing call failed (%s), using source %d", exc, FALLBACK_INDEX)
            return FALLBACK_INDEX

        index = parse_source_index(content, n)
        if index is None:
            logger.warning(
                "Router answered %r, not an index in [0, %d); using source %d",
                content, n, FALLBACK_INDEX,
            )
            return FALLBACK_INDEX

        logger.info("Routed query to source %d (%s)", index, self.descriptors[index].name)
        return index

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()
