"""Answer pipeline: route → compose → complete → sanitize → record."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional, Sequence

from openai import AsyncAzureOpenAI

from concierge.config import Settings, get_settings
from concierge.models import ChatTurn, DataSourceCatalogue
from concierge.rag.client import create_client
from concierge.rag.router import DataSourceRouter
from concierge.rag.sanitize import clean_answer
from concierge.store import ConversationStore

logger = logging.getLogger(__name__)

THINKING_TEXT = "One moment please..."
ERROR_TEXT = "Sorry, I'm having trouble answering right now. Please try again in a moment."
NO_RESPONSE_TEXT = "Sorry, no response was generated."


def format_current_datetime(now: datetime) -> str:
    """Date/time line appended to the system prompt for temporal grounding."""
    return f"Current date and time: {now.strftime('%A, %B %d, %Y %I:%M %p')}"


def _remote_error(response: object) -> Optional[object]:
    """Return the ``error`` payload of a completion response, if any."""
    return getattr(response, "error", None)


class AnswerPipeline:
    """End-to-end query handling: routing → chat completion → store update.

    At most one query is in flight at a time; a query submitted while
    another is outstanding is rejected.  :meth:`cancel` aborts the
    in-flight query: its placeholder is cleared from the display and it
    writes nothing else to the store.
    """

    def __init__(
        self,
        store: ConversationStore,
        catalogue: DataSourceCatalogue,
        router: Optional[DataSourceRouter] = None,
        client: Optional[AsyncAzureOpenAI] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.catalogue = catalogue
        self.deployment = self.settings.chat_deployment
        self._client = client
        self._owns_client = client is None
        self._owns_router = router is None
        self.router = router or DataSourceRouter(
            catalogue.descriptors, client=client, settings=self.settings
        )
        self._clock = clock
        self._inflight: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def llm(self) -> AsyncAzureOpenAI:
        if self._client is None:
            self._client = create_client(self.settings)
        return self._client

    @property
    def busy(self) -> bool:
        return self._inflight is not None

    # ------------------------------------------------------------------
    # Main query flow
    # ------------------------------------------------------------------
    async def handle_query(self, user_query: str) -> bool:
        """Answer one user query.

        Returns True if the query was accepted and ran to completion (or
        was cancelled), False if it was empty or rejected because another
        query is in flight.
        """
        query = user_query.strip()
        if not query:
            return False
        if self._inflight is not None:
            logger.warning("Query rejected, another query is still in flight: %r", query)
            return False

        self._cancel_requested = False
        task = asyncio.ensure_future(self._answer(query))
        self._inflight = task
        try:
            await task
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            logger.info("Query cancelled: %r", query)
            # Clear the placeholder; an empty display text is not spoken.
            if self.store.state.recognised_text == THINKING_TEXT:
                self.store.update(recognised_text="")
        finally:
            self._inflight = None
        return True

    def cancel(self) -> bool:
        """Abort the in-flight query.  Returns True if there was one."""
        task = self._inflight
        if task is None or task.done():
            return False
        self._cancel_requested = True
        task.cancel()
        return True

    async def _answer(self, query: str) -> None:
        # 1. Placeholder while working
        self.store.update(recognised_text=THINKING_TEXT)

        # 2. Snapshot history (immutable tuple)
        snapshot = self.store.history

        # 3. Route
        index = await self.router.select(query, snapshot)
        entry = self.catalogue[index]

        # 4-5. Compose
        messages = self.build_messages(query, snapshot)

        # 6. Complete
        try:
            response = await self.llm.chat.completions.create(
                model=self.deployment,
                messages=messages,
                stream=False,
                extra_body={"data_sources": [entry.data_source.to_payload()]},
            )
        except Exception:
            logger.exception("Chat completion failed")
            self.store.update(recognised_text=ERROR_TEXT)
            return

        # 7. Remote error payload
        error = _remote_error(response)
        if error:
            logger.error("Chat completion returned an error: %s", error)
            self.store.update(recognised_text=ERROR_TEXT)
            return

        # 8. No choices
        choices = getattr(response, "choices", None) or []
        if not choices:
            logger.warning("Chat completion returned no choices")
            self.store.update(recognised_text=NO_RESPONSE_TEXT)
            return

        # 9. Sanitize, display, record
        cleaned = clean_answer(choices[0].message.content or "")
        if not cleaned:
            logger.warning("Chat completion returned an empty answer")
            self.store.update(recognised_text=NO_RESPONSE_TEXT)
            return

        self.store.update(recognised_text=cleaned)
        self.store.append_turns(
            ChatTurn(role="user", content=query),
            ChatTurn(role="assistant", content=cleaned),
        )
        logger.info("Answered from source %d (%s)", index, entry.name)

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------
    def system_prompt(self) -> str:
        return f"{self.settings.system_prompt}\n\n{format_current_datetime(self._clock())}"

    def build_messages(self, query: str, history: Sequence[ChatTurn]) -> list[dict]:
        """System prompt, history oldest→newest, then the new user turn."""
        messages = [{"role": "system", "content": self.system_prompt()}]
        messages.extend(turn.to_message() for turn in history)
        messages.append({"role": "user", "content": query})
        return messages

    async def aclose(self) -> None:
        """Close the HTTP clients this pipeline created."""
        if self._owns_client and self._client is not None:
            await self._client.close()
        if self._owns_router:
            await self.router.aclose()
