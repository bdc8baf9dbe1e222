"""Conversation session: one store, one pipeline, optional mic and avatar.

Wires the components together for a single user session and exposes the
three user controls of the front end: typed queries, the microphone
button and the stop button.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from concierge.config import Settings, get_settings
from concierge.errors import RecognizerNotReady
from concierge.interface.avatar.session import AvatarSession
from concierge.interface.voice.stt import EventSink, Recognizer, SpeechInputController
from concierge.models import DataSourceCatalogue
from concierge.rag.pipeline import AnswerPipeline
from concierge.rag.sources import load_catalogue
from concierge.store import ConversationStore

logger = logging.getLogger(__name__)


class ConversationSession:
    """Owns the store and every component bound to it.

    Parameters
    ----------
    catalogue : DataSourceCatalogue, optional
        Retrieval sources; loaded from settings if omitted.
    pipeline : AnswerPipeline, optional
        Pre-built pipeline (tests inject one with a fake client).
    voice, avatar : bool
        Whether to provision the microphone and the talking avatar.
    recognizer_factory : callable, optional
        Passed through to :class:`SpeechInputController`.
    avatar_session : AvatarSession, optional
        Pre-built avatar session, used instead of the default one.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ConversationStore] = None,
        catalogue: Optional[DataSourceCatalogue] = None,
        pipeline: Optional[AnswerPipeline] = None,
        voice: bool = True,
        avatar: bool = True,
        recognizer_factory: Optional[Callable[[EventSink], Recognizer]] = None,
        avatar_session: Optional[AvatarSession] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store or ConversationStore(history_limit=self.settings.history_limit)
        if pipeline is None:
            catalogue = catalogue or load_catalogue(settings=self.settings)
            pipeline = AnswerPipeline(self.store, catalogue, settings=self.settings)
        self.pipeline = pipeline

        self.speech: Optional[SpeechInputController] = None
        if voice:
            self.speech = SpeechInputController(
                self.store,
                on_query=self.pipeline.handle_query,
                recognizer_factory=recognizer_factory,
                settings=self.settings,
            )

        self.avatar: Optional[AvatarSession] = avatar_session
        if self.avatar is None and avatar:
            self.avatar = AvatarSession(self.store, settings=self.settings)

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Provision the microphone and connect the avatar, if enabled.

        Either may fail; the session still answers typed queries.
        """
        if self.speech is not None and not self.speech.provision():
            logger.warning("Voice input unavailable")
        if self.avatar is not None and not await self.avatar.start():
            logger.warning("Avatar unavailable, answers will be text only")

    async def close(self) -> None:
        self.pipeline.cancel()
        if self.speech is not None:
            self.speech.close()
        if self.avatar is not None:
            await self.avatar.close()
        await self.pipeline.aclose()

    async def __aenter__(self) -> "ConversationSession":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- user controls -------------------------------------------------------

    async def submit_text(self, text: str) -> bool:
        """Typed query path.  Same pipeline as recognized speech."""
        return await self.pipeline.handle_query(text)

    def start_listening(self) -> bool:
        """Microphone button.  Returns False if voice input is unavailable."""
        if self.speech is None:
            logger.warning("Voice input is disabled for this session")
            return False
        try:
            self.speech.start()
        except RecognizerNotReady as exc:
            logger.warning("%s", exc)
            return False
        return True

    def stop(self) -> None:
        """Stop button: end capture, drop the in-flight query, silence the avatar."""
        if self.speech is not None:
            self.speech.stop()
        if self.pipeline.cancel():
            logger.info("In-flight query cancelled")
        self.store.request_stop_speaking()

    def clear_history(self) -> None:
        self.store.clear_history()
