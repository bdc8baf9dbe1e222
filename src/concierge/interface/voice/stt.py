"""Continuous speech recognition for the concierge front end.

The recognizer backend is Azure AI Speech
(``pip install azure-cognitiveservices-speech``), imported lazily when a
microphone session is provisioned so that the native library is only
loaded when voice input is actually used.

One recognition session captures one utterance:

    IDLE → LISTENING → RECOGNIZED | NO_MATCH | CANCELED | SESSION_STOPPED → IDLE

A recognized transcript is forwarded to the query sink exactly once;
interim results are never forwarded.  SDK callbacks fire on SDK worker
threads and are marshalled onto the asyncio loop before touching any
shared state.  Events from a session that has already been replaced are
dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, Union

from concierge.config import Settings, get_settings
from concierge.errors import RecognizerNotReady
from concierge.store import ConversationStore

logger = logging.getLogger(__name__)


class RecognitionState(str, Enum):
    """Lifecycle of a recognition session."""

    IDLE = "idle"
    LISTENING = "listening"
    RECOGNIZED = "recognized"
    NO_MATCH = "no_match"
    CANCELED = "canceled"
    SESSION_STOPPED = "session_stopped"


@dataclass(frozen=True)
class RecognitionEvent:
    """A terminal event reported by the recognizer backend."""

    kind: RecognitionState
    text: str = ""
    detail: str = ""
    generation: Optional[int] = None


EventSink = Callable[[RecognitionEvent], None]
QuerySink = Callable[[str], Union[Awaitable[object], object]]


class Recognizer(Protocol):
    """Backend capture session.  ``start``/``stop`` must not block."""

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Azure AI Speech backend
# ---------------------------------------------------------------------------


class AzureRecognizer:
    """Continuous recognizer on the default microphone.

    Parameters
    ----------
    settings : Settings
        Supplies the speech key/region and candidate languages.
    on_event : callable
        Receives :class:`RecognitionEvent` objects on SDK threads.
    """

    def __init__(self, settings: Settings, on_event: EventSink) -> None:
        import azure.cognitiveservices.speech as speechsdk  # type: ignore[import-untyped]

        self._sdk = speechsdk
        self._on_event = on_event

        speech_config = speechsdk.SpeechConfig(
            subscription=settings.speech_key, region=settings.speech_region
        )
        speech_config.set_property(
            speechsdk.PropertyId.SpeechServiceConnection_LanguageIdMode, "Continuous"
        )
        auto_detect = speechsdk.languageconfig.AutoDetectSourceLanguageConfig(
            languages=list(settings.recognition_languages)
        )
        audio_config = speechsdk.audio.AudioConfig(use_default_microphone=True)
        self._recognizer = speechsdk.SpeechRecognizer(
            speech_config=speech_config,
            auto_detect_source_language_config=auto_detect,
            audio_config=audio_config,
        )
        self._recognizer.recognized.connect(self._on_recognized)
        self._recognizer.canceled.connect(self._on_canceled)
        self._recognizer.session_stopped.connect(self._on_session_stopped)

    def start(self) -> None:
        self._recognizer.start_continuous_recognition_async()

    def stop(self) -> None:
        self._recognizer.stop_continuous_recognition_async()

    # -- SDK callbacks (SDK thread) -----------------------------------------

    def _on_recognized(self, evt) -> None:  # type: ignore[no-untyped-def]
        reason = evt.result.reason
        if reason == self._sdk.ResultReason.RecognizedSpeech:
            self._on_event(RecognitionEvent(RecognitionState.RECOGNIZED, text=evt.result.text))
        elif reason == self._sdk.ResultReason.NoMatch:
            self._on_event(RecognitionEvent(RecognitionState.NO_MATCH))

    def _on_canceled(self, evt) -> None:  # type: ignore[no-untyped-def]
        details = evt.cancellation_details
        detail = f"reason={details.reason}"
        if details.reason == self._sdk.CancellationReason.Error:
            detail += f", code={details.error_code}, details={details.error_details}"
        self._on_event(RecognitionEvent(RecognitionState.CANCELED, detail=detail))

    def _on_session_stopped(self, evt) -> None:  # type: ignore[no-untyped-def]
        self._on_event(RecognitionEvent(RecognitionState.SESSION_STOPPED))


def _azure_factory(settings: Settings) -> Callable[[EventSink], Recognizer]:
    def build(on_event: EventSink) -> Recognizer:
        return AzureRecognizer(settings, on_event)

    return build


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class SpeechInputController:
    """Owns the single live recognition session and the ``is_listening`` flag.

    Each listening session gets its own recognizer and a generation number.
    Events are stamped with the generation of the session that produced
    them, and events from an older session are dropped, so a late
    ``session_stopped`` from a session this controller already ended cannot
    end the next one.

    Parameters
    ----------
    store : ConversationStore
        Shared state; only ``is_listening`` is written here.
    on_query : callable
        Receives each recognized transcript.  May be a coroutine function,
        in which case it is scheduled on the loop.
    recognizer_factory : callable, optional
        Builds a :class:`Recognizer` given an event sink.  Called once per
        listening session.  Defaults to :class:`AzureRecognizer`.
    """

    def __init__(
        self,
        store: ConversationStore,
        on_query: QuerySink,
        recognizer_factory: Optional[Callable[[EventSink], Recognizer]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self._on_query = on_query
        self._factory = recognizer_factory or _azure_factory(self.settings)
        self._recognizer: Optional[Recognizer] = None
        self._generation = 0
        self._used = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = RecognitionState.IDLE
        self.last_outcome: Optional[RecognitionState] = None
        self._pending: set[asyncio.Future] = set()

    @property
    def state(self) -> RecognitionState:
        return self._state

    @property
    def ready(self) -> bool:
        """Whether a microphone session has been provisioned."""
        return self._recognizer is not None

    @property
    def generation(self) -> int:
        """Number of the current (or most recent) recognition session."""
        return self._generation

    # -- lifecycle ----------------------------------------------------------

    def provision(self) -> bool:
        """Acquire the microphone session.  Failures are logged, not raised."""
        if self._recognizer is not None:
            return True
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        try:
            self._recognizer = self._build()
        except Exception:
            logger.exception("Microphone session could not be provisioned")
            self._recognizer = None
            return False
        logger.info("Speech recognizer ready")
        return True

    def start(self) -> None:
        """Begin capturing.  A no-op while already listening."""
        if self._recognizer is None:
            raise RecognizerNotReady("No microphone session has been provisioned")
        if self._state is RecognitionState.LISTENING:
            logger.debug("start() ignored, already listening")
            return
        if self._used:
            try:
                self._recognizer = self._build()
            except Exception as exc:
                logger.exception("Microphone session could not be renewed")
                raise RecognizerNotReady("Microphone session could not be renewed") from exc
        self._used = True
        self._recognizer.start()
        self._state = RecognitionState.LISTENING
        self.store.update(is_listening=True)
        logger.info("Listening (session %d)...", self._generation)

    def stop(self) -> None:
        """Stop capturing.  Safe to call any number of times."""
        if self._state is RecognitionState.LISTENING and self._recognizer is not None:
            try:
                self._recognizer.stop()
            except Exception:
                logger.exception("Failed to stop the recognizer")
        self._state = RecognitionState.IDLE
        self.store.update(is_listening=False)

    def close(self) -> None:
        """Stop and release the microphone session."""
        self.stop()
        self._recognizer = None
        self._used = False

    def _build(self) -> Recognizer:
        self._generation += 1
        generation = self._generation

        def on_event(event: RecognitionEvent) -> None:
            self._post_event(replace(event, generation=generation))

        recognizer = self._factory(on_event)
        self._used = False
        return recognizer

    # -- events -------------------------------------------------------------

    def _post_event(self, event: RecognitionEvent) -> None:
        """Entry point for backend callbacks, from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._handle_event(event)
            return
        loop.call_soon_threadsafe(self._handle_event, event)

    def _handle_event(self, event: RecognitionEvent) -> None:
        if event.generation is not None and event.generation != self._generation:
            logger.debug(
                "Ignoring %s from session %d (current %d)",
                event.kind.value, event.generation, self._generation,
            )
            return
        if self._state is not RecognitionState.LISTENING:
            logger.debug("Ignoring %s outside a listening session", event.kind.value)
            return

        if event.kind is RecognitionState.RECOGNIZED and event.text.strip():
            self.last_outcome = RecognitionState.RECOGNIZED
            self.stop()
            logger.info("Recognized: %s", event.text)
            self._forward(event.text.strip())
            return

        if event.kind is RecognitionState.CANCELED:
            logger.warning("Recognition canceled: %s", event.detail or "no details")
        elif event.kind is RecognitionState.SESSION_STOPPED:
            logger.info("Recognition session stopped")
        else:
            logger.info("No match: speech could not be recognized")
            event = RecognitionEvent(RecognitionState.NO_MATCH)
        self.last_outcome = event.kind
        self.stop()

    def _forward(self, text: str) -> None:
        result = self._on_query(text)
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending.add(future)
            future.add_done_callback(self._pending.discard)
