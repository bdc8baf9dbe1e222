"""Talking-avatar media session.

The avatar is rendered remotely by Azure AI Speech and streamed back
over WebRTC.  This module manages the *session state machine*:

    UNINITIALIZED → PROVISIONING → CONNECTING → CONNECTED → CLOSED

Provisioning fetches short-lived ICE relay credentials; connecting
builds an ``aiortc`` peer connection (one ``sendrecv`` video and one
``sendrecv`` audio transceiver plus an event data channel) and lets the
synthesizer negotiate it with the avatar service.  Once connected, the
session follows the conversation store: a new non-empty display text is
spoken, and a stop request interrupts playback.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from enum import Enum
from typing import Any, Callable, Coroutine, Optional, Protocol

import httpx
from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from concierge.config import Settings, get_settings
from concierge.errors import AvatarProvisioningError
from concierge.interface.avatar.speech_text import markdown_to_speech_text
from concierge.models import IceServerConfig
from concierge.store import ConversationState, ConversationStore

logger = logging.getLogger(__name__)


class AvatarState(str, Enum):
    """Lifecycle of the avatar media session."""

    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Relay credentials
# ---------------------------------------------------------------------------


async def fetch_ice_server(
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
) -> IceServerConfig:
    """Fetch ICE relay credentials from the avatar token endpoint.

    Raises
    ------
    AvatarProvisioningError
        On transport failure, a non-200 status, or a malformed body.
    """
    headers = {"Ocp-Apim-Subscription-Key": settings.speech_key}
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.http_timeout) as own_client:
                resp = await own_client.get(settings.relay_token_url, headers=headers)
        else:
            resp = await client.get(settings.relay_token_url, headers=headers)
    except httpx.HTTPError as exc:
        raise AvatarProvisioningError(f"Relay token request failed: {exc}") from exc

    if resp.status_code != 200:
        raise AvatarProvisioningError(
            f"Relay token request returned HTTP {resp.status_code}"
        )

    try:
        data = resp.json()
        return IceServerConfig(
            urls=data["Urls"][0],
            username=data["Username"],
            credential=data["Password"],
        )
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise AvatarProvisioningError(f"Malformed relay token response: {exc}") from exc


# ---------------------------------------------------------------------------
# Synthesizer
# ---------------------------------------------------------------------------


class AvatarSynthesizer(Protocol):
    """Speech synthesizer bound to an avatar peer connection."""

    async def start(self, local_sdp: str, ice_server: IceServerConfig) -> str:
        """Start the avatar for the given offer; return the remote answer SDP."""
        ...

    async def speak(self, text: str) -> bool:
        """Speak ``text``; True when synthesis completed."""
        ...

    async def stop_speaking(self) -> None:
        ...

    async def close(self) -> None:
        ...


class AzureAvatarSynthesizer:
    """Azure AI Speech talking-avatar synthesizer.

    The SDK's blocking ``.get()`` futures run in the default executor so
    the event loop never blocks.
    """

    def __init__(self, settings: Settings) -> None:
        import azure.cognitiveservices.speech as speechsdk  # type: ignore[import-untyped]

        self.settings = settings
        self._sdk = speechsdk
        speech_config = speechsdk.SpeechConfig(
            endpoint=settings.avatar_endpoint, subscription=settings.speech_key
        )
        speech_config.speech_synthesis_voice_name = settings.avatar_voice_name
        self._synthesizer = speechsdk.SpeechSynthesizer(
            speech_config=speech_config, audio_config=None
        )
        self._connection = speechsdk.Connection.from_speech_synthesizer(self._synthesizer)

    def avatar_context(self, local_sdp: str, ice_server: IceServerConfig) -> dict:
        s = self.settings
        client_description = base64.b64encode(
            json.dumps({"type": "offer", "sdp": local_sdp}).encode()
        ).decode()
        return {
            "synthesis": {
                "video": {
                    "protocol": {
                        "name": "WebRTC",
                        "webrtcConfig": {
                            "clientDescription": client_description,
                            "iceServers": [{
                                "urls": [ice_server.urls],
                                "username": ice_server.username,
                                "credential": ice_server.credential,
                            }],
                        },
                    },
                    "format": {
                        "crop": {
                            "topLeft": {"x": s.avatar_crop_left, "y": s.avatar_crop_top},
                            "bottomRight": {"x": s.avatar_crop_right, "y": s.avatar_crop_bottom},
                        },
                    },
                    "talkingAvatar": {
                        "character": s.avatar_character,
                        "style": s.avatar_style,
                        "background": {"color": s.avatar_background_color},
                    },
                }
            }
        }

    async def _wait(self, sdk_future) -> Any:  # type: ignore[no-untyped-def]
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, sdk_future.get)

    async def start(self, local_sdp: str, ice_server: IceServerConfig) -> str:
        context = self.avatar_context(local_sdp, ice_server)
        self._connection.set_message_property("speech.config", "context", json.dumps(context))
        result = await self._wait(self._synthesizer.speak_text_async(""))
        if result.reason == self._sdk.ResultReason.Canceled:
            details = result.cancellation_details
            raise RuntimeError(f"Avatar start canceled: {details.reason} {details.error_details}")
        encoded = result.properties.get_property(
            self._sdk.PropertyId.TalkingAvatarService_WebRTC_SDP
        )
        return json.loads(base64.b64decode(encoded).decode())["sdp"]

    async def speak(self, text: str) -> bool:
        result = await self._wait(self._synthesizer.speak_text_async(text))
        if result.reason == self._sdk.ResultReason.SynthesizingAudioCompleted:
            return True
        if result.reason == self._sdk.ResultReason.Canceled:
            details = result.cancellation_details
            logger.warning("Speech synthesis canceled: %s %s", details.reason, details.error_details)
        return False

    async def stop_speaking(self) -> None:
        await self._wait(
            self._connection.send_message_async("synthesis.control", '{"action":"stop"}')
        )

    async def close(self) -> None:
        self._connection.close()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_peer_connection(ice_server: IceServerConfig) -> RTCPeerConnection:
    return RTCPeerConnection(
        configuration=RTCConfiguration(
            iceServers=[
                RTCIceServer(
                    urls=ice_server.urls,
                    username=ice_server.username,
                    credential=ice_server.credential,
                )
            ]
        )
    )


def create_media_sink(path: str):  # type: ignore[no-untyped-def]
    """Record to ``path`` when given, otherwise discard the media."""
    return MediaRecorder(path) if path else MediaBlackhole()


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class AvatarSession:
    """Peer connection + synthesizer pair kept in step with the store.

    Parameters
    ----------
    store : ConversationStore
        Shared state.  This session writes ``is_avatar_connected`` and
        ``is_avatar_speaking`` and is the only consumer of
        ``stop_avatar_speaking``.
    synthesizer_factory, peer_connection_factory : callable, optional
        Overrides for the Azure synthesizer and the aiortc connection.
    http_client : httpx.AsyncClient, optional
        Client used for the relay-token request.
    """

    def __init__(
        self,
        store: ConversationStore,
        settings: Optional[Settings] = None,
        synthesizer_factory: Optional[Callable[[Settings], AvatarSynthesizer]] = None,
        peer_connection_factory: Optional[Callable[[IceServerConfig], Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        video_sink: Any = None,
        audio_sink: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self._synthesizer_factory = synthesizer_factory or AzureAvatarSynthesizer
        self._peer_connection_factory = peer_connection_factory or create_peer_connection
        self._http_client = http_client
        self._video_sink = video_sink if video_sink is not None else create_media_sink(
            self.settings.avatar_video_sink
        )
        self._audio_sink = audio_sink if audio_sink is not None else create_media_sink(
            self.settings.avatar_audio_sink
        )

        self._state = AvatarState.UNINITIALIZED
        self._pc: Any = None
        self._synthesizer: Optional[AvatarSynthesizer] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._speech_tokens: set[object] = set()
        self._stopping = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> AvatarState:
        return self._state

    @property
    def synthesizer_active(self) -> bool:
        return self._synthesizer is not None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> bool:
        """Provision, connect and start the avatar.  Returns True on success."""
        if self._state not in (AvatarState.UNINITIALIZED, AvatarState.CLOSED):
            logger.warning("Avatar session already %s", self._state.value)
            return False

        self._state = AvatarState.PROVISIONING
        try:
            ice_server = await fetch_ice_server(self.settings, self._http_client)
        except AvatarProvisioningError:
            logger.exception("Avatar initialization failed")
            self._state = AvatarState.CLOSED
            self.store.update(is_avatar_connected=False)
            return False

        self._state = AvatarState.CONNECTING
        synthesizer: Optional[AvatarSynthesizer] = None
        try:
            pc = self._peer_connection_factory(ice_server)
            self._pc = pc
            pc.on("track", self._on_track)
            pc.on("iceconnectionstatechange", self._on_ice_state_change)

            pc.addTransceiver("video", direction="sendrecv")
            pc.addTransceiver("audio", direction="sendrecv")
            channel = pc.createDataChannel("eventChannel")
            channel.on("message", self._on_channel_message)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)

            synthesizer = self._synthesizer_factory(self.settings)
            remote_sdp = await synthesizer.start(pc.localDescription.sdp, ice_server)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=remote_sdp, type="answer"))
        except Exception:
            logger.exception("Failed to start avatar session")
            if synthesizer is not None:
                try:
                    await synthesizer.close()
                except Exception:
                    logger.exception("Failed to close avatar synthesizer")
            await self._release()
            self._state = AvatarState.CLOSED
            self.store.update(is_avatar_connected=False)
            return False

        self._synthesizer = synthesizer
        self._unsubscribe = self.store.subscribe(self._on_store_change)
        logger.info("Avatar started successfully")
        return True

    async def close(self) -> None:
        """Stop speech, release the synthesizer and the peer connection."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        synthesizer, self._synthesizer = self._synthesizer, None
        if synthesizer is not None:
            try:
                await synthesizer.stop_speaking()
            except Exception:
                logger.exception("Failed to stop avatar speech during teardown")
            try:
                await synthesizer.close()
            except Exception:
                logger.exception("Failed to close avatar synthesizer")

        await self._release()
        for task in list(self._tasks):
            task.cancel()
        self._speech_tokens.clear()
        self._state = AvatarState.CLOSED
        self.store.update(is_avatar_connected=False, is_avatar_speaking=False)
        logger.info("WebRTC connection closed")

    async def _release(self) -> None:
        pc, self._pc = self._pc, None
        if pc is not None:
            await pc.close()
        for sink in (self._video_sink, self._audio_sink):
            try:
                await sink.stop()
            except Exception:
                logger.debug("Media sink stop failed", exc_info=True)

    async def __aenter__(self) -> "AvatarSession":
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- peer connection callbacks -------------------------------------------

    def _on_track(self, track: Any) -> None:
        if track.kind == "video":
            sink = self._video_sink
        elif track.kind == "audio":
            sink = self._audio_sink
        else:
            logger.warning("Ignoring unexpected %s track", track.kind)
            return
        self._spawn(self._bind_track(track, sink))

    async def _bind_track(self, track: Any, sink: Any) -> None:
        try:
            sink.addTrack(track)
            await sink.start()
        except Exception:
            logger.exception("Failed to play %s stream", track.kind)
            return
        logger.info("WebRTC %s channel connected", track.kind)
        if track.kind == "video":
            self._state = AvatarState.CONNECTED
            self.store.update(is_avatar_connected=True)

    def _on_ice_state_change(self) -> None:
        if self._pc is None:
            return
        state = self._pc.iceConnectionState
        logger.info("WebRTC status: %s", state)
        if state in ("disconnected", "failed"):
            logger.warning("Avatar service disconnected")

    def _on_channel_message(self, message: Any) -> None:
        try:
            event = json.loads(message).get("event", {})
        except (TypeError, ValueError, AttributeError):
            logger.debug("Avatar data channel message: %r", message)
            return
        offset = event.get("offset") or 0
        suffix = f", offset from session start: {offset / 10000}ms." if offset else ""
        logger.debug("Avatar event received: %s%s", event.get("eventType", "unknown"), suffix)

    # -- store observer ------------------------------------------------------

    def _on_store_change(self, old: ConversationState, new: ConversationState) -> None:
        if new.stop_avatar_speaking and not old.stop_avatar_speaking:
            self._spawn(self.interrupt())
        if new.recognised_text and new.recognised_text != old.recognised_text:
            self._spawn(self.speak(new.recognised_text))

    def _spawn(self, coro: Coroutine) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, dropping avatar work")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- speech --------------------------------------------------------------

    async def speak(self, text: str) -> bool:
        """Speak display text through the avatar.  Returns True if completed."""
        synthesizer = self._synthesizer
        if synthesizer is None:
            logger.debug("No active synthesizer, not speaking")
            return False
        speech_text = markdown_to_speech_text(text)
        if not speech_text:
            return False

        token = object()
        self._speech_tokens.add(token)
        self.store.update(is_avatar_speaking=True)
        completed = False
        try:
            completed = await synthesizer.speak(speech_text)
        except Exception:
            logger.exception("Speech synthesis failed")
        finally:
            # A token removed by interrupt() belongs to speech already
            # acknowledged as stopped.
            if token in self._speech_tokens:
                self._speech_tokens.discard(token)
                if not self._speech_tokens:
                    self.store.update(is_avatar_speaking=False)
        return completed

    async def interrupt(self) -> None:
        """Honor a pending stop-speaking request."""
        if not self.store.state.stop_avatar_speaking or self._stopping:
            return
        synthesizer = self._synthesizer
        interrupted = set(self._speech_tokens)
        self._stopping = True
        try:
            if synthesizer is not None:
                await synthesizer.stop_speaking()
        except Exception:
            logger.exception("Failed to stop avatar speech")
        finally:
            self._stopping = False
            self._speech_tokens -= interrupted
            self.store.acknowledge_stop_speaking(still_speaking=bool(self._speech_tokens))
