"""In-process stand-ins for the remote services used in tests."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
from openai.types.chat import ChatCompletion

from concierge.config import Settings
from concierge.models import (
    AzureSearchParameters,
    AzureSearchSource,
    DataSourceCatalogue,
    DataSourceEntry,
)


def make_settings(**overrides) -> Settings:
    values = {
        "speech_region": "westus2",
        "speech_key": "speech-key",
        "openai_endpoint": "https://example.openai.azure.com",
        "openai_api_key": "openai-key",
        "chat_deployment": "chat",
        "router_deployment": "router",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_entry(name: str, index_name: str, description: str = "", keywords=()) -> DataSourceEntry:
    return DataSourceEntry(
        name=name,
        description=description,
        keywords=list(keywords),
        data_source=AzureSearchSource(
            parameters=AzureSearchParameters(
                endpoint="https://search.example.net",
                key="search-key",
                index_name=index_name,
            )
        ),
    )


def make_catalogue(*names: str) -> DataSourceCatalogue:
    names = names or ("Parks",)
    return DataSourceCatalogue(
        sources=[make_entry(n, n.lower().replace(" ", "-"), f"All about {n}") for n in names]
    )


def completion(content: str | None = "ok") -> ChatCompletion:
    choices = []
    if content is not None:
        choices.append({
            "index": 0,
            "finish_reason": "stop",
            "message": {"role": "assistant", "content": content},
        })
    return ChatCompletion.model_validate({
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-test",
        "choices": choices,
    })


def error_response(message: str = "content filtered") -> SimpleNamespace:
    return SimpleNamespace(error={"code": "400", "message": message}, choices=[])


# ---------------------------------------------------------------------------
# Chat completions
# ---------------------------------------------------------------------------


class FakeCompletions:
    """Returns queued responses in order; queued exceptions are raised."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []
        self.gate: asyncio.Event | None = None
        self.entered = 0

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        self.entered += 1
        if self.gate is not None:
            await self.gate.wait()
        result = self.responses.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeClient:
    def __init__(self, *responses) -> None:
        self.completions = FakeCompletions(*responses)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Speech recognition
# ---------------------------------------------------------------------------


class FakeRecognizer:
    def __init__(self, on_event) -> None:
        self.on_event = on_event
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        self.starts += 1

    def stop(self) -> None:
        self.stops += 1

    def emit(self, event) -> None:
        self.on_event(event)


class RecognizerFactory:
    """Builds a :class:`FakeRecognizer` per session; ``recognizer`` is the latest."""

    def __init__(self) -> None:
        self.recognizer: FakeRecognizer | None = None
        self.built: list[FakeRecognizer] = []

    def __call__(self, on_event) -> FakeRecognizer:
        self.recognizer = FakeRecognizer(on_event)
        self.built.append(self.recognizer)
        return self.recognizer


# ---------------------------------------------------------------------------
# Avatar media
# ---------------------------------------------------------------------------


class FakeSynthesizer:
    def __init__(self, remote_sdp: str = "remote-sdp") -> None:
        self.remote_sdp = remote_sdp
        self.started_with = None
        self.spoken: list[str] = []
        self.stop_calls = 0
        self.closed = False
        self.gate: asyncio.Event | None = None
        self.holds: dict[str, asyncio.Event] = {}
        self.speaking: list[str] = []
        self.fail_speak = False
        self.fail_start = False

    async def start(self, local_sdp, ice_server):
        if self.fail_start:
            raise RuntimeError("avatar start refused")
        self.started_with = (local_sdp, ice_server)
        return self.remote_sdp

    async def speak(self, text: str) -> bool:
        self.spoken.append(text)
        self.speaking.append(text)
        try:
            gate = self.holds.get(text, self.gate)
            if gate is not None:
                await gate.wait()
        finally:
            self.speaking.remove(text)
        if self.fail_speak:
            raise RuntimeError("synthesis failed")
        return True

    async def stop_speaking(self) -> None:
        self.stop_calls += 1
        if self.gate is not None:
            self.gate.set()
        # Only speech already playing is cut off.
        for text in self.speaking:
            if text in self.holds:
                self.holds[text].set()

    async def close(self) -> None:
        self.closed = True


class FakeChannel:
    def __init__(self, label: str) -> None:
        self.label = label
        self.handlers: dict = {}

    def on(self, event, handler=None):
        self.handlers[event] = handler


class FakePeerConnection:
    def __init__(self, ice_server) -> None:
        self.ice_server = ice_server
        self.handlers: dict = {}
        self.transceivers: list[tuple[str, str]] = []
        self.channels: list[FakeChannel] = []
        self.localDescription = None
        self.remoteDescription = None
        self.iceConnectionState = "new"
        self.closed = False

    def on(self, event, handler=None):
        self.handlers[event] = handler

    def addTransceiver(self, kind, direction="sendrecv"):
        self.transceivers.append((kind, direction))

    def createDataChannel(self, label):
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return SimpleNamespace(sdp="local-sdp", type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def close(self):
        self.closed = True

    def emit(self, event, *args):
        self.handlers[event](*args)


class PeerConnectionFactory:
    def __init__(self) -> None:
        self.pc: FakePeerConnection | None = None

    def __call__(self, ice_server) -> FakePeerConnection:
        self.pc = FakePeerConnection(ice_server)
        return self.pc


class FakeSink:
    def __init__(self, fail: bool = False) -> None:
        self.tracks = []
        self.started = False
        self.stopped = False
        self.fail = fail

    def addTrack(self, track):
        self.tracks.append(track)

    async def start(self):
        if self.fail:
            raise OSError("no output device")
        self.started = True

    async def stop(self):
        self.stopped = True


def fake_track(kind: str) -> SimpleNamespace:
    return SimpleNamespace(kind=kind)


async def settle(rounds: int = 10) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


TOKEN_BODY = {
    "Urls": ["turn:relay.communication.microsoft.com:3478"],
    "Username": "relay-user",
    "Password": "relay-pass",
}


def relay_client(status=200, body=TOKEN_BODY, seen=None) -> httpx.AsyncClient:
    """HTTP client answering the relay-token request from memory."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if isinstance(body, Exception):
            raise body
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
