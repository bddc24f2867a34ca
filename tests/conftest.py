"""Shared test fixtures and fakes for the voice agent."""
import asyncio
import time
from typing import Any, Optional

import pytest

from config.settings import LLMConfig, SessionConfig
from models.schemas import TranscriptEvent
from client.playback import AudioPlayer
from voice.generation import GenerationClient
from voice.latency import AggregateLatencyTracker
from voice.recognition import RecognitionBackend
from voice.session import SessionStateMachine, VoiceServices
from voice.synthesis import SynthesisCache, SynthesisClient


# ══════════════════════════════════════════════════════════════
#  FAKE EXTERNAL SERVICES
# ══════════════════════════════════════════════════════════════

class FakeGenerator(GenerationClient):
    """Scripted token stream. Runs through the real GenerationClient.stream wrapper."""

    provider = "fake"

    def __init__(self, tokens=None, fail_at: Optional[int] = None, token_delay: float = 0.0):
        super().__init__(LLMConfig(provider="fake", model="fake-model"))
        self.tokens = list(tokens or [])
        self.fail_at = fail_at
        self.token_delay = token_delay
        self.calls: list[dict[str, Any]] = []
        self.release = asyncio.Event()
        self.release.set()

    def _get_client(self):
        return None

    async def _stream_tokens(self, client, system, messages, model, max_tokens):
        self.calls.append({"system": system, "messages": messages, "model": model,
                           "max_tokens": max_tokens})
        for i, token in enumerate(self.tokens):
            if self.fail_at is not None and i == self.fail_at:
                raise RuntimeError("upstream 502")
            await self.release.wait()
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            yield token


class FakeSynthesizer(SynthesisClient):
    """Returns b"audio:<text>"; per-text delays and failures are configurable."""

    provider = "fake"

    def __init__(self, delays=None, failures=None, default_delay: float = 0.0):
        super().__init__(SynthesisCache(max_entries=0, max_text_length=0))
        self.delays: dict[str, float] = dict(delays or {})
        self.failures: set[str] = set(failures or [])
        self.default_delay = default_delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(text, self.default_delay))
            if text in self.failures:
                raise RuntimeError("polly throttled")
            return f"audio:{text}".encode()
        finally:
            self.in_flight -= 1


class ScriptedRecognitionBackend(RecognitionBackend):
    """Tests push TranscriptEvents (or an Exception, or None to end the stream)."""

    def __init__(self, fail_connect: bool = False, connect_delay: float = 0.0):
        self.fail_connect = fail_connect
        self.connect_delay = connect_delay
        self.events: asyncio.Queue = asyncio.Queue()
        self.audio: list[bytes] = []
        self.connected = False

    async def connect(self) -> None:
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise ConnectionError("speech api unavailable")
        self.connected = True

    def push(self, text: str, is_final: bool = False, confidence: float = 0.9) -> None:
        self.events.put_nowait(TranscriptEvent(text=text, is_final=is_final, confidence=confidence))

    def fail(self, error: Exception) -> None:
        self.events.put_nowait(error)

    async def _drain(self, audio):
        async for chunk in audio:
            self.audio.append(chunk)

    async def recognize(self, audio):
        consumer = asyncio.create_task(self._drain(audio))
        try:
            while True:
                item = await self.events.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            consumer.cancel()


class RecognizerFactory:
    """Hands out scripted backends and remembers them, newest last."""

    def __init__(self, fail_connect: bool = False, connect_delay: float = 0.0):
        self.fail_connect = fail_connect
        self.connect_delay = connect_delay
        self.backends: list[ScriptedRecognitionBackend] = []

    def __call__(self) -> ScriptedRecognitionBackend:
        backend = ScriptedRecognitionBackend(fail_connect=self.fail_connect,
                                             connect_delay=self.connect_delay)
        self.backends.append(backend)
        return backend

    @property
    def current(self) -> ScriptedRecognitionBackend:
        return self.backends[-1]


class FakePlayer(AudioPlayer):
    """Records playback; tests end fragments explicitly with finish()."""

    def __init__(self):
        self.played: list[bytes] = []
        self.stops = 0
        self.playing = False
        self._on_end = None
        self.overlaps = 0

    def play(self, audio: bytes, on_end) -> None:
        if self.playing:
            self.overlaps += 1
        self.playing = True
        self.played.append(audio)
        self._on_end = on_end

    def stop(self) -> None:
        self.stops += 1
        self.playing = False

    def finish(self, error: Optional[Exception] = None) -> None:
        on_end, self._on_end = self._on_end, None
        self.playing = False
        if on_end is not None:
            on_end(error)


class EventSink:
    """Collects server → client events."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def __call__(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == kind]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ══════════════════════════════════════════════════════════════
#  FIXTURES
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        speech_end_hangover_ms=20,
        reconnect_attempts=2,
        reconnect_delay_s=0.0,
        reconnect_max_delay_s=0.0,
        max_parallel_synthesis=3,
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator(tokens=["你好呀！", "我係你嘅助手。", "有咩幫到你"])


@pytest.fixture
def synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def recognizers() -> RecognizerFactory:
    return RecognizerFactory()


@pytest.fixture
def services(generator, synthesizer, recognizers) -> VoiceServices:
    return VoiceServices(
        generator=generator,
        synthesizer=synthesizer,
        recognizer_factory=recognizers,
        latency=AggregateLatencyTracker(),
        default_model="fake-model",
    )


@pytest.fixture
def sink() -> EventSink:
    return EventSink()


@pytest.fixture
def machine(sink, services, session_config) -> SessionStateMachine:
    return SessionStateMachine("sess-1", sink, services, session_config)


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or the timeout expires."""
    async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()
    return _eventually
