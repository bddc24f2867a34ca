"""
Recognition Stream Adapter — long-lived streaming speech recognition.

Wraps a vendor streaming recognizer behind a small surface:
- write(): push raw audio chunks, in order
- ready: asyncio.Event set once the stream accepts audio
- callbacks: transcript, speech-start, speech-end, error
- reset(): clear speaking bookkeeping without tearing down the stream
- close(): destructive teardown; writes afterwards raise RecognitionStreamClosed

Speech-start fires on the first non-empty text after a quiet period.
Speech-end fires after a hangover following a final result, unless more
speech arrives inside the hangover.
"""
from __future__ import annotations

import abc
import asyncio
import json
import structlog
from typing import AsyncIterator, Awaitable, Callable, Optional

from config.settings import STTConfig
from models.schemas import TranscriptEvent
from voice.errors import RecognitionError, RecognitionStreamClosed

logger = structlog.get_logger()

TranscriptCallback = Callable[[TranscriptEvent], Awaitable[None]]
SpeechStartCallback = Callable[[], Awaitable[None]]
SpeechEndCallback = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[RecognitionError], Awaitable[None]]


# ══════════════════════════════════════════════════════════════
#  BACKENDS
# ══════════════════════════════════════════════════════════════

class RecognitionBackend(abc.ABC):
    """A vendor streaming recognizer: audio chunks in, transcript events out."""

    async def connect(self) -> None:
        """Establish credentials/clients. Called once per adapter before streaming."""

    @abc.abstractmethod
    def recognize(self, audio: AsyncIterator[bytes]) -> AsyncIterator[TranscriptEvent]:
        ...


class GoogleRecognitionBackend(RecognitionBackend):
    """Google Cloud Speech streaming recognition (async client)."""

    def __init__(self, config: STTConfig):
        self.config = config
        self._client = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        from google.cloud import speech
        if self.config.credentials_json:
            from google.oauth2 import service_account
            info = json.loads(self.config.credentials_json)
            credentials = service_account.Credentials.from_service_account_info(info)
            self._client = speech.SpeechAsyncClient(credentials=credentials)
            logger.info("stt_client_initialized", source="env", project=info.get("project_id"))
        else:
            self._client = speech.SpeechAsyncClient()
            logger.info("stt_client_initialized", source="default_credentials")

    def _streaming_config(self):
        from google.cloud import speech
        params = self.config.to_google_params()
        params["encoding"] = speech.RecognitionConfig.AudioEncoding[params["encoding"]]
        return speech.StreamingRecognitionConfig(
            config=speech.RecognitionConfig(**params),
            interim_results=self.config.interim_results,
        )

    async def recognize(self, audio: AsyncIterator[bytes]) -> AsyncIterator[TranscriptEvent]:
        from google.cloud import speech
        await self.connect()
        streaming_config = self._streaming_config()

        async def request_generator():
            yield speech.StreamingRecognizeRequest(streaming_config=streaming_config)
            async for chunk in audio:
                yield speech.StreamingRecognizeRequest(audio_content=chunk)

        responses = await self._client.streaming_recognize(requests=request_generator())
        async for response in responses:
            if not response.results or not response.results[0].alternatives:
                continue
            result = response.results[0]
            alternative = result.alternatives[0]
            yield TranscriptEvent(
                text=alternative.transcript,
                is_final=result.is_final,
                confidence=min(max(alternative.confidence or 0.0, 0.0), 1.0),
            )


def create_recognition_backend(config: STTConfig) -> RecognitionBackend:
    if config.provider == "google":
        return GoogleRecognitionBackend(config)
    raise ValueError(f"Unknown STT provider: {config.provider}")


# ══════════════════════════════════════════════════════════════
#  STREAM ADAPTER
# ══════════════════════════════════════════════════════════════

class RecognitionStreamAdapter:
    """One recognition stream for one session."""

    def __init__(
        self,
        backend: RecognitionBackend,
        on_transcript: TranscriptCallback,
        on_speech_start: SpeechStartCallback,
        on_speech_end: SpeechEndCallback,
        on_error: ErrorCallback,
        hangover_ms: int = 500,
        session_id: str = "",
    ):
        self.backend = backend
        self.on_transcript = on_transcript
        self.on_speech_start = on_speech_start
        self.on_speech_end = on_speech_end
        self.on_error = on_error
        self.hangover_s = hangover_ms / 1000.0
        self.session_id = session_id

        self.ready = asyncio.Event()
        self.is_speaking = False
        self.last_text = ""
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._hangover_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        """Connect the backend and start pumping audio. Sets ``ready`` on success."""
        if self._closed:
            raise RecognitionStreamClosed()
        try:
            await self.backend.connect()
        except Exception as e:
            self._closed = True
            raise RecognitionError(f"Recognition connect failed: {e}") from e
        self._pump_task = asyncio.create_task(self._pump())
        self.ready.set()
        logger.info("stt_stream_opened", session_id=self.session_id)

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise RecognitionStreamClosed()
        if chunk:
            self._queue.put_nowait(chunk)

    def reset(self) -> None:
        """Clear speaking state and any pending speech-end; the stream stays open."""
        self.is_speaking = False
        self.last_text = ""
        self._cancel_hangover()

    async def close(self) -> None:
        if self._closed and self._pump_task is None:
            return
        self._closed = True
        self.ready.clear()
        self._cancel_hangover()
        self._queue.put_nowait(None)
        task, self._pump_task = self._pump_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("stt_stream_closed", session_id=self.session_id)

    # ── internals ─────────────────────────────────────────────

    async def _audio_chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def _pump(self) -> None:
        try:
            async for event in self.backend.recognize(self._audio_chunks()):
                await self._handle(event)
            if not self._closed:
                raise RecognitionError("Recognition stream ended unexpectedly")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._closed:
                return
            error = e if isinstance(e, RecognitionError) else RecognitionError(str(e))
            logger.error("stt_stream_error", session_id=self.session_id, error=str(e))
            self._closed = True
            self.ready.clear()
            self._cancel_hangover()
            await self.on_error(error)

    async def _handle(self, event: TranscriptEvent) -> None:
        has_text = bool(event.text.strip())
        if has_text:
            self.last_text = event.text
            if not self.is_speaking:
                self.is_speaking = True
                logger.debug("stt_speech_start", session_id=self.session_id)
                await self.on_speech_start()

        await self.on_transcript(event)

        # Only a later final replaces a pending speech-end timer. Interim text
        # inside the window lets it fire so the next text raises speech-start.
        if event.is_final and self.is_speaking:
            self._cancel_hangover()
            self._hangover_task = asyncio.create_task(self._hangover(event.text))

    async def _hangover(self, final_text: str) -> None:
        await asyncio.sleep(self.hangover_s)
        self._hangover_task = None
        if self.is_speaking:
            self.is_speaking = False
            logger.debug("stt_speech_end", session_id=self.session_id, text=final_text)
            await self.on_speech_end(final_text)

    def _cancel_hangover(self) -> None:
        task, self._hangover_task = self._hangover_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
