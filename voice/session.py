"""
Session State Machine — one live conversation over one client connection.

Owns the conversation history, the turn state and generation epoch, the
recognition stream, and at most one active response pipeline. Client
messages and recognition callbacks both land here; everything that changes
who holds the floor goes through the TurnStateMachine.

Barge-in path (recognition speech-start or the client's user_speaking):
    advance epoch (sync) → INTERRUPTED → LISTENING → send stop_playback
The in-flight pipeline notices the epoch change on its own and stops.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import SessionConfig
from models.schemas import (
    AudioMessage, Capabilities, HistoryEntry, Persona, PlaybackFinishedMessage,
    ResetMessage, ServerEvent, SessionSummary, Speaker, StartMessage, StopMessage,
    TranscriptEvent, TurnState, UserFinishedMessage, UserSpeakingMessage, make_event,
)
from voice.errors import GenerationError, ProtocolError, RecognitionError, RecognitionStreamClosed, SynthesisError
from voice.generation import GenerationClient
from voice.latency import AggregateLatencyTracker, TurnLatencyTracker
from voice.pipeline import PipelineResult, ResponsePipeline
from voice.protocol import decode_audio, encode_audio, fragment_event
from voice.recognition import RecognitionBackend, RecognitionStreamAdapter
from voice.synthesis import SynthesisClient
from voice.turn_taking import TurnStateMachine

logger = structlog.get_logger()

Sender = Callable[[dict[str, Any]], Awaitable[None]]


# ══════════════════════════════════════════════════════════════
#  CONVERSATION DATA
# ══════════════════════════════════════════════════════════════

class ConversationSession:
    """History and selectors for one started conversation."""

    def __init__(
        self,
        session_id: str,
        history_limit: int = 20,
        capabilities: Capabilities = None,
        model: str = "",
        persona: Persona = None,
    ):
        self.id = session_id
        self.history: deque[HistoryEntry] = deque(maxlen=history_limit)
        self.capabilities = capabilities or Capabilities()
        self.model = model
        self.persona = persona or Persona()
        self.created_at = datetime.utcnow()
        self.last_activity = datetime.utcnow()

    def add_message(self, role: Speaker, content: str) -> HistoryEntry:
        entry = HistoryEntry(role=role, content=content)
        self.history.append(entry)
        self.touch()
        logger.debug("conversation_message_added", session_id=self.id, role=role.value,
                     content=content[:80])
        return entry

    def touch(self) -> None:
        self.last_activity = datetime.utcnow()

    def clear(self) -> None:
        self.history.clear()

    def summary(self, state: TurnState, epoch: int) -> SessionSummary:
        return SessionSummary(
            session_id=self.id,
            message_count=len(self.history),
            duration_s=round((datetime.utcnow() - self.created_at).total_seconds(), 1),
            last_activity=self.last_activity,
            state=state,
            epoch=epoch,
        )


@dataclass
class VoiceServices:
    """Shared, session-independent collaborators."""
    generator: GenerationClient
    synthesizer: SynthesisClient
    recognizer_factory: Callable[[], RecognitionBackend]
    latency: Optional[AggregateLatencyTracker] = None
    default_model: str = ""


# ══════════════════════════════════════════════════════════════
#  SESSION STATE MACHINE
# ══════════════════════════════════════════════════════════════

class SessionStateMachine:
    """Turn-taking orchestrator for one connection."""

    def __init__(
        self,
        session_id: str,
        send: Sender,
        services: VoiceServices,
        config: SessionConfig = None,
    ):
        self.session_id = session_id
        self._send = send
        self.services = services
        self.config = config or SessionConfig()
        self.turns = TurnStateMachine(session_id)
        self.latency = TurnLatencyTracker(session_id, aggregate=services.latency)

        self.session: Optional[ConversationSession] = None
        self.recognition: Optional[RecognitionStreamAdapter] = None
        self.last_activity = time.monotonic()

        self._active_epoch: Optional[int] = None
        self._client_drained = False
        self._last_interim = ""
        self._pipeline_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._opening = False
        self._promote_task: Optional[asyncio.Task] = None

    # ── State access ──────────────────────────────────────────

    @property
    def state(self) -> TurnState:
        return self.turns.state

    @property
    def epoch(self) -> int:
        return self.turns.epoch

    @property
    def pipeline_active(self) -> bool:
        return self._active_epoch is not None and self.turns.is_current(self._active_epoch)

    async def send(self, event: ServerEvent, **payload: Any) -> None:
        await self._send(make_event(event, **payload))

    # ── Dispatch ──────────────────────────────────────────────

    async def dispatch(self, message) -> None:
        """Route one parsed client message."""
        self.last_activity = time.monotonic()
        if isinstance(message, StartMessage):
            await self.start(message)
        elif isinstance(message, AudioMessage):
            await self.handle_audio(message)
        elif isinstance(message, UserSpeakingMessage):
            await self.handle_client_interrupt()
        elif isinstance(message, PlaybackFinishedMessage):
            self.on_playback_finished()
        elif isinstance(message, UserFinishedMessage):
            self.on_user_finished()
        elif isinstance(message, StopMessage):
            await self.stop()
        elif isinstance(message, ResetMessage):
            await self.reset()
        else:
            raise ProtocolError(f"Unhandled message: {type(message).__name__}")

    # ── Start / greeting ──────────────────────────────────────

    async def start(self, message: StartMessage) -> None:
        if self.session is not None or self.state != TurnState.IDLE:
            await self._teardown()

        model = message.model or self.services.default_model
        session = ConversationSession(
            self.session_id,
            history_limit=self.config.history_limit,
            capabilities=message.capabilities,
            model=model,
            persona=message.persona,
        )
        self.session = session
        logger.info("session_started", session_id=self.session_id, model=model,
                    mobile=session.capabilities.is_mobile, role=session.persona.role or None)
        await self.send(ServerEvent.MODEL_CONFIRMED, model=model)

        self.turns.transition(TurnState.GREETING)
        greeting = self.config.greeting
        try:
            audio = await self.services.synthesizer.synthesize(greeting)
            await self.send(ServerEvent.AI_RESPONSE, text=greeting, audio=encode_audio(audio))
        except SynthesisError as e:
            logger.error("greeting_synthesis_failed", session_id=self.session_id, error=str(e))
            await self.send(ServerEvent.ERROR, message=self.config.apology)
        if self.session is not session:
            return
        session.add_message(Speaker.ASSISTANT, greeting)

        await self._open_recognition()
        if self.session is session and self.state == TurnState.GREETING:
            self.turns.transition(TurnState.LISTENING)

    # ── Recognition lifecycle ─────────────────────────────────

    def _new_adapter(self) -> RecognitionStreamAdapter:
        return RecognitionStreamAdapter(
            self.services.recognizer_factory(),
            on_transcript=self.on_transcript,
            on_speech_start=self.on_speech_start,
            on_speech_end=self.on_speech_end,
            on_error=self.on_recognition_error,
            hangover_ms=self.config.speech_end_hangover_ms,
            session_id=self.session_id,
        )

    async def _open_recognition(self) -> bool:
        self._opening = True
        try:
            return await self._connect_recognition()
        finally:
            self._opening = False

    async def _connect_recognition(self) -> bool:
        session = self.session
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.reconnect_attempts),
                wait=wait_exponential(multiplier=self.config.reconnect_delay_s,
                                      max=self.config.reconnect_max_delay_s),
                retry=retry_if_exception_type(RecognitionError),
                reraise=True,
            ):
                with attempt:
                    if self.session is not session:
                        return False
                    adapter = self._new_adapter()
                    await adapter.open()
        except RecognitionError as e:
            logger.error("stt_reconnect_exhausted", session_id=self.session_id,
                         attempts=self.config.reconnect_attempts, error=str(e))
            await self.send(ServerEvent.ERROR, message=self.config.apology, recoverable=True)
            return False

        if self.session is not session:
            await adapter.close()
            return False
        self.recognition = adapter
        await adapter.ready.wait()
        await self.send(ServerEvent.STT_READY)
        logger.info("stt_ready", session_id=self.session_id)
        return True

    def _schedule_reconnect(self) -> None:
        if self.session is None or self._opening:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        old, self.recognition = self.recognition, None
        if old is not None:
            await old.close()
        await asyncio.sleep(self.config.reconnect_delay_s)
        if self.session is None:
            return
        logger.info("stt_reconnecting", session_id=self.session_id, state=self.state.value)
        await self._open_recognition()

    async def on_recognition_error(self, error: RecognitionError) -> None:
        logger.warning("stt_error", session_id=self.session_id, error=str(error),
                       retryable=error.retryable)
        self._schedule_reconnect()

    # ── Audio ingestion ───────────────────────────────────────

    async def handle_audio(self, message: AudioMessage) -> None:
        if self.session is None:
            logger.debug("audio_without_session", session_id=self.session_id)
            return
        chunk = decode_audio(message.audio)
        self.session.touch()
        adapter = self.recognition
        if adapter is None or adapter.closed:
            self._schedule_reconnect()
            return
        try:
            adapter.write(chunk)
        except RecognitionStreamClosed:
            logger.warning("stt_write_after_close", session_id=self.session_id)
            self._schedule_reconnect()

    # ── Recognition callbacks ─────────────────────────────────

    async def on_speech_start(self) -> None:
        await self._barge_in("recognition")
        await self.send(ServerEvent.USER_SPEECH_START)

    async def on_transcript(self, event: TranscriptEvent) -> None:
        await self.send(ServerEvent.TRANSCRIPT, text=event.text, isFinal=event.is_final,
                        confidence=event.confidence)
        if not event.is_final:
            self._last_interim = event.text
            return

        self._last_interim = ""
        self._cancel_promotion()
        text = event.text.strip()
        if event.confidence > self.config.acceptance_confidence and text:
            self._start_turn(text)
        else:
            logger.info("transcript_rejected", session_id=self.session_id, text=text,
                        confidence=event.confidence)

    async def on_speech_end(self, final_text: str) -> None:
        await self.send(ServerEvent.USER_SPEECH_END, finalText=final_text)

    # ── Interruption ──────────────────────────────────────────

    async def handle_client_interrupt(self) -> None:
        await self._barge_in("client")

    async def _barge_in(self, source: str) -> bool:
        if not self.turns.interrupt():
            return False
        self._active_epoch = None
        self._client_drained = False
        logger.info("barge_in", session_id=self.session_id, source=source, epoch=self.epoch)
        await self.send(ServerEvent.STOP_PLAYBACK, reason="interrupted")
        return True

    # ── Turns ─────────────────────────────────────────────────

    def _start_turn(self, text: str) -> bool:
        if self.session is None or self.state != TurnState.LISTENING or self.pipeline_active:
            logger.info("transcript_dropped", session_id=self.session_id, text=text,
                        state=self.state.value, pipeline_active=self.pipeline_active)
            return False

        self.session.add_message(Speaker.USER, text)
        epoch = self.turns.begin_turn()
        self._active_epoch = epoch
        self._client_drained = False
        self.latency.begin_turn(epoch)

        pipeline = ResponsePipeline(
            self.services.generator,
            self.services.synthesizer,
            epoch=epoch,
            is_current=self.turns.is_current,
            emit=self._emit_fragment,
            on_thinking=self._emit_thinking,
            min_fragment_chars=self.config.min_fragment_chars,
            max_parallel=self.config.max_parallel_synthesis,
            latency=self.latency,
            session_id=self.session_id,
        )
        logger.info("turn_started", session_id=self.session_id, epoch=epoch, text=text)
        self._pipeline_task = asyncio.create_task(self._run_pipeline(pipeline, self.session))
        return True

    async def _run_pipeline(self, pipeline: ResponsePipeline, session: ConversationSession) -> None:
        try:
            result = await pipeline.run(
                list(session.history),
                model=session.model or None,
                capabilities=session.capabilities,
                persona=session.persona,
            )
        except Exception as e:
            logger.exception("pipeline_crashed", session_id=self.session_id, epoch=pipeline.epoch)
            result = PipelineResult(error=GenerationError(str(e)))

        if not self.turns.is_current(pipeline.epoch) or self.session is not session:
            return
        self._active_epoch = None

        if result.error is not None:
            await self.send(ServerEvent.ERROR, message=self.config.apology)
            self.turns.transition(TurnState.LISTENING)
            return

        if result.text:
            session.add_message(Speaker.ASSISTANT, result.text)
        await self.send(ServerEvent.AI_RESPONSE_COMPLETE, text=result.text)

        if result.fragments_sent and not self._client_drained:
            self.turns.transition(TurnState.SPEAKING)
        else:
            self.turns.transition(TurnState.LISTENING)

    async def _emit_fragment(self, fragment) -> None:
        if not self.turns.is_current(fragment.epoch):
            return
        if self.state == TurnState.PROCESSING:
            self.turns.transition(TurnState.SPEAKING)
        self._client_drained = False
        await self._send(fragment_event(fragment))

    async def _emit_thinking(self, chunk: str, current: str) -> None:
        await self.send(ServerEvent.AI_THINKING, chunk=chunk, current=current)

    # ── Client playback / mute hints ──────────────────────────

    def on_playback_finished(self) -> None:
        if self.pipeline_active:
            self._client_drained = True
        elif self.state == TurnState.SPEAKING:
            self.turns.transition(TurnState.LISTENING)
        logger.debug("client_playback_drained", session_id=self.session_id, state=self.state.value)

    def on_user_finished(self) -> None:
        if not self._last_interim or self.state != TurnState.LISTENING:
            return
        self._cancel_promotion()
        self._promote_task = asyncio.create_task(self._promote_interim(self._last_interim))

    async def _promote_interim(self, text: str) -> None:
        await asyncio.sleep(self.config.speech_end_hangover_ms / 1000.0)
        if self._last_interim != text or not text.strip():
            return
        self._last_interim = ""
        logger.info("interim_promoted", session_id=self.session_id, text=text)
        if self.recognition is not None:
            self.recognition.reset()
        self._start_turn(text.strip())

    def _cancel_promotion(self) -> None:
        task, self._promote_task = self._promote_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Stop / reset ──────────────────────────────────────────

    async def _teardown(self) -> Optional[ConversationSession]:
        session, self.session = self.session, None
        self.turns.reset()
        self._active_epoch = None
        self._client_drained = False
        self._last_interim = ""
        self._cancel_promotion()
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and not reconnect.done() and reconnect is not asyncio.current_task():
            reconnect.cancel()
        adapter, self.recognition = self.recognition, None
        if adapter is not None:
            await adapter.close()
        if session is not None:
            summary = session.summary(self.state, self.epoch)
            logger.info("session_stopped", **summary.model_dump(mode="json"))
        return session

    async def stop(self, notify: bool = True) -> None:
        """Idempotent: close recognition, discard the session, tell the client."""
        await self._teardown()
        if notify:
            await self.send(ServerEvent.STOPPED)

    async def reset(self) -> None:
        session = await self._teardown()
        if session is not None:
            session.clear()
        await self.send(ServerEvent.STOPPED)
        await self.send(ServerEvent.RESET)

    async def close(self) -> None:
        """Final teardown when the connection goes away."""
        await self.stop(notify=False)
        task, self._pipeline_task = self._pipeline_task, None
        if task is not None and not task.done():
            task.cancel()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started": self.session is not None,
            "messages": len(self.session.history) if self.session else 0,
            **self.turns.to_dict(),
            "latency": self.latency.to_dict(),
        }
