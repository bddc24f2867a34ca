"""
Voice client — desktop counterpart of the browser client.

Wires microphone → barge-in detector → ingestion gate → WebSocket, and
WebSocket → playback queue → speaker. Outbound messages go through a single
outbox task so sends from device callbacks keep their order.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Optional

import numpy as np
import websockets

from client.ingest import MicrophoneGate
from client.pcm import float_to_pcm16
from client.playback import GREETING_ORDINAL, AudioPlayer, PlaybackQueue
from client.vad import BargeInConfig, BargeInDetector
from models.schemas import AudioFragment, Capabilities, Persona, ServerEvent
from voice.protocol import decode_audio, encode_audio

logger = structlog.get_logger()


class VoiceClient:

    def __init__(
        self,
        url: str,
        capabilities: Capabilities = None,
        model: Optional[str] = None,
        persona: Persona = None,
        player: Optional[AudioPlayer] = None,
        barge_in: Optional[BargeInConfig] = None,
    ):
        self.url = url
        self.capabilities = capabilities or Capabilities()
        self.model = model
        self.persona = persona or Persona()
        self._player = player
        self._barge_in_config = barge_in or BargeInConfig.for_capabilities(self.capabilities)

        self._outbox: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self.gate = MicrophoneGate(self._send_audio)
        self.playback: Optional[PlaybackQueue] = None
        self.detector: Optional[BargeInDetector] = None
        self.transcript: list[dict[str, str]] = []

    # ── wiring ────────────────────────────────────────────────

    def _build(self, loop: asyncio.AbstractEventLoop) -> None:
        player = self._player
        if player is None:
            from client.audio import SoundDevicePlayer
            player = SoundDevicePlayer(loop)
        self.playback = PlaybackQueue(
            player,
            on_drained=self._on_drained,
            on_fragment_start=self._on_fragment_start,
        )
        self.detector = BargeInDetector(
            self._barge_in_config,
            self.playback,
            on_interrupt=self._on_local_interrupt,
            on_user_finished=lambda: self.send({"type": "user_finished_speaking"}),
        )

    def send(self, payload: dict[str, Any]) -> None:
        self._outbox.put_nowait(payload)

    def _send_audio(self, chunk: bytes) -> None:
        self.send({"type": "audio", "audio": encode_audio(chunk)})

    def start_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"type": "start", "isMobile": self.capabilities.is_mobile}
        if self.model:
            message["model"] = self.model
        if self.persona.role:
            message["role"] = self.persona.role
        if self.persona.personality:
            message["personality"] = self.persona.personality
        if self.persona.word_limit:
            message["wordLimit"] = self.persona.word_limit
        return message

    # ── local events ──────────────────────────────────────────

    def on_mic_frame(self, samples: np.ndarray) -> None:
        self.detector.process_frame(samples)
        if not self.detector.muted:
            self.gate.push(float_to_pcm16(samples))

    def _on_fragment_start(self, fragment: AudioFragment) -> None:
        self.detector.on_fragment_start(is_greeting=fragment.ordinal == GREETING_ORDINAL)

    def _on_drained(self) -> None:
        self.detector.on_playback_stopped()
        self.gate.allow_streaming()
        self.send({"type": "ai_finished_speaking"})

    def _on_local_interrupt(self) -> None:
        # Playback is already stopped locally; the server re-derives turn state
        self.gate.allow_streaming()
        self.send({"type": "user_speaking"})
        self.send({"type": "ai_finished_speaking"})

    def mute(self) -> None:
        self.detector.mute()

    def unmute(self) -> None:
        self.detector.unmute()

    # ── server events ─────────────────────────────────────────

    async def handle_event(self, event: dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == ServerEvent.AI_RESPONSE.value:
            self.transcript.append({"role": "assistant", "content": event.get("text", "")})
            self._play(AudioFragment(
                text=event.get("text", ""), audio=decode_audio(event.get("audio", "")),
                ordinal=GREETING_ORDINAL, is_first=True, is_final=True,
            ))
        elif kind == ServerEvent.STT_READY.value:
            self.gate.mark_ready()
        elif kind == ServerEvent.AI_AUDIO_CHUNK.value:
            self._play(AudioFragment(
                text=event.get("text", ""), audio=decode_audio(event.get("audio", "")),
                ordinal=event.get("ordinal", 1), is_first=event.get("isFirst", False),
                is_final=event.get("isFinal", False),
            ))
        elif kind == ServerEvent.STOP_PLAYBACK.value:
            self.playback.hard_stop()
            self.detector.on_playback_stopped()
            self.gate.allow_streaming()
            self.send({"type": "ai_finished_speaking"})
        elif kind == ServerEvent.TRANSCRIPT.value:
            if event.get("isFinal"):
                logger.info("user_said", text=event.get("text"), confidence=event.get("confidence"))
        elif kind == ServerEvent.AI_RESPONSE_COMPLETE.value:
            self.transcript.append({"role": "assistant", "content": event.get("text", "")})
            logger.info("agent_said", text=event.get("text"))
        elif kind == ServerEvent.ERROR.value:
            logger.warning("server_error", message=event.get("message"))
        elif kind in (ServerEvent.STOPPED.value, ServerEvent.RESET.value):
            self.playback.hard_stop()
            self.gate.reset()
        else:
            logger.debug("server_event", type=kind)

    def _play(self, fragment: AudioFragment) -> None:
        # Agent audio would echo back into the microphone until the queue drains
        self.playback.enqueue(fragment)
        if self.playback.is_active:
            self.gate.hold_streaming()

    # ── run loop ──────────────────────────────────────────────

    async def _sender(self, ws) -> None:
        while True:
            payload = await self._outbox.get()
            if payload is None:
                return
            await ws.send(json.dumps(payload))

    async def run(self, mic=None) -> None:
        loop = asyncio.get_running_loop()
        self._build(loop)
        if mic is None:
            from client.audio import MicrophoneStream
            mic = MicrophoneStream(loop, self.on_mic_frame)

        async with websockets.connect(self.url, max_size=None) as ws:
            logger.info("client_connected", url=self.url)
            sender = asyncio.create_task(self._sender(ws))
            self.send(self.start_message())
            mic.start()
            try:
                async for raw in ws:
                    await self.handle_event(json.loads(raw))
            except websockets.ConnectionClosed as e:
                logger.info("client_disconnected", code=e.code)
            finally:
                mic.stop()
                self.playback.hard_stop()
                self._outbox.put_nowait(None)
                sender.cancel()

    async def stop(self) -> None:
        self.send({"type": "stop"})
