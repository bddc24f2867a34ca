"""
Microphone ingestion gate.

Chunks are dropped while agent audio could still feed back into the
microphone, buffered in a bounded ring (oldest dropped) until the server
signals stt_ready, flushed in order on readiness, then sent straight through.
"""
from __future__ import annotations

import structlog
from collections import deque
from typing import Callable

logger = structlog.get_logger()

MAX_BUFFER_SIZE = 50


class MicrophoneGate:

    def __init__(self, send: Callable[[bytes], None], max_buffer: int = MAX_BUFFER_SIZE):
        self._send = send
        self._buffer: deque[bytes] = deque(maxlen=max_buffer)
        self.stt_ready = False
        self.streaming_allowed = False
        self.dropped = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def push(self, chunk: bytes) -> None:
        if not self.streaming_allowed:
            self.dropped += 1
            return
        if not self.stt_ready:
            self._buffer.append(chunk)
            return
        self._send(chunk)

    def mark_ready(self) -> int:
        """stt_ready received: flush the ring in order. Returns how many chunks were flushed."""
        self.stt_ready = True
        flushed = 0
        while self._buffer:
            self._send(self._buffer.popleft())
            flushed += 1
        if flushed:
            logger.info("mic_buffer_flushed", chunks=flushed)
        return flushed

    def allow_streaming(self) -> None:
        """Agent playback drained: the microphone may feed the server again."""
        self.streaming_allowed = True

    def hold_streaming(self) -> None:
        self.streaming_allowed = False

    def reset(self) -> None:
        """New session or stop: wait for stt_ready and the greeting to drain again."""
        self._buffer.clear()
        self.stt_ready = False
        self.streaming_allowed = False
