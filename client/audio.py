"""
Audio I/O for the desktop client — speaker output and microphone input.

Both devices run on PortAudio threads; every callback into the client is
marshalled back onto the asyncio loop with call_soon_threadsafe.
"""
from __future__ import annotations

import asyncio
import threading
import numpy as np
import sounddevice as sd
import structlog
from typing import Callable, Optional

from client.pcm import pcm16_to_float
from client.playback import AudioPlayer, EndCallback

logger = structlog.get_logger()

SAMPLE_RATE = 16000
FRAME_SAMPLES = 320          # 20 ms at 16 kHz


class SoundDevicePlayer(AudioPlayer):
    """Plays raw PCM16 mono through the default output device."""

    def __init__(self, loop: asyncio.AbstractEventLoop, sample_rate: int = SAMPLE_RATE):
        self.loop = loop
        self.sample_rate = sample_rate
        self._stream: Optional[sd.OutputStream] = None
        self._generation = 0
        self._lock = threading.Lock()

    def play(self, audio: bytes, on_end: EndCallback) -> None:
        self.stop()
        samples = pcm16_to_float(audio)
        with self._lock:
            self._generation += 1
            generation = self._generation
        position = 0

        def callback(outdata, frames, time_info, status):
            nonlocal position
            chunk = samples[position:position + frames]
            outdata[:len(chunk), 0] = chunk
            outdata[len(chunk):, 0] = 0.0
            position += frames
            if len(chunk) < frames:
                raise sd.CallbackStop()

        def finished():
            with self._lock:
                current = generation == self._generation
            if current:
                self.loop.call_soon_threadsafe(on_end, None)

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate, channels=1, dtype="float32",
                callback=callback, finished_callback=finished,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            logger.error("speaker_open_failed", error=str(e))
            self.loop.call_soon(on_end, e)

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.abort()
            stream.close()


class MicrophoneStream:
    """Captures float32 mono frames and hands them to ``on_frame`` on the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_frame: Callable[[np.ndarray], None],
        sample_rate: int = SAMPLE_RATE,
        frame_samples: int = FRAME_SAMPLES,
    ):
        self.loop = loop
        self.on_frame = on_frame
        self.sample_rate = sample_rate
        self.frame_samples = frame_samples
        self._stream: Optional[sd.InputStream] = None

    def _callback(self, indata, frames, time_info, status):
        if status:
            logger.debug("mic_status", status=str(status))
        self.loop.call_soon_threadsafe(self.on_frame, indata[:, 0].copy())

    def start(self) -> None:
        self._stream = sd.InputStream(
            samplerate=self.sample_rate, channels=1, dtype="float32",
            blocksize=self.frame_samples, callback=self._callback,
        )
        self._stream.start()
        logger.info("mic_started", sample_rate=self.sample_rate, frame=self.frame_samples)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
