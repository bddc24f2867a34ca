"""16-bit little-endian PCM ↔ float32 sample conversion."""
from __future__ import annotations

import numpy as np


def float_to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def pcm16_to_float(audio: bytes) -> np.ndarray:
    # Odd trailing byte is dropped
    if len(audio) % 2:
        audio = audio[:-1]
    return np.frombuffer(audio, dtype="<i2").astype(np.float32) / 32768.0
