"""
Voice errors — structured error hierarchy for the voice pipeline.

Every error carries the component that raised it and whether the caller may
recover by retrying (recognition reconnects, fragment skip) or must abort.
"""
from __future__ import annotations


class VoiceError(Exception):
    """Base exception for all voice pipeline operations."""

    def __init__(self, message: str, component: str = "", retryable: bool = False):
        self.component = component
        self.retryable = retryable
        super().__init__(message)


class RecognitionError(VoiceError):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message, "recognition", retryable=retryable)


class RecognitionStreamClosed(RecognitionError):
    """Raised when audio is written to a torn-down recognition stream."""

    def __init__(self, message: str = "Recognition stream is closed"):
        super().__init__(message, retryable=True)


class GenerationError(VoiceError):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message, "generation", retryable=retryable)


class SynthesisError(VoiceError):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message, "synthesis", retryable=retryable)


class ProtocolError(VoiceError):
    """Malformed or unknown client message. Logged and ignored."""

    def __init__(self, message: str):
        super().__init__(message, "protocol", retryable=False)


class InvalidTransition(VoiceError):
    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Illegal turn transition {from_state} -> {to_state}", "session")
