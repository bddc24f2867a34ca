"""
Voice Subsystem — full-duplex turn-taking voice agent.

Modules:
- turn_taking: turn state machine and generation epoch
- session: per-connection session state machine (barge-in, turns, reconnection)
- pipeline: cancellable response pipeline with ordered fragment delivery
- segmenter: streaming sentence segmentation
- recognition / generation / synthesis: external service adapters
- server: session registry with idle sweep
- latency: per-turn stage timing
"""
from voice.errors import (
    VoiceError, RecognitionError, RecognitionStreamClosed,
    GenerationError, SynthesisError, ProtocolError, InvalidTransition,
)
from voice.segmenter import SentenceSegmenter, split_sentences
from voice.synthesis import SynthesisCache, SynthesisClient, PollySynthesisClient, create_synthesis_client
from voice.generation import (
    GenerationClient, OpenAIGenerationClient, AnthropicGenerationClient, create_generation_client,
)
from voice.recognition import (
    RecognitionBackend, GoogleRecognitionBackend, RecognitionStreamAdapter,
    create_recognition_backend,
)
from voice.turn_taking import TurnStateMachine, TRANSITIONS
from voice.pipeline import ResponsePipeline, PipelineResult
from voice.latency import TurnStage, LatencyBudget, TurnLatencyTracker, AggregateLatencyTracker
from voice.session import SessionStateMachine, ConversationSession, VoiceServices
from voice.server import SessionRegistry

__all__ = [
    "VoiceError", "RecognitionError", "RecognitionStreamClosed",
    "GenerationError", "SynthesisError", "ProtocolError", "InvalidTransition",
    "SentenceSegmenter", "split_sentences",
    "SynthesisCache", "SynthesisClient", "PollySynthesisClient", "create_synthesis_client",
    "GenerationClient", "OpenAIGenerationClient", "AnthropicGenerationClient",
    "create_generation_client",
    "RecognitionBackend", "GoogleRecognitionBackend", "RecognitionStreamAdapter",
    "create_recognition_backend",
    "TurnStateMachine", "TRANSITIONS",
    "ResponsePipeline", "PipelineResult",
    "TurnStage", "LatencyBudget", "TurnLatencyTracker", "AggregateLatencyTracker",
    "SessionStateMachine", "ConversationSession", "VoiceServices",
    "SessionRegistry",
]
