"""
Voice Client — desktop counterpart of the server's voice protocol.

Modules:
- playback: back-to-back fragment playback with hard stop
- vad: echo-aware barge-in detector
- ingest: microphone gate with bounded pre-ready ring
- pcm: PCM16 ↔ float sample conversion
- audio: speaker and microphone devices (sounddevice)
- session: WebSocket client wiring it all together
"""
