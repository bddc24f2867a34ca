"""
Tests for the session state machine.

Coverage:
- Start: model confirmation, greeting, recognition readiness
- A full turn: transcript → pipeline → fragments → SPEAKING → LISTENING
- Barge-in from recognition and from the client, epoch invalidation
- Transcript acceptance, rejection and drop rules
- Failure handling: generation, greeting synthesis, recognition reconnect
- Stop / reset idempotence, mute-hint promotion
"""
import asyncio
import pytest

from models.schemas import (
    AudioMessage, PlaybackFinishedMessage, ResetMessage, Speaker, StartMessage,
    StopMessage, TranscriptEvent, TurnState, UserFinishedMessage, UserSpeakingMessage,
)
from voice.errors import ProtocolError
from voice.protocol import encode_audio
from voice.session import SessionStateMachine

from conftest import FakeGenerator, FakeSynthesizer, RecognizerFactory


def _start(**fields) -> StartMessage:
    return StartMessage(type="start", **fields)


async def _started(machine: SessionStateMachine, **fields) -> SessionStateMachine:
    await machine.dispatch(_start(**fields))
    return machine


# ══════════════════════════════════════════════════════════════
#  START
# ══════════════════════════════════════════════════════════════

class TestStart:

    @pytest.mark.asyncio
    async def test_start_sequence(self, machine, sink, session_config):
        await _started(machine)

        assert sink.types() == ["model_confirmed", "ai_response", "stt_ready"]
        assert sink.events[0]["model"] == "fake-model"
        assert sink.events[1]["text"] == session_config.greeting
        assert sink.events[1]["audio"] == encode_audio(f"audio:{session_config.greeting}".encode())
        assert machine.state == TurnState.LISTENING
        history = list(machine.session.history)
        assert [(h.role, h.content) for h in history] == [(Speaker.ASSISTANT, session_config.greeting)]
        await machine.close()

    @pytest.mark.asyncio
    async def test_start_with_requested_model_and_persona(self, machine, sink):
        await _started(machine, model="anthropic/claude-3-haiku", isMobile=True,
                       role="茶餐廳伙計", wordLimit=40)

        assert sink.events[0] == {"type": "model_confirmed", "model": "anthropic/claude-3-haiku"}
        assert machine.session.capabilities.is_mobile
        assert machine.session.persona.role == "茶餐廳伙計"
        assert machine.session.persona.word_limit == 40
        await machine.close()

    @pytest.mark.asyncio
    async def test_greeting_synthesis_failure_still_listens(self, sink, services, session_config):
        services.synthesizer = FakeSynthesizer(failures={session_config.greeting})
        machine = SessionStateMachine("s", sink, services, session_config)

        await _started(machine)

        assert sink.types() == ["model_confirmed", "error", "stt_ready"]
        assert sink.events[1]["message"] == session_config.apology
        assert machine.state == TurnState.LISTENING
        await machine.close()

    @pytest.mark.asyncio
    async def test_second_start_replaces_session(self, machine, sink, recognizers):
        await _started(machine)
        first = machine.session
        first_adapter = machine.recognition

        await _started(machine)

        assert machine.session is not first
        assert first_adapter.closed
        assert len(recognizers.backends) == 2
        assert machine.state == TurnState.LISTENING
        await machine.close()


# ══════════════════════════════════════════════════════════════
#  TURNS
# ══════════════════════════════════════════════════════════════

class TestTurns:

    @pytest.mark.asyncio
    async def test_full_turn(self, machine, sink, recognizers, eventually):
        await _started(machine)
        recognizers.current.push("你好", is_final=True, confidence=0.9)

        assert await eventually(lambda: "ai_response_complete" in sink.types())
        assert machine.state == TurnState.SPEAKING
        chunks = sink.of_type("ai_audio_chunk")
        assert [c["ordinal"] for c in chunks] == [1, 2, 3]
        assert chunks[0]["isFirst"] and chunks[-1]["isFinal"]
        assert sink.of_type("ai_response_complete")[0]["text"] == "你好呀！我係你嘅助手。有咩幫到你"

        history = [(h.role, h.content) for h in machine.session.history]
        assert history[1:] == [
            (Speaker.USER, "你好"),
            (Speaker.ASSISTANT, "你好呀！我係你嘅助手。有咩幫到你"),
        ]

        await machine.dispatch(PlaybackFinishedMessage(type="ai_finished_speaking"))
        assert machine.state == TurnState.LISTENING
        await machine.close()

    @pytest.mark.asyncio
    async def test_speech_events_forwarded(self, machine, sink, recognizers, eventually):
        await _started(machine)
        recognizers.current.push("我想", is_final=False, confidence=0.0)
        recognizers.current.push("我想問下", is_final=True, confidence=0.3)

        assert await eventually(lambda: "user_speech_end" in sink.types())
        types = sink.types()
        assert types.index("user_speech_start") < types.index("transcript")
        transcripts = sink.of_type("transcript")
        assert [t["isFinal"] for t in transcripts] == [False, True]
        assert sink.of_type("user_speech_end")[0]["finalText"] == "我想問下"
        await machine.close()

    @pytest.mark.asyncio
    async def test_low_confidence_final_is_rejected(self, machine, sink, generator):
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.5))

        assert generator.calls == []
        assert machine.state == TurnState.LISTENING
        assert len(machine.session.history) == 1
        await machine.close()

    @pytest.mark.asyncio
    async def test_transcript_during_active_run_is_dropped(self, machine, sink, generator, eventually):
        generator.release.clear()
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="第一句", is_final=True, confidence=0.9))
        assert machine.state == TurnState.PROCESSING

        await machine.on_transcript(TranscriptEvent(text="第二句", is_final=True, confidence=0.9))

        assert [h.content for h in machine.session.history][1:] == ["第一句"]
        generator.release.set()
        assert await eventually(lambda: "ai_response_complete" in sink.types())
        assert len(generator.calls) == 1
        await machine.close()

    @pytest.mark.asyncio
    async def test_history_passed_to_generation(self, machine, sink, recognizers, generator, eventually,
                                                session_config):
        await _started(machine)
        recognizers.current.push("你好", is_final=True, confidence=0.9)
        assert await eventually(lambda: generator.calls)

        messages = generator.calls[0]["messages"]
        assert messages == [
            {"role": "assistant", "content": session_config.greeting},
            {"role": "user", "content": "你好"},
        ]
        await machine.close()

    @pytest.mark.asyncio
    async def test_playback_drained_mid_run_lands_in_listening(self, sink, services, session_config,
                                                               eventually):
        services.generator = FakeGenerator(tokens=["第一句說話。", "第二句說話。"], token_delay=0.03)
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))

        assert await eventually(lambda: sink.of_type("ai_audio_chunk"))
        assert machine.state == TurnState.SPEAKING
        machine.on_playback_finished()
        assert machine.state == TurnState.SPEAKING

        assert await eventually(lambda: "ai_response_complete" in sink.types())
        assert machine.state == TurnState.SPEAKING
        machine.on_playback_finished()
        assert machine.state == TurnState.LISTENING
        await machine.close()

    @pytest.mark.asyncio
    async def test_audio_is_forwarded_to_recognition(self, machine, recognizers, eventually):
        await _started(machine)
        await machine.dispatch(AudioMessage(type="audio", audio=encode_audio(b"\x01\x02" * 160)))
        await machine.dispatch(AudioMessage(type="audio", audio=encode_audio(b"\x03\x04" * 160)))

        backend = recognizers.current
        assert await eventually(lambda: len(backend.audio) == 2)
        assert backend.audio == [b"\x01\x02" * 160, b"\x03\x04" * 160]
        await machine.close()

    @pytest.mark.asyncio
    async def test_audio_before_start_is_ignored(self, machine, recognizers):
        await machine.dispatch(AudioMessage(type="audio", audio=encode_audio(b"\x00\x00")))
        assert recognizers.backends == []


# ══════════════════════════════════════════════════════════════
#  BARGE-IN
# ══════════════════════════════════════════════════════════════

class TestBargeIn:

    @pytest.mark.asyncio
    async def test_barge_in_mid_response(self, sink, services, session_config, recognizers, eventually):
        tokens = ["第一句說話。", "第二句說話。", "第三句說話。", "第四句說話。", "第五句說話。"]
        services.generator = FakeGenerator(tokens=tokens)
        services.synthesizer = FakeSynthesizer(delays={"第四句說話。": 0.3, "第五句說話。": 0.3})
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)

        recognizers.current.push("講個故事", is_final=True, confidence=0.9)
        assert await eventually(lambda: len(sink.of_type("ai_audio_chunk")) == 3)
        assert await eventually(lambda: "user_speech_end" in sink.types())
        epoch = machine.epoch

        recognizers.current.push("喂", is_final=False)
        assert await eventually(lambda: "stop_playback" in sink.types())
        assert machine.epoch == epoch + 1
        assert machine.state == TurnState.LISTENING
        assert sink.of_type("stop_playback")[0]["reason"] == "interrupted"

        await asyncio.sleep(0.4)
        assert [c["ordinal"] for c in sink.of_type("ai_audio_chunk")] == [1, 2, 3]
        assert "ai_response_complete" not in sink.types()
        assert machine.epoch == epoch + 1
        await machine.close()

    @pytest.mark.asyncio
    async def test_stop_playback_is_immediate(self, sink, services, session_config):
        services.synthesizer = FakeSynthesizer(default_delay=0.2)
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))
        assert machine.state == TurnState.PROCESSING

        await machine.on_speech_start()

        assert sink.types()[-2:] == ["stop_playback", "user_speech_start"]
        assert machine.state == TurnState.LISTENING
        await asyncio.sleep(0.3)
        assert sink.of_type("ai_audio_chunk") == []
        await machine.close()

    @pytest.mark.asyncio
    async def test_client_interrupt(self, machine, sink, eventually):
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))
        assert await eventually(lambda: "ai_response_complete" in sink.types())
        assert machine.state == TurnState.SPEAKING
        epoch = machine.epoch

        await machine.dispatch(UserSpeakingMessage(type="user_speaking"))

        assert sink.types()[-1] == "stop_playback"
        assert machine.epoch == epoch + 1
        assert machine.state == TurnState.LISTENING
        await machine.close()

    @pytest.mark.asyncio
    async def test_speech_while_listening_is_not_barge_in(self, machine, sink):
        await _started(machine)
        epoch = machine.epoch

        await machine.on_speech_start()

        assert "stop_playback" not in sink.types()
        assert machine.epoch == epoch
        await machine.close()

    @pytest.mark.asyncio
    async def test_new_turn_after_barge_in(self, machine, sink, generator, eventually):
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))
        await machine.handle_client_interrupt()
        await machine.on_transcript(TranscriptEvent(text="唔該", is_final=True, confidence=0.9))

        assert await eventually(lambda: "ai_response_complete" in sink.types())
        assert len(generator.calls) == 2
        assert sink.of_type("ai_audio_chunk")[0]["isFirst"]
        await machine.close()

    @pytest.mark.asyncio
    async def test_continued_speech_after_final_interrupts_turn(self, machine, sink, recognizers, generator,
                                                                eventually):
        generator.release.clear()
        await _started(machine)
        recognizers.current.push("你好", is_final=True, confidence=0.9)
        recognizers.current.push("我想問", is_final=False)
        assert await eventually(lambda: "user_speech_end" in sink.types())
        assert machine.state == TurnState.PROCESSING
        assert "stop_playback" not in sink.types()

        recognizers.current.push("我想問下天氣", is_final=True, confidence=0.9)
        assert await eventually(lambda: len(generator.calls) == 2)
        assert sink.of_type("stop_playback")[0]["reason"] == "interrupted"
        assert [h.content for h in machine.session.history][1:] == ["你好", "我想問下天氣"]

        generator.release.set()
        assert await eventually(lambda: "ai_response_complete" in sink.types())
        await machine.close()


# ══════════════════════════════════════════════════════════════
#  FAILURES
# ══════════════════════════════════════════════════════════════

class TestFailures:

    @pytest.mark.asyncio
    async def test_generation_failure_sends_apology(self, sink, services, session_config, eventually):
        services.generator = FakeGenerator(tokens=["第一句說話。"], fail_at=0)
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)

        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))

        assert await eventually(lambda: len(sink.of_type("error")) == 1)
        assert sink.of_type("error")[0]["message"] == session_config.apology
        assert await eventually(lambda: machine.state == TurnState.LISTENING)
        assert [h.role for h in machine.session.history] == [Speaker.ASSISTANT, Speaker.USER]
        await machine.close()

    @pytest.mark.asyncio
    async def test_failed_fragment_skipped_in_order(self, sink, services, session_config, eventually):
        services.generator = FakeGenerator(tokens=["第一句說話。", "第二句說話。", "第三句說話。"])
        services.synthesizer = FakeSynthesizer(failures={"第二句說話。"}, delays={"第一句說話。": 0.05})
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)

        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))

        assert await eventually(lambda: "ai_response_complete" in sink.types())
        assert [c["text"] for c in sink.of_type("ai_audio_chunk")] == ["第一句說話。", "第三句說話。"]
        assert machine.state == TurnState.SPEAKING
        assert "error" not in sink.types()
        await machine.close()

    @pytest.mark.asyncio
    async def test_recognition_error_reconnects(self, machine, sink, recognizers, eventually):
        await _started(machine)
        first = recognizers.current

        first.fail(RuntimeError("stream reset by peer"))

        assert await eventually(lambda: len(sink.of_type("stt_ready")) == 2)
        assert len(recognizers.backends) == 2
        assert machine.recognition.backend is recognizers.current
        assert not machine.recognition.closed
        assert "error" not in sink.types()
        await machine.close()

    @pytest.mark.asyncio
    async def test_unexpected_stream_end_reconnects(self, machine, sink, recognizers, eventually):
        await _started(machine)
        recognizers.current.events.put_nowait(None)

        assert await eventually(lambda: len(recognizers.backends) == 2)
        assert await eventually(lambda: len(sink.of_type("stt_ready")) == 2)
        await machine.close()

    @pytest.mark.asyncio
    async def test_reconnect_exhaustion_reports_recoverable_error(self, sink, services, session_config):
        services.recognizer_factory = RecognizerFactory(fail_connect=True)
        machine = SessionStateMachine("s", sink, services, session_config)

        await _started(machine)

        assert len(services.recognizer_factory.backends) == session_config.reconnect_attempts
        errors = sink.of_type("error")
        assert len(errors) == 1
        assert errors[0]["recoverable"] is True
        assert "stt_ready" not in sink.types()
        assert machine.recognition is None
        await machine.close()

    @pytest.mark.asyncio
    async def test_audio_after_failed_connect_schedules_reconnect(self, sink, services, session_config,
                                                                  eventually):
        factory = RecognizerFactory(fail_connect=True)
        services.recognizer_factory = factory
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)
        factory.fail_connect = False

        await machine.dispatch(AudioMessage(type="audio", audio=encode_audio(b"\x00\x01")))

        assert await eventually(lambda: "stt_ready" in sink.types())
        assert machine.recognition is not None
        await machine.close()

    @pytest.mark.asyncio
    async def test_audio_while_connecting_waits_for_open(self, sink, services, session_config, eventually):
        factory = RecognizerFactory(connect_delay=0.05)
        services.recognizer_factory = factory
        machine = SessionStateMachine("s", sink, services, session_config)
        starting = asyncio.create_task(machine.dispatch(_start()))
        assert await eventually(lambda: factory.backends)
        assert machine.recognition is None

        await machine.dispatch(AudioMessage(type="audio", audio=encode_audio(b"\x00\x01")))
        await starting
        await asyncio.sleep(0.1)

        assert len(factory.backends) == 1
        assert sink.types().count("stt_ready") == 1
        assert machine.recognition is not None and not machine.recognition.closed
        await machine.close()


# ══════════════════════════════════════════════════════════════
#  STOP / RESET / MUTE HINT
# ══════════════════════════════════════════════════════════════

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, machine, sink):
        await _started(machine)
        adapter = machine.recognition

        await machine.dispatch(StopMessage(type="stop"))
        await machine.dispatch(StopMessage(type="stop"))

        assert sink.types()[-2:] == ["stopped", "stopped"]
        assert machine.state == TurnState.IDLE
        assert machine.session is None
        assert adapter.closed

    @pytest.mark.asyncio
    async def test_stop_during_run_discards_output(self, sink, services, session_config):
        services.synthesizer = FakeSynthesizer(default_delay=0.1)
        machine = SessionStateMachine("s", sink, services, session_config)
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="你好", is_final=True, confidence=0.9))

        await machine.stop()
        await asyncio.sleep(0.2)

        assert sink.of_type("ai_audio_chunk") == []
        assert "ai_response_complete" not in sink.types()
        assert machine.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_reset(self, machine, sink):
        await _started(machine)
        session = machine.session

        await machine.dispatch(ResetMessage(type="reset"))

        assert sink.types()[-2:] == ["stopped", "reset"]
        assert machine.session is None
        assert len(session.history) == 0
        assert machine.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_start_after_stop(self, machine, sink):
        await _started(machine)
        await machine.stop()
        await _started(machine)
        assert machine.state == TurnState.LISTENING
        assert sink.types().count("stt_ready") == 2
        await machine.close()

    @pytest.mark.asyncio
    async def test_user_finished_promotes_interim(self, machine, sink, recognizers, generator, eventually):
        await _started(machine)
        recognizers.current.push("我想問下天氣", is_final=False)
        assert await eventually(lambda: sink.of_type("transcript"))

        await machine.dispatch(UserFinishedMessage(type="user_finished_speaking"))

        assert await eventually(lambda: generator.calls)
        assert [h.content for h in machine.session.history][1] == "我想問下天氣"
        await machine.close()

    @pytest.mark.asyncio
    async def test_final_result_cancels_promotion(self, machine, sink, recognizers, generator, eventually):
        await _started(machine)
        await machine.on_transcript(TranscriptEvent(text="我想", is_final=False))
        machine.on_user_finished()
        await machine.on_transcript(TranscriptEvent(text="我想問下", is_final=True, confidence=0.9))

        assert await eventually(lambda: "ai_response_complete" in sink.types())
        await asyncio.sleep(0.05)
        assert len(generator.calls) == 1
        assert [h.content for h in machine.session.history][1] == "我想問下"
        await machine.close()

    @pytest.mark.asyncio
    async def test_unknown_message_type_raises(self, machine):
        with pytest.raises(ProtocolError):
            await machine.dispatch(object())

    @pytest.mark.asyncio
    async def test_to_dict(self, machine):
        await _started(machine)
        data = machine.to_dict()
        assert data["started"] is True
        assert data["state"] == "listening"
        assert data["messages"] == 1
        await machine.close()
