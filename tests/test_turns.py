"""
Turn state machine tests.

Drives the real capture, synthesis and generation components against
scripted engines and checks the turn sequence, the mutual exclusion of
microphone and speaker, and how the machine ends.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from parley.config.models import ConversationConfig
from parley.engine.cache import ResponseCache
from parley.engine.capture import SpeechCaptureController
from parley.engine.errors import CaptureError, GenerationError, SynthesisError, TurnStateError
from parley.engine.generator import ResponseGenerator
from parley.engine.models import GeneratedReply, Speaker, TurnState
from parley.engine.session import InMemorySessionStore, SessionStore, summarize_session
from parley.engine.synthesis import SpeechSynthesisController
from parley.engine.turns import TurnStateMachine

from conftest import FakeClient, FakeRecognizer, FakeSynthesizer, wait_for

FALLBACK_TEXT = ConversationConfig().fallback_text


class SlowStore(InMemorySessionStore):
    """In-memory store whose writes take a while and log their order."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay
        self.log = []

    async def append_messages(self, session_id, messages):
        await asyncio.sleep(self.delay)
        await super().append_messages(session_id, messages)
        self.log.extend(m.speaker.value for m in messages)

    async def end_session(self, session_id, summary, duration_minutes):
        await super().end_session(session_id, summary, duration_minutes)
        self.log.append("end")


def build_rig(capture_config, client=None, synthesizer=None, store=None):
    recognizer = FakeRecognizer()
    synthesizer = synthesizer or FakeSynthesizer(auto_complete=True)
    client = client or FakeClient(reply="Happy to help. What do you need?")
    store = store if store is not None else InMemorySessionStore()
    config = ConversationConfig()

    machine = TurnStateMachine(
        SpeechCaptureController(recognizer, config=capture_config),
        SpeechSynthesisController(synthesizer),
        ResponseGenerator(client, cache=ResponseCache(), config=config, timeout=1.0),
        store=store,
        config=config,
    )

    transitions = []
    violations = []

    def on_state(state, previous, session_id):
        transitions.append(state)
        if not machine.invariant_holds():
            violations.append(state)

    machine.add_state_listener(on_state)
    return SimpleNamespace(
        machine=machine,
        recognizer=recognizer,
        synthesizer=synthesizer,
        client=client,
        store=store,
        transitions=transitions,
        violations=violations,
    )


@pytest.fixture
def rig(capture_config):
    return build_rig(capture_config)


class TestTurnCycle:

    @pytest.mark.asyncio
    async def test_start_arms_capture(self, rig, session):
        await rig.machine.start(session)

        assert rig.machine.state is TurnState.LISTENING
        assert rig.machine.capture_active is True
        assert rig.recognizer.running is True

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, rig, session):
        await rig.machine.start(session)

        with pytest.raises(TurnStateError):
            await rig.machine.start(session)

    @pytest.mark.asyncio
    async def test_full_turn(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.result("I would like a discount", is_final=True)
        await rig.machine.join()

        assert rig.transitions == [
            TurnState.LISTENING,
            TurnState.PROCESSING,
            TurnState.SPEAKING,
            TurnState.LISTENING,
        ]
        assert rig.violations == []
        assert [m.speaker for m in session.history] == [Speaker.USER, Speaker.CHARACTER]
        assert session.history[0].text == "I would like a discount"
        assert [u.text for u in rig.synthesizer.spoken] == ["Happy to help. What do you need?"]
        assert rig.recognizer.starts == 2
        assert rig.recognizer.running is True

    @pytest.mark.asyncio
    async def test_messages_persisted_in_order(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.result("I would like a discount", is_final=True)
        await rig.machine.join()

        stored = rig.store.messages[session.session_id]
        assert [m.speaker for m in stored] == [Speaker.USER, Speaker.CHARACTER]

    @pytest.mark.asyncio
    async def test_generator_sees_history_before_current_message(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.result("I would like a discount", is_final=True)
        await rig.machine.join()

        prompt, _ = rig.client.calls[0]
        assert "[Previous conversation]" not in prompt
        assert prompt.startswith("User: I would like a discount")

    @pytest.mark.asyncio
    async def test_two_turns(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.result("I would like a discount", is_final=True)
        await rig.machine.join()
        rig.recognizer.result("What about annual billing?", is_final=True)
        await rig.machine.join()

        assert session.exchanges == 2
        assert len(rig.synthesizer.spoken) == 2
        assert rig.violations == []
        assert rig.machine.state is TurnState.LISTENING

    @pytest.mark.asyncio
    async def test_silence_finalized_interim_starts_turn(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.result("I want to schedule a meeting", confidence=0.9)
        await wait_for(lambda: len(session.history) > 0)
        await rig.machine.join()

        assert session.history[0].text == "I want to schedule a meeting"
        assert rig.machine.state is TurnState.LISTENING


class TestTranscriptFiltering:

    @pytest.mark.asyncio
    async def test_short_transcript_discarded(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.result("ok", is_final=True)
        await rig.machine.join()

        assert rig.machine.state is TurnState.LISTENING
        assert session.history == []
        assert rig.client.calls == []
        assert rig.recognizer.running is True

    @pytest.mark.asyncio
    async def test_three_characters_accepted(self, rig, session):
        await rig.machine.start(session)

        accepted = await rig.machine.on_final_transcript("yes")

        assert accepted is True
        assert rig.machine.state is TurnState.PROCESSING
        await rig.machine.join()

    @pytest.mark.asyncio
    async def test_transcript_ignored_while_processing(self, rig, session):
        await rig.machine.start(session)

        assert await rig.machine.on_final_transcript("First question here") is True
        assert await rig.machine.on_final_transcript("Second question here") is False
        await rig.machine.join()

        assert [m.text for m in session.history if m.speaker is Speaker.USER] == ["First question here"]

    @pytest.mark.asyncio
    async def test_transcript_ignored_before_start(self, rig):
        assert await rig.machine.on_final_transcript("Hello there") is False
        assert rig.machine.state is TurnState.STARTING

    @pytest.mark.asyncio
    async def test_capture_stopped_while_processing(self, capture_config, session):
        rig = build_rig(capture_config, client=FakeClient(delay=0.1))
        await rig.machine.start(session)

        await rig.machine.on_final_transcript("Tell me about pricing")

        assert rig.machine.capture_active is False
        assert rig.recognizer.running is False
        await rig.machine.join()


class TestStaleEvents:

    @pytest.mark.asyncio
    async def test_stale_playback_completion_ignored(self, capture_config, session):
        rig = build_rig(capture_config, synthesizer=FakeSynthesizer())
        await rig.machine.start(session)
        await rig.machine.on_final_transcript("Tell me about pricing")
        await wait_for(lambda: rig.machine.state is TurnState.SPEAKING)

        await rig.machine.on_playback_complete(epoch=rig.machine.epoch - 1)

        assert rig.machine.state is TurnState.SPEAKING
        await rig.machine.end()
        await rig.machine.join()

    @pytest.mark.asyncio
    async def test_reply_ignored_outside_processing(self, rig, session):
        await rig.machine.start(session)

        await rig.machine.on_generation_complete(GeneratedReply(text="Out of nowhere"))

        assert rig.machine.state is TurnState.LISTENING
        assert rig.synthesizer.spoken == []

    @pytest.mark.asyncio
    async def test_empty_reply_replaced_by_fallback(self, rig, session):
        await rig.machine.start(session)
        await rig.machine.on_final_transcript("Tell me about pricing")

        await rig.machine.on_generation_complete(GeneratedReply(text="   "))
        await rig.machine.join()

        assert [u.text for u in rig.synthesizer.spoken] == [FALLBACK_TEXT]
        assert session.history[-1].text == FALLBACK_TEXT


class TestFailures:

    @pytest.mark.asyncio
    async def test_generation_failure_speaks_fallback(self, capture_config, session):
        rig = build_rig(capture_config, client=FakeClient(error=GenerationError("HTTP 503")))
        await rig.machine.start(session)

        rig.recognizer.result("Tell me about pricing", is_final=True)
        await rig.machine.join()

        assert [u.text for u in rig.synthesizer.spoken] == [FALLBACK_TEXT]
        assert rig.machine.state is TurnState.LISTENING
        assert rig.machine.last_error is None

    @pytest.mark.asyncio
    async def test_synthesis_failure_returns_to_listening(self, capture_config, session):
        rig = build_rig(capture_config, synthesizer=FakeSynthesizer(fail_with="synthesis-failed"))
        errors = []
        rig.machine.add_error_listener(errors.append)
        await rig.machine.start(session)

        rig.recognizer.result("Tell me about pricing", is_final=True)
        await rig.machine.join()

        assert rig.machine.state is TurnState.LISTENING
        assert isinstance(rig.machine.last_error, SynthesisError)
        assert len(errors) == 1
        assert rig.recognizer.starts == 2

    @pytest.mark.asyncio
    async def test_fatal_capture_error_ends_session(self, rig, session):
        errors = []
        rig.machine.add_error_listener(errors.append)
        await rig.machine.start(session)

        rig.recognizer.error("not-allowed")
        await asyncio.wait_for(rig.machine.wait_ended(), timeout=1.0)

        assert rig.machine.state is TurnState.ENDED
        assert isinstance(rig.machine.last_error, CaptureError)
        assert rig.machine.last_error.code == "not-allowed"
        assert len(errors) == 1
        assert session.session_id in rig.store.ended

    @pytest.mark.asyncio
    async def test_transient_capture_error_keeps_listening(self, rig, session):
        await rig.machine.start(session)

        rig.recognizer.error("no-speech")
        await wait_for(lambda: rig.recognizer.starts == 2)

        assert rig.machine.state is TurnState.LISTENING
        assert rig.machine.last_error is None

    @pytest.mark.asyncio
    async def test_store_failure_does_not_stall_turn(self, capture_config, session):
        store = AsyncMock(spec=SessionStore)
        store.append_messages.side_effect = OSError("connection refused")
        rig = build_rig(capture_config, store=store)
        await rig.machine.start(session)

        rig.recognizer.result("Tell me about pricing", is_final=True)
        await rig.machine.join()

        assert rig.machine.state is TurnState.LISTENING
        assert len(session.history) == 2


    @pytest.mark.asyncio
    async def test_slow_store_does_not_delay_reply(self, capture_config, session):
        store = SlowStore(delay=0.5)
        rig = build_rig(capture_config, synthesizer=FakeSynthesizer(), store=store)
        await rig.machine.start(session)

        rig.recognizer.result("Tell me about pricing", is_final=True)
        await wait_for(lambda: rig.machine.state is TurnState.SPEAKING, timeout=0.3)

        assert store.log == []
        await rig.machine.end()
        await rig.machine.join()

    @pytest.mark.asyncio
    async def test_end_waits_for_queued_writes(self, capture_config, session):
        store = SlowStore(delay=0.05)
        rig = build_rig(capture_config, synthesizer=FakeSynthesizer(), store=store)
        await rig.machine.start(session)
        rig.recognizer.result("Tell me about pricing", is_final=True)
        await wait_for(lambda: rig.machine.state is TurnState.SPEAKING)

        await rig.machine.end()

        assert store.log == ["user", "character", "end"]


class TestEnd:

    @pytest.mark.asyncio
    async def test_end_is_idempotent(self, capture_config, session):
        store = AsyncMock(spec=SessionStore)
        rig = build_rig(capture_config, store=store)
        await rig.machine.start(session)

        await rig.machine.end()
        await rig.machine.end()

        assert rig.machine.state is TurnState.ENDED
        store.end_session.assert_awaited_once_with(session.session_id, summarize_session(0), 0)
        assert rig.transitions.count(TurnState.ENDED) == 1

    @pytest.mark.asyncio
    async def test_end_stops_capture(self, rig, session):
        await rig.machine.start(session)

        await rig.machine.end()

        assert rig.machine.capture_active is False
        assert rig.recognizer.running is False

    @pytest.mark.asyncio
    async def test_end_during_playback_stops_speaker(self, capture_config, session):
        rig = build_rig(capture_config, synthesizer=FakeSynthesizer())
        await rig.machine.start(session)
        rig.recognizer.result("Tell me about pricing", is_final=True)
        await wait_for(lambda: rig.machine.playback_active)

        await rig.machine.end()
        await rig.machine.join()

        assert rig.synthesizer.cancels == 1
        assert rig.machine.playback_active is False
        assert rig.machine.state is TurnState.ENDED
        assert rig.recognizer.starts == 1

    @pytest.mark.asyncio
    async def test_end_during_processing_drops_late_reply(self, capture_config, session):
        rig = build_rig(capture_config, client=FakeClient(delay=0.05))
        await rig.machine.start(session)
        await rig.machine.on_final_transcript("Tell me about pricing")

        await rig.machine.end()
        await rig.machine.join()

        assert rig.machine.state is TurnState.ENDED
        assert rig.synthesizer.spoken == []
        assert [m.speaker for m in session.history] == [Speaker.USER]

    @pytest.mark.asyncio
    async def test_end_during_processing_leaves_no_memory(self, capture_config, session):
        rig = build_rig(capture_config, client=FakeClient(reply="Let me check.", delay=0.05))
        await rig.machine.start(session)
        await rig.machine.on_final_transcript("Tell me about pricing")
        await wait_for(lambda: rig.client.calls)

        await rig.machine.end()
        await rig.machine.join()

        assert rig.client.calls
        assert session.ended is True
        assert session.session_id not in rig.machine.generator._memories

    @pytest.mark.asyncio
    async def test_end_records_summary(self, rig, session):
        await rig.machine.start(session)
        rig.recognizer.result("I would like a discount", is_final=True)
        await rig.machine.join()

        await rig.machine.end(reason="user finished")

        record = rig.store.ended[session.session_id]
        assert record["summary"] == summarize_session(1)
        assert record["duration_minutes"] == 0

    @pytest.mark.asyncio
    async def test_end_before_start(self, rig):
        await rig.machine.end()

        assert rig.machine.state is TurnState.ENDED
        assert rig.store.ended == {}

    @pytest.mark.asyncio
    async def test_start_after_end_rejected(self, rig, session):
        await rig.machine.end()

        with pytest.raises(TurnStateError):
            await rig.machine.start(session)

    @pytest.mark.asyncio
    async def test_end_forgets_context_memory(self, rig, session):
        await rig.machine.start(session)
        rig.recognizer.result("I would like a discount", is_final=True)
        await rig.machine.join()
        generator = rig.machine.generator
        assert len(generator.memory_for(session.session_id)) == 1

        await rig.machine.end()

        assert len(generator.memory_for(session.session_id)) == 0
