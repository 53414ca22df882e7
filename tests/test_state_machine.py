"""
Tests for the call session state machine.
"""

import asyncio

import pytest

from src.dialer.session import CallSession, CallStatus, MessageRole, SessionRegistry
from src.dialer.state_machine import (
    END_MANUAL,
    END_NO_ANSWER,
    NO_RESPONSE_CLOSING,
    TIMEOUT_PROMPTS,
    CallStateMachine,
    InvalidTransition,
    telephony_end_reason,
)


class RecordingHistoryStore:
    def __init__(self):
        self.saved = []

    async def save(self, session):
        self.saved.append(session)
        return None


def drain_events(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def make_machine(**kwargs):
    registry = SessionRegistry()
    session = registry.create()
    history = RecordingHistoryStore()
    params = dict(
        registry=registry,
        history_store=history,
        ring_timeout_seconds=5.0,
        settle_delay_seconds=0.01,
        max_timeout_attempts=3,
        session_grace_seconds=0.01,
    )
    params.update(kwargs)
    machine = CallStateMachine(session, **params)
    return machine, session, registry, history


async def connect(machine):
    machine.start_calling()
    machine.mark_answered()
    machine.confirm_two_way_audio()


class TestTransitions:

    @pytest.mark.asyncio
    async def test_happy_path(self):
        machine, session, _, _ = make_machine()

        machine.start_calling()
        assert session.status == CallStatus.CALLING

        machine.mark_answered()
        assert session.status == CallStatus.CONNECTING

        await asyncio.sleep(0.05)
        assert session.status == CallStatus.CONNECTED

        await machine.end(END_MANUAL)
        assert session.status == CallStatus.ENDED

    @pytest.mark.asyncio
    async def test_two_way_audio_skips_settle_delay(self):
        machine, session, _, _ = make_machine(settle_delay_seconds=10.0)

        machine.start_calling()
        machine.mark_answered()
        machine.confirm_two_way_audio()

        assert session.status == CallStatus.CONNECTED
        await machine.end(END_MANUAL)

    @pytest.mark.asyncio
    async def test_two_way_audio_from_idle(self):
        machine, session, _, _ = make_machine()

        machine.confirm_two_way_audio()

        assert session.status == CallStatus.CONNECTED
        await machine.end(END_MANUAL)

    @pytest.mark.asyncio
    async def test_status_events_are_emitted(self):
        machine, session, _, _ = make_machine()
        subscriber = session.events.subscribe()

        machine.start_calling()
        events = drain_events(subscriber)

        assert events[0].kind == "status"
        assert events[0].payload["status"] == "calling"
        assert events[0].payload["previous"] == "idle"
        assert events[0].payload["ringing"] is True
        await machine.end(END_MANUAL)

    def test_illegal_transition_raises(self):
        machine, session, _, _ = make_machine()

        with pytest.raises(InvalidTransition):
            machine.transition(CallStatus.CONNECTED)
        assert session.status == CallStatus.IDLE

    @pytest.mark.asyncio
    async def test_answered_ignored_outside_calling(self):
        machine, session, _, _ = make_machine()

        machine.mark_answered()

        assert session.status == CallStatus.IDLE

    @pytest.mark.asyncio
    async def test_record_turn_is_self_loop(self):
        machine, session, _, _ = make_machine()
        await connect(machine)
        subscriber = session.events.subscribe()

        machine.record_turn()

        assert session.status == CallStatus.CONNECTED
        assert drain_events(subscriber) == []
        await machine.end(END_MANUAL)

    @pytest.mark.asyncio
    async def test_ring_timeout_ends_call(self):
        machine, session, _, history = make_machine(ring_timeout_seconds=0.01)

        machine.start_calling()
        await asyncio.sleep(0.05)

        assert session.status == CallStatus.ENDED
        assert session.ended_reason == END_NO_ANSWER
        assert history.saved == [session]


class TestTimeoutLadder:

    @pytest.mark.asyncio
    async def test_three_timeouts_end_the_call(self):
        machine, session, _, _ = make_machine()
        await connect(machine)

        first = machine.handle_no_speech()
        second = machine.handle_no_speech()
        third = machine.handle_no_speech()

        assert [first.attempt, second.attempt, third.attempt] == [1, 2, 3]
        assert session.timeout_attempts == 3
        assert first.prompt == TIMEOUT_PROMPTS[0]
        assert second.prompt == TIMEOUT_PROMPTS[1]
        assert not first.should_end and not second.should_end
        assert third.should_end
        assert third.prompt == NO_RESPONSE_CLOSING
        await machine.end("no_response")

    @pytest.mark.asyncio
    async def test_speech_resets_counter(self):
        machine, session, _, _ = make_machine()
        await connect(machine)

        machine.handle_no_speech()
        machine.handle_no_speech()
        machine.record_speech()

        assert session.timeout_attempts == 0
        outcome = machine.handle_no_speech()
        assert outcome.attempt == 1
        assert not outcome.should_end
        await machine.end(END_MANUAL)

    def test_timeouts_not_counted_before_connected(self):
        machine, session, _, _ = make_machine()

        assert machine.handle_no_speech() is None
        assert session.timeout_attempts == 0


class TestEnd:

    @pytest.mark.asyncio
    async def test_end_is_idempotent(self):
        machine, session, _, history = make_machine()
        await connect(machine)

        assert await machine.end(END_MANUAL) is True
        assert await machine.end("telephony_completed") is False

        assert session.ended_reason == END_MANUAL
        assert len(history.saved) == 1

    @pytest.mark.asyncio
    async def test_end_runs_hooks_and_emits_completed(self):
        machine, session, _, _ = make_machine()
        calls = []

        async def hook(s, reason):
            calls.append((s.id, reason))

        async def broken_hook(s, reason):
            raise RuntimeError("boom")

        machine.add_cleanup_hook(broken_hook)
        machine.add_cleanup_hook(hook)
        await connect(machine)
        subscriber = session.events.subscribe()

        await machine.end(END_MANUAL)

        assert calls == [(session.id, END_MANUAL)]
        events = drain_events(subscriber)
        assert [e.kind for e in events] == ["status", "completed"]
        assert events[1].payload["reason"] == END_MANUAL
        assert events[1].payload["order"]["products"] == []

    @pytest.mark.asyncio
    async def test_history_failure_does_not_block_end(self):
        class BrokenStore:
            async def save(self, session):
                raise OSError("disk full")

        machine, session, _, _ = make_machine(history_store=BrokenStore())
        await connect(machine)

        assert await machine.end(END_MANUAL) is True
        assert session.is_ended

    @pytest.mark.asyncio
    async def test_session_evicted_after_grace(self):
        machine, session, registry, _ = make_machine()
        await connect(machine)

        await machine.end(END_MANUAL)
        assert session.id in registry

        await asyncio.sleep(0.05)
        assert session.id not in registry
        assert registry.find(session.id) is None

    @pytest.mark.asyncio
    async def test_wait_ended(self):
        machine, session, _, _ = make_machine()
        await connect(machine)

        waiter = asyncio.create_task(machine.wait_ended())
        await asyncio.sleep(0)
        assert not waiter.done()

        await machine.end(END_MANUAL)
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_transcript_survives_end(self):
        machine, session, _, history = make_machine()
        await connect(machine)
        session.append_message(MessageRole.USER, "hello")

        await machine.end(END_MANUAL)

        assert history.saved[0].transcript[0].content == "hello"


def test_telephony_end_reason():
    assert telephony_end_reason("no-answer") == "telephony_no_answer"
    assert telephony_end_reason("completed") == "telephony_completed"
