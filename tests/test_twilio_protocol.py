"""
Tests for Twilio protocol handling and the media-stream call leg.
"""

import asyncio
import base64
import json

import pytest

from src.dialer.call_leg import TwilioMediaLeg
from src.dialer.twilio_protocol import (
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    StreamState,
    parse_twilio_message,
    create_media_message,
    create_mark_message,
    create_clear_message,
    TwilioProtocolHandler,
)


def started_handler(call_id: str = "call_abc") -> TwilioProtocolHandler:
    handler = TwilioProtocolHandler()
    handler.handle_start(TwilioStartEvent(
        stream_sid="MZ123",
        call_sid="CA456",
        account_sid="AC789",
        tracks=["inbound"],
        custom_parameters={"callId": call_id},
    ))
    return handler


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        event_type, _ = parse_twilio_message(json.dumps({"event": "connected", "protocol": "Call"}))

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self, twilio_start_message):
        event_type, event = parse_twilio_message(twilio_start_message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123456"
        assert event.call_sid == "CA789012"
        assert event.account_sid == "AC345678"
        assert event.tracks == ["inbound"]
        assert event.call_id == "call_abc"

    def test_start_event_without_call_id(self):
        message = json.dumps({"event": "start", "streamSid": "MZ1", "start": {"callSid": "CA1"}})

        _, event = parse_twilio_message(message)

        assert event.call_id == ""

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        event_type, event = parse_twilio_message(twilio_media_message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == sample_ulaw_audio

    def test_media_with_bad_base64_has_empty_payload(self):
        message = json.dumps({"event": "media", "streamSid": "MZ1", "media": {"payload": "!!not-base64!!"}})

        _, event = parse_twilio_message(message)

        assert event.payload == b""

    def test_parse_mark_event(self):
        message = json.dumps({"event": "mark", "streamSid": "MZ123", "mark": {"name": "g0_m1"}})

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "g0_m1"

    def test_parse_stop_event(self, twilio_stop_message):
        event_type, _ = parse_twilio_message(twilio_stop_message)

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid Twilio message"):
            parse_twilio_message("not valid json")

    def test_parse_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(json.dumps({"event": "unknown_event"}))


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self):
        audio_data = b"\xff" * 160
        parsed = json.loads(create_media_message("MZ123", audio_data))

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_mark_message(self):
        parsed = json.loads(create_mark_message("MZ123", "g0_m42"))

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "g0_m42"}}

    def test_create_clear_message(self):
        parsed = json.loads(create_clear_message("MZ123"))

        assert parsed == {"event": "clear", "streamSid": "MZ123"}


class TestProtocolHandler:
    """Tests for TwilioProtocolHandler."""

    def test_handler_initial_state(self):
        handler = TwilioProtocolHandler()

        assert handler.stream_sid == ""
        assert handler.call_sid == ""
        assert handler.is_active is False
        assert handler.has_pending_marks is False

    def test_handle_start_records_call_id(self):
        handler = started_handler("call_xyz")

        assert handler.stream_sid == "MZ123"
        assert handler.call_sid == "CA456"
        assert handler.state.call_id == "call_xyz"
        assert handler.is_active

    def test_handle_stop(self):
        handler = started_handler()
        handler.create_mark()

        handler.handle_stop()

        assert handler.is_active is False
        assert handler.has_pending_marks is False

    def test_create_audio_messages_chunks_20ms_frames(self):
        handler = started_handler()

        messages = handler.create_audio_messages(b"\xff" * 320)

        assert len(messages) == 2
        assert all(json.loads(m)["streamSid"] == "MZ123" for m in messages)

    def test_marks_are_numbered_per_generation(self):
        handler = started_handler()

        first = json.loads(handler.create_mark())["mark"]["name"]
        second = json.loads(handler.create_mark())["mark"]["name"]
        handler.create_clear()
        third = json.loads(handler.create_mark())["mark"]["name"]

        assert (first, second, third) == ("g0_m1", "g0_m2", "g1_m1")

    def test_mark_ack_clears_pending(self):
        handler = started_handler()
        name = json.loads(handler.create_mark())["mark"]["name"]

        rtt = handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name=name))

        assert rtt >= 0
        assert not handler.has_pending_marks

    def test_stale_mark_is_ignored(self):
        handler = started_handler()
        handler.create_mark()
        handler.create_clear()
        handler.create_mark()

        assert handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="g0_m1")) == 0.0
        assert handler.has_pending_marks

    def test_no_messages_when_not_started(self):
        handler = TwilioProtocolHandler()

        assert handler.create_audio_messages(b"\xff" * 160) == []
        assert handler.create_mark() == ""
        assert handler.create_clear() == ""

    def test_stream_state_rtt_average(self):
        state = StreamState(mark_rtt_samples=[10.0, 20.0])

        assert state.avg_mark_rtt_ms == 15.0


class FakeTelephony:
    def __init__(self):
        self.spoken = []
        self.hung_up = []

    async def place_call(self, to_number, webhook_url, status_callback_url):
        return "CA456"

    async def hangup(self, call_sid):
        self.hung_up.append(call_sid)

    async def say_built_in(self, call_sid, text, stream_url, call_id):
        self.spoken.append((call_sid, text, stream_url, call_id))


class TestTwilioMediaLeg:

    def make_leg(self):
        sent = []

        async def send(message: str) -> None:
            sent.append(json.loads(message))

        telephony = FakeTelephony()
        leg = TwilioMediaLeg(send, started_handler(), telephony, "wss://test.ngrok.io/ws")
        return leg, sent, telephony

    @pytest.mark.asyncio
    async def test_send_audio_is_followed_by_mark(self):
        leg, sent, _ = self.make_leg()

        await leg.send_audio(b"\xff" * 200)

        assert [m["event"] for m in sent] == ["media", "media", "mark"]
        assert leg.is_playing

    @pytest.mark.asyncio
    async def test_playback_finishes_when_marks_acknowledged(self):
        leg, sent, _ = self.make_leg()
        await leg.send_audio(b"\xff" * 160)
        mark_name = sent[-1]["mark"]["name"]

        waiter = asyncio.create_task(leg.wait_for_playback(timeout=1.0))
        await asyncio.sleep(0)
        assert not waiter.done()

        leg.on_mark(TwilioMarkEvent(stream_sid="MZ123", name=mark_name))

        assert await waiter is True
        assert not leg.is_playing

    @pytest.mark.asyncio
    async def test_wait_for_playback_times_out(self):
        leg, _, _ = self.make_leg()
        await leg.send_audio(b"\xff" * 160)

        assert await leg.wait_for_playback(timeout=0.01) is False

    @pytest.mark.asyncio
    async def test_clear_sends_clear_and_stops_playback(self):
        leg, sent, _ = self.make_leg()
        await leg.send_audio(b"\xff" * 160)

        await leg.clear()

        assert sent[-1]["event"] == "clear"
        assert not leg.is_playing

    @pytest.mark.asyncio
    async def test_no_audio_after_stop(self):
        leg, sent, _ = self.make_leg()
        leg.on_stop()

        await leg.send_audio(b"\xff" * 160)

        assert sent == []
        assert not leg.is_playing

    @pytest.mark.asyncio
    async def test_say_built_in_and_hangup_use_telephony(self):
        leg, _, telephony = self.make_leg()

        await leg.say_built_in("Hello there")
        await leg.hangup()

        assert telephony.spoken == [("CA456", "Hello there", "wss://test.ngrok.io/ws", "call_abc")]
        assert telephony.hung_up == ["CA456"]
