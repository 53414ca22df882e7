"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and our custom parameters (callId)
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (barge-in)
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

from src.dialer.audio import TWILIO_FRAME_SIZE, chunk_audio

logger = structlog.get_logger(__name__)

encoder = msgspec.json.Encoder()

MAX_RTT_SAMPLES = 20


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


class StartInfo(msgspec.Struct, rename="camel"):
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = msgspec.field(default_factory=list)
    custom_parameters: Dict[str, str] = msgspec.field(default_factory=dict)


class MediaInfo(msgspec.Struct):
    track: str = "inbound"
    chunk: Union[int, str] = 0
    timestamp: Union[int, str] = ""
    payload: str = ""


class MarkInfo(msgspec.Struct):
    name: str = ""


class DtmfInfo(msgspec.Struct):
    digit: str = ""


class TwilioMessage(msgspec.Struct, rename="camel"):
    """Envelope of every inbound Twilio message; unknown fields are ignored."""
    event: str
    stream_sid: str = ""
    start: Optional[StartInfo] = None
    media: Optional[MediaInfo] = None
    mark: Optional[MarkInfo] = None
    dtmf: Optional[DtmfInfo] = None


_decoder = msgspec.json.Decoder(TwilioMessage)


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, str] = field(default_factory=dict)

    @property
    def call_id(self) -> str:
        """Our session id, passed through <Stream><Parameter name="callId">."""
        return self.custom_parameters.get("callId", "")


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str


def _to_event(message: TwilioMessage, event_type: TwilioEventType) -> Any:
    if event_type == TwilioEventType.START:
        start = message.start or StartInfo()
        return TwilioStartEvent(
            stream_sid=message.stream_sid,
            call_sid=start.call_sid,
            account_sid=start.account_sid,
            tracks=list(start.tracks),
            custom_parameters=dict(start.custom_parameters),
        )
    if event_type == TwilioEventType.MEDIA:
        media = message.media or MediaInfo()
        try:
            payload = base64.b64decode(media.payload, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Dropping media frame with invalid base64", stream_sid=message.stream_sid)
            payload = b""
        try:
            chunk = int(media.chunk)
        except ValueError:
            chunk = 0
        return TwilioMediaEvent(
            stream_sid=message.stream_sid,
            track=media.track,
            chunk=chunk,
            timestamp=str(media.timestamp),
            payload=payload,
        )
    if event_type == TwilioEventType.MARK:
        return TwilioMarkEvent(
            stream_sid=message.stream_sid,
            name=(message.mark or MarkInfo()).name,
        )
    return message


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If the message cannot be parsed or the event is unknown
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        message = _decoder.decode(data)
    except msgspec.DecodeError as e:
        logger.error("Failed to parse Twilio message", error=str(e))
        raise ValueError(f"Invalid Twilio message: {e}") from e

    try:
        event_type = TwilioEventType(message.event)
    except ValueError:
        logger.warning("Unknown Twilio event type", event_type=message.event)
        raise ValueError(f"Unknown event type: {message.event}") from None

    return event_type, _to_event(message, event_type)


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("ascii")},
    }
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """Create a Twilio mark message (acknowledged once preceding audio has played)."""
    message = {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Create a Twilio clear message (drops audio buffered on Twilio's side)."""
    message = {"event": "clear", "streamSid": stream_sid}
    return encoder.encode(message).decode("utf-8")


@dataclass
class StreamState:
    """State for an active Twilio media stream."""
    stream_sid: str = ""
    call_sid: str = ""
    call_id: str = ""
    is_active: bool = True
    playback_generation_id: int = 0
    mark_sequence: int = 0
    pending_marks: Dict[str, float] = field(default_factory=dict)  # mark_name -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)

    @property
    def avg_mark_rtt_ms(self) -> float:
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)


class TwilioProtocolHandler:
    """
    Tracks stream state and builds outbound messages.

    Marks are named `g{generation}_m{sequence}`; a clear bumps the generation
    so acknowledgments for discarded audio are ignored.
    """

    def __init__(self):
        self.state: Optional[StreamState] = None

    @property
    def stream_sid(self) -> str:
        return self.state.stream_sid if self.state else ""

    @property
    def call_sid(self) -> str:
        return self.state.call_sid if self.state else ""

    @property
    def is_active(self) -> bool:
        return self.state is not None and self.state.is_active

    @property
    def has_pending_marks(self) -> bool:
        return bool(self.state and self.state.pending_marks)

    def handle_start(self, event: TwilioStartEvent) -> None:
        self.state = StreamState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            call_id=event.call_id,
        )
        logger.info(
            "Media stream started",
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            call_id=event.call_id,
        )

    def handle_stop(self) -> None:
        if self.state:
            self.state.is_active = False
            self.state.pending_marks.clear()
            logger.info("Media stream stopped", stream_sid=self.state.stream_sid)

    def handle_mark(self, event: TwilioMarkEvent) -> float:
        """
        Record a mark acknowledgment.

        Returns:
            Round-trip time in ms, or 0 for unknown/stale marks
        """
        if not self.state:
            return 0.0

        generation = self._parse_mark_generation(event.name)
        if generation is not None and generation != self.state.playback_generation_id:
            logger.debug("Ignoring stale mark acknowledgment", mark_name=event.name)
            return 0.0

        send_time = self.state.pending_marks.pop(event.name, None)
        if send_time is None:
            return 0.0

        rtt_ms = (time.time() - send_time) * 1000
        self.state.mark_rtt_samples.append(rtt_ms)
        if len(self.state.mark_rtt_samples) > MAX_RTT_SAMPLES:
            self.state.mark_rtt_samples.pop(0)
        return rtt_ms

    def create_audio_messages(self, audio_bytes: bytes) -> List[str]:
        """Chunk mu-law audio into 20ms media messages."""
        if not self.state:
            return []
        return [
            create_media_message(self.state.stream_sid, chunk)
            for chunk in chunk_audio(audio_bytes, TWILIO_FRAME_SIZE)
        ]

    def create_mark(self) -> str:
        """Create the next mark message and remember when it was sent."""
        if not self.state:
            return ""
        self.state.mark_sequence += 1
        name = f"g{self.state.playback_generation_id}_m{self.state.mark_sequence}"
        self.state.pending_marks[name] = time.time()
        return create_mark_message(self.state.stream_sid, name)

    def create_clear(self) -> str:
        """
        Create a clear message and start a new playback generation.
        """
        if not self.state:
            return ""
        self.state.playback_generation_id += 1
        self.state.mark_sequence = 0
        self.state.pending_marks.clear()
        logger.info(
            "Clearing Twilio audio buffer",
            stream_sid=self.state.stream_sid,
            playback_generation_id=self.state.playback_generation_id,
        )
        return create_clear_message(self.state.stream_sid)

    @staticmethod
    def _parse_mark_generation(mark_name: str) -> Optional[int]:
        if not mark_name.startswith("g"):
            return None
        try:
            return int(mark_name.split("_", 1)[0][1:])
        except ValueError:
            return None
