"""
Audio leg of a call: where synthesized audio goes and how playback is tracked.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import structlog

from src.dialer.telephony import Telephony
from src.dialer.twilio_protocol import TwilioMarkEvent, TwilioProtocolHandler

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]


class CallLeg(ABC):
    """Outbound audio path to the callee."""

    @property
    @abstractmethod
    def is_playing(self) -> bool:
        """True while sent audio has not finished playing."""
        ...

    @abstractmethod
    async def send_audio(self, ulaw: bytes) -> None:
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Drop audio queued for playback (barge-in)."""
        ...

    @abstractmethod
    async def wait_for_playback(self, timeout: Optional[float] = None) -> bool:
        """Wait until sent audio has played. Returns False on timeout."""
        ...

    @abstractmethod
    async def say_built_in(self, text: str) -> None:
        """Speak text with the provider's built-in voice (degraded path)."""
        ...

    @abstractmethod
    async def hangup(self) -> None:
        ...


class TwilioMediaLeg(CallLeg):
    """
    Twilio Media Streams leg.

    Every audio send is followed by a mark; playback is finished once all
    marks of the current generation have been acknowledged.
    """

    def __init__(
        self,
        send_message: SendMessage,
        protocol: TwilioProtocolHandler,
        telephony: Telephony,
        stream_url: str,
    ):
        self._send = send_message
        self.protocol = protocol
        self.telephony = telephony
        self.stream_url = stream_url
        self._played = asyncio.Event()
        self._played.set()

    @property
    def is_playing(self) -> bool:
        return not self._played.is_set()

    @property
    def call_sid(self) -> str:
        return self.protocol.call_sid

    async def send_audio(self, ulaw: bytes) -> None:
        if not ulaw or not self.protocol.is_active:
            return
        self._played.clear()
        for message in self.protocol.create_audio_messages(ulaw):
            await self._send(message)
        await self._send(self.protocol.create_mark())

    def on_mark(self, event: TwilioMarkEvent) -> None:
        rtt_ms = self.protocol.handle_mark(event)
        if rtt_ms:
            logger.debug("Mark acknowledged", mark_name=event.name, rtt_ms=round(rtt_ms, 2))
        if not self.protocol.has_pending_marks:
            self._played.set()

    def on_stop(self) -> None:
        self.protocol.handle_stop()
        self._played.set()

    async def clear(self) -> None:
        if not self.protocol.is_active:
            return
        message = self.protocol.create_clear()
        if message:
            await self._send(message)
        self._played.set()

    async def wait_for_playback(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._played.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for playback", call_sid=self.call_sid, timeout_s=timeout)
            return False

    async def say_built_in(self, text: str) -> None:
        state = self.protocol.state
        call_id = state.call_id if state else ""
        await self.telephony.say_built_in(self.call_sid, text, self.stream_url, call_id)

    async def hangup(self) -> None:
        await self.telephony.hangup(self.call_sid)
