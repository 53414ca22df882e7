"""
Twilio call signaling (REST) and TwiML documents.

The REST client is synchronous, so every call runs in a worker thread.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.dialer.config import get_config

logger = structlog.get_logger(__name__)

FALLBACK_VOICE = "alice"
STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TelephonyError(Exception):
    """Raised when the telephony provider rejects a request."""
    pass


def build_stream_twiml(stream_url: str, call_id: str, say_first: Optional[str] = None) -> str:
    """
    TwiML that (optionally speaks, then) connects the call to our media stream.

    Args:
        stream_url: wss:// URL of the media-stream endpoint
        call_id: Session id, handed back in the stream's start event
        say_first: Text spoken with the built-in voice before connecting
    """
    response = VoiceResponse()
    if say_first:
        response.say(say_first, voice=FALLBACK_VOICE)
    connect = Connect()
    stream = connect.stream(url=stream_url)
    stream.parameter(name="callId", value=call_id)
    response.append(connect)
    return str(response)


def build_hangup_twiml(say_first: Optional[str] = None) -> str:
    response = VoiceResponse()
    if say_first:
        response.say(say_first, voice=FALLBACK_VOICE)
    response.hangup()
    return str(response)


class Telephony(ABC):
    """Call signaling capability."""

    @abstractmethod
    async def place_call(self, to_number: str, webhook_url: str, status_callback_url: str) -> str:
        """Start an outbound call. Returns the provider call handle."""
        ...

    @abstractmethod
    async def hangup(self, call_sid: str) -> None:
        ...

    @abstractmethod
    async def say_built_in(self, call_sid: str, text: str, stream_url: str, call_id: str) -> None:
        """Speak `text` with the provider's voice, then resume the media stream."""
        ...


class TwilioTelephony(Telephony):
    """Twilio REST implementation."""

    def __init__(self, config: Optional[Any] = None, client: Optional[TwilioClient] = None):
        self.config = config or get_config()
        self._client = client

    @property
    def client(self) -> TwilioClient:
        if self._client is None:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def place_call(self, to_number: str, webhook_url: str, status_callback_url: str) -> str:
        def _create() -> str:
            call = self.client.calls.create(
                to=to_number,
                from_=self.config.twilio_phone_number,
                url=webhook_url,
                method="POST",
                status_callback=status_callback_url,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                timeout=self.config.ring_timeout_seconds,
            )
            return call.sid

        try:
            call_sid = await asyncio.to_thread(_create)
        except Exception as e:
            logger.error("Failed to place call", to=to_number, error=str(e))
            raise TelephonyError(str(e)) from e

        logger.info("Outbound call placed", to=to_number, call_sid=call_sid)
        return call_sid

    async def hangup(self, call_sid: str) -> None:
        if not call_sid:
            logger.warning("Cannot hang up - missing call_sid")
            return
        try:
            await asyncio.to_thread(lambda: self.client.calls(call_sid).update(status="completed"))
        except Exception as e:
            raise TelephonyError(str(e)) from e
        logger.info("Call hung up", call_sid=call_sid)

    async def say_built_in(self, call_sid: str, text: str, stream_url: str, call_id: str) -> None:
        twiml = build_stream_twiml(stream_url, call_id, say_first=text)
        try:
            await asyncio.to_thread(lambda: self.client.calls(call_sid).update(twiml=twiml))
        except Exception as e:
            raise TelephonyError(str(e)) from e
        logger.info("Built-in voice fallback spoken", call_sid=call_sid, chars=len(text))


_telephony: Optional[TwilioTelephony] = None


def get_telephony() -> TwilioTelephony:
    global _telephony
    if _telephony is None:
        _telephony = TwilioTelephony()
    return _telephony
