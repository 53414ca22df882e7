from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from src.dialer.audio import tts_pcm_to_twilio_ulaw
from src.dialer.config import get_config
from src.dialer.tts_providers.base import TTSProvider
from src.dialer.tts_types import SynthesisError, VoiceOptions, parse_percent

logger = structlog.get_logger(__name__)

# response_format="pcm" is raw 16-bit little-endian mono at 24kHz
OPENAI_PCM_SAMPLE_RATE = 24000


def voice_instructions(options: VoiceOptions) -> str:
    """Describe pitch, volume and style in words for the speech model."""
    parts = [f"Speak in a warm, natural {options.style} style, like a friendly sales rep on the phone."]
    pitch = parse_percent(options.pitch)
    if pitch > 0:
        parts.append("Use a slightly brighter, higher pitch.")
    elif pitch < 0:
        parts.append("Use a slightly deeper, lower pitch.")
    if options.volume and options.volume != "medium":
        parts.append(f"Keep the volume {options.volume}.")
    return " ".join(parts)


class OpenAITTS(TTSProvider):
    """
    OpenAI Text-to-Speech provider (non-streaming).

    Synthesizes a full phrase as 24kHz PCM and converts it to Twilio mu-law.
    """

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI  # Local import to keep module import light

            self._client = OpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def _generate_pcm(self, text: str, options: VoiceOptions) -> bytes:
        client = self._get_client()

        def _call() -> bytes:
            resp = client.audio.speech.create(
                model=self.config.openai_tts_model,
                voice=options.voice or self.config.openai_tts_voice,
                input=text,
                instructions=voice_instructions(options),
                speed=options.speed,
                response_format="pcm",
            )
            data = getattr(resp, "content", None)
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            return resp.read()

        return await asyncio.to_thread(_call)

    async def synthesize(self, text: str, options: VoiceOptions) -> bytes:
        if not text or not text.strip():
            return b""

        try:
            pcm = await self._generate_pcm(text, options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("OpenAI TTS failed", error=str(e), text=text[:40])
            raise SynthesisError(str(e)) from e

        if not pcm:
            raise SynthesisError("OpenAI TTS returned no audio")
        return tts_pcm_to_twilio_ulaw(pcm, OPENAI_PCM_SAMPLE_RATE)
