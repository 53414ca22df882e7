from __future__ import annotations

import time
from typing import Any, Optional

import structlog

from src.dialer.config import get_config
from src.dialer.tts_providers.base import TTSProvider
from src.dialer.tts_providers.openai_tts import OpenAITTS
from src.dialer.tts_types import SynthesisError, VoiceOptions

logger = structlog.get_logger(__name__)


class Synthesizer:
    """
    Speech synthesis capability used by the orchestrator.

    Wraps a provider and guarantees that failures surface as SynthesisError.
    """

    def __init__(self, provider: Optional[TTSProvider] = None, config: Optional[Any] = None):
        self.config = config or get_config()
        self._provider = provider

    @property
    def provider(self) -> TTSProvider:
        if self._provider is None:
            self._provider = OpenAITTS(self.config)
        return self._provider

    def default_options(self) -> VoiceOptions:
        return VoiceOptions.from_config(self.config)

    async def synthesize(self, text: str, options: Optional[VoiceOptions] = None) -> bytes:
        """
        Synthesize one phrase.

        Returns:
            mu-law 8kHz audio

        Raises:
            SynthesisError: If the provider fails or returns nothing
        """
        options = options or self.default_options()
        start = time.perf_counter()
        try:
            audio = await self.provider.synthesize(text, options)
        except SynthesisError:
            raise
        except Exception as e:
            raise SynthesisError(str(e)) from e

        if not audio:
            raise SynthesisError(f"No audio for phrase: {text[:40]!r}")

        logger.debug(
            "Phrase synthesized",
            chars=len(text),
            audio_bytes=len(audio),
            latency_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        return audio

    async def close(self) -> None:
        if self._provider:
            await self._provider.close()
