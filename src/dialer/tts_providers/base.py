from __future__ import annotations

from abc import ABC, abstractmethod

from src.dialer.tts_types import VoiceOptions


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(self, text: str, options: VoiceOptions) -> bytes:
        """Return Twilio-ready mu-law 8kHz audio for `text`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
