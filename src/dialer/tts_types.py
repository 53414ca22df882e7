from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any, Optional

_PERCENT_RE = re.compile(r"^\s*([+-]?\d+(?:\.\d+)?)\s*%\s*$")


class SynthesisError(Exception):
    """Raised when a phrase could not be turned into audio."""
    pass


@dataclass(frozen=True)
class VoiceOptions:
    """
    Prosody settings for synthesized speech.

    `rate` and `pitch` are relative percentages ("0%", "+5%", "-10%").
    """

    rate: str = "0%"
    pitch: str = "+5%"
    volume: str = "medium"
    style: str = "conversation"
    voice: Optional[str] = None

    @classmethod
    def from_config(cls, config: Any) -> "VoiceOptions":
        return cls(
            rate=config.tts_rate,
            pitch=config.tts_pitch,
            volume=config.tts_volume,
            style=config.tts_style,
            voice=config.openai_tts_voice,
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def speed(self) -> float:
        """Playback speed multiplier derived from `rate`."""
        return max(0.25, min(4.0, 1.0 + parse_percent(self.rate) / 100.0))


def parse_percent(value: str) -> float:
    match = _PERCENT_RE.match(value or "")
    return float(match.group(1)) if match else 0.0
