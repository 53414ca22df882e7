"""
Audio conversion utilities for the dialer.

Twilio media streams carry 8-bit mu-law at 8kHz in both directions.
- Inbound: mu-law -> linear PCM 16-bit (little-endian) for Deepgram (encoding=linear16)
- Outbound: TTS PCM (24kHz) -> resample to 8kHz -> mu-law -> 20ms frames

All conversions are table/vector based on numpy.
"""

from typing import Generator, Iterable, Union

import numpy as np

TWILIO_SAMPLE_RATE = 8000
STT_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = 0xFF

_ULAW_BIAS = 0x84
_ULAW_CLIP = 32635

AudioInput = Union[bytes, bytearray, memoryview, Iterable[int]]


class AudioFormatError(ValueError):
    """Base class for malformed audio input."""
    pass


class EmptyInput(AudioFormatError):
    """Raised when there is no audio to convert."""

    def __init__(self, message: str = "Audio input is empty"):
        super().__init__(message)


class InvalidAudioFormat(AudioFormatError):
    """Raised when an input sample is not an 8-bit value."""

    def __init__(self, index: int, value: object):
        self.index = index
        self.value = value
        super().__init__(f"Invalid mu-law sample at index {index}: {value!r}")


def _expand_ulaw(codes: np.ndarray) -> np.ndarray:
    inverted = ~codes.astype(np.int32) & 0xFF
    exponent = (inverted >> 4) & 0x07
    mantissa = inverted & 0x0F
    magnitude = (((mantissa << 3) + _ULAW_BIAS) << exponent) - _ULAW_BIAS
    return np.where(inverted & 0x80, -magnitude, magnitude).astype(np.int16)


# Canonical layout: [0..127] runs 32124 down to 0, [128..255] runs -32124 down to 0.
# Byte b lives at position (b + 128) mod 256.
ULAW_TABLE = _expand_ulaw((np.arange(256) + 128) & 0xFF)
ULAW_TABLE.setflags(write=False)


def _as_codes(data: AudioInput) -> np.ndarray:
    if isinstance(data, (bytes, bytearray, memoryview)):
        if len(data) == 0:
            raise EmptyInput()
        return np.frombuffer(bytes(data), dtype=np.uint8)

    values = list(data)
    if not values:
        raise EmptyInput()
    for index, value in enumerate(values):
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
            raise InvalidAudioFormat(index, value)
        if value < 0 or value > 255:
            raise InvalidAudioFormat(index, value)
    return np.asarray(values, dtype=np.uint8)


def transcode(data: AudioInput) -> bytes:
    """
    Convert 8-bit mu-law samples to 16-bit little-endian linear PCM.

    Args:
        data: mu-law bytes, or any sequence of ints in [0, 255]

    Returns:
        PCM bytes, exactly twice the input length

    Raises:
        EmptyInput: If there are no samples
        InvalidAudioFormat: If a sample is not an integer in [0, 255]
    """
    codes = _as_codes(data)
    samples = ULAW_TABLE[(codes.astype(np.int32) + 128) & 0xFF]
    return samples.astype("<i2").tobytes()


def linear16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit (little-endian) to mu-law.

    Args:
        pcm_bytes: Linear PCM 16-bit bytes

    Returns:
        Mu-law encoded bytes
    """
    if not pcm_bytes:
        return b""

    if len(pcm_bytes) % 2:
        pcm_bytes = pcm_bytes[:-1]
    samples = np.frombuffer(pcm_bytes, dtype="<i2").astype(np.int32)

    sign = np.where(samples < 0, 0x80, 0x00)
    biased = np.minimum(np.abs(samples), _ULAW_CLIP) + _ULAW_BIAS
    exponent = np.clip(np.floor(np.log2(biased)).astype(np.int32) - 7, 0, 7)
    mantissa = (biased >> (exponent + 3)) & 0x0F
    codes = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return codes.astype(np.uint8).tobytes()


def resample_pcm16(pcm_bytes: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Resample mono 16-bit PCM from `source_rate` to `target_rate` (linear interpolation).
    """
    if not pcm_bytes or source_rate == target_rate:
        return pcm_bytes

    samples = np.frombuffer(pcm_bytes[: len(pcm_bytes) - len(pcm_bytes) % 2], dtype="<i2")
    if samples.size == 0:
        return b""

    out_count = max(1, int(round(samples.size * target_rate / source_rate)))
    src_t = np.arange(samples.size) / float(source_rate)
    dst_t = np.arange(out_count) / float(target_rate)
    resampled = np.interp(dst_t, src_t, samples.astype(np.float64))
    return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


def tts_pcm_to_twilio_ulaw(pcm_bytes: bytes, source_rate: int = TWILIO_SAMPLE_RATE) -> bytes:
    """
    Convert TTS PCM output to Twilio mu-law format.

    Args:
        pcm_bytes: PCM 16-bit bytes from TTS
        source_rate: TTS output sample rate

    Returns:
        Mu-law bytes at 8kHz for Twilio
    """
    if not pcm_bytes:
        return b""
    pcm_8k = resample_pcm16(pcm_bytes, source_rate, TWILIO_SAMPLE_RATE)
    return linear16_to_ulaw(pcm_8k)


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    For Twilio, we want 20ms frames = 160 bytes of mu-law at 8kHz.

    Args:
        audio_bytes: Raw audio bytes
        chunk_size: Size of each chunk in bytes (default: 160 for 20ms mu-law)

    Yields:
        Audio chunks of the specified size
    """
    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        # Pad the last chunk with mu-law silence
        if len(chunk) < chunk_size:
            chunk = chunk + bytes([ULAW_SILENCE]) * (chunk_size - len(chunk))
        yield chunk

