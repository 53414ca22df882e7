"""
Tests for audio conversion utilities.
"""

import pytest
import numpy as np

from src.dialer.audio import (
    ULAW_TABLE,
    EmptyInput,
    InvalidAudioFormat,
    transcode,
    linear16_to_ulaw,
    resample_pcm16,
    tts_pcm_to_twilio_ulaw,
    chunk_audio,
    TWILIO_FRAME_SIZE,
    TWILIO_SAMPLE_RATE,
)


class TestTranscode:
    """Tests for the mu-law to PCM16 transcoder."""

    def test_every_byte_maps_to_table_entry(self):
        """Each mu-law byte decodes to the table value at (b + 128) mod 256."""
        for b in range(256):
            result = transcode([b])
            assert len(result) == 2
            value = int.from_bytes(result, "little", signed=True)
            assert value == int(ULAW_TABLE[(b + 128) % 256])

    def test_output_is_twice_input_length(self):
        data = bytes(range(256)) * 3
        assert len(transcode(data)) == 2 * len(data)

    def test_known_values(self):
        assert int.from_bytes(transcode(b"\x00"), "little", signed=True) == -32124
        assert int.from_bytes(transcode(b"\x80"), "little", signed=True) == 32124
        assert transcode(b"\xff") == b"\x00\x00"

    def test_table_layout(self):
        assert ULAW_TABLE[0] == 32124
        assert ULAW_TABLE[127] == 0
        assert ULAW_TABLE[128] == -32124
        assert ULAW_TABLE[255] == 0

    def test_table_is_read_only(self):
        with pytest.raises(ValueError):
            ULAW_TABLE[0] = 1

    def test_accepts_int_sequences(self):
        assert transcode([0xFF, 0xFF]) == transcode(b"\xff\xff")

    def test_empty_bytes_raise(self):
        with pytest.raises(EmptyInput):
            transcode(b"")

    def test_empty_list_raises(self):
        with pytest.raises(EmptyInput):
            transcode([])

    def test_out_of_range_sample_raises(self):
        with pytest.raises(InvalidAudioFormat) as exc_info:
            transcode([0, 12, 256])
        assert exc_info.value.index == 2
        assert exc_info.value.value == 256

    def test_negative_sample_raises(self):
        with pytest.raises(InvalidAudioFormat):
            transcode([-1])

    def test_non_integer_sample_raises(self):
        with pytest.raises(InvalidAudioFormat):
            transcode([1.5])

    def test_bool_sample_raises(self):
        with pytest.raises(InvalidAudioFormat):
            transcode([True])

    def test_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            transcode(b"")


class TestUlawConversion:
    """Tests for mu-law conversion."""

    def test_ulaw_silence_decodes_near_zero(self):
        result = transcode(b"\xff" * 100)

        assert len(result) == 200
        samples = np.frombuffer(result, dtype=np.int16)
        assert np.abs(samples).max() < 10

    def test_linear16_to_ulaw_empty(self):
        assert linear16_to_ulaw(b"") == b""

    def test_linear16_to_ulaw_silence(self):
        result = linear16_to_ulaw(b"\x00\x00" * 100)

        assert len(result) == 100
        assert result == b"\xff" * 100

    def test_roundtrip_conversion(self):
        """Mu-law is lossy, but a tone should survive encode + decode."""
        samples = np.sin(np.linspace(0, 4 * np.pi, 100)) * 16000
        original_pcm = samples.astype(np.int16).tobytes()

        recovered_pcm = transcode(linear16_to_ulaw(original_pcm))

        original_samples = np.frombuffer(original_pcm, dtype=np.int16)
        recovered_samples = np.frombuffer(recovered_pcm, dtype=np.int16)
        correlation = np.corrcoef(original_samples, recovered_samples)[0, 1]
        assert correlation > 0.99


class TestResampling:
    """Tests for audio resampling."""

    def test_resample_empty(self):
        assert resample_pcm16(b"", 24000, 8000) == b""

    def test_resample_same_rate_is_identity(self):
        pcm = np.arange(50, dtype=np.int16).tobytes()
        assert resample_pcm16(pcm, 8000, 8000) == pcm

    def test_resample_24k_to_8k_length(self):
        pcm_24k = np.zeros(2400, dtype=np.int16).tobytes()

        result = resample_pcm16(pcm_24k, 24000, 8000)

        assert len(np.frombuffer(result, dtype=np.int16)) == 800

    def test_tts_pcm_to_twilio_ulaw_empty(self):
        assert tts_pcm_to_twilio_ulaw(b"") == b""

    def test_tts_pcm_to_twilio_ulaw_produces_8k_ulaw(self):
        """100ms of 24kHz PCM becomes ~800 mu-law bytes."""
        pcm_24k = np.zeros(2400, dtype=np.int16).tobytes()

        result = tts_pcm_to_twilio_ulaw(pcm_24k, source_rate=24000)

        assert abs(len(result) - 800) <= 10


class TestChunking:
    """Tests for audio chunking."""

    def test_chunk_audio_empty(self):
        assert list(chunk_audio(b"")) == []

    def test_chunk_audio_exact_multiple(self):
        chunks = list(chunk_audio(b"\xff" * 320, TWILIO_FRAME_SIZE))

        assert len(chunks) == 2
        assert all(len(c) == TWILIO_FRAME_SIZE for c in chunks)

    def test_chunk_audio_with_remainder(self):
        """The last chunk is padded with mu-law silence."""
        chunks = list(chunk_audio(b"\xaa" * 200, TWILIO_FRAME_SIZE))

        assert len(chunks) == 2
        assert len(chunks[1]) == TWILIO_FRAME_SIZE
        assert chunks[1].endswith(b"\xff" * (TWILIO_FRAME_SIZE - 40))


class TestUtilities:
    """Tests for utility functions."""

    def test_frame_size_is_20ms(self):
        assert TWILIO_FRAME_SIZE == int(TWILIO_SAMPLE_RATE * 20 / 1000) == 160
