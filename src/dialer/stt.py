"""
Deepgram Speech-to-Text streaming client.

Receives linear PCM 16-bit 8kHz (the transcoded Twilio audio) and reports
interim and final transcripts through a callback.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets

from src.dialer.audio import STT_SAMPLE_RATE
from src.dialer.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speech_final: bool = False
    timestamp: float = field(default_factory=time.time)
    latency_ms: float = 0.0


TranscriptCallback = Callable[[TranscriptionResult], Awaitable[None]]


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        self.avg_latency_ms = (
            (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
            / self.total_transcripts
        )


class TranscriptionError(Exception):
    """Raised when the transcription stream cannot be opened."""
    pass


class Transcriber(ABC):
    """Streaming speech-to-text capability."""

    @abstractmethod
    async def start(self, on_transcript: TranscriptCallback) -> None:
        """Open the stream; transcripts are delivered to `on_transcript`."""
        ...

    @abstractmethod
    async def send_audio(self, pcm16: bytes) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class DeepgramTranscriber(Transcriber):
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(self, config: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self._on_transcript: Optional[TranscriptCallback] = None
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0
        self._current_transcript = ""
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def _build_url(self) -> str:
        return (
            DEEPGRAM_URL
            + f"?model={self.config.deepgram_model}"
            + "&encoding=linear16"
            + f"&sample_rate={STT_SAMPLE_RATE}"
            + "&channels=1"
            + "&punctuate=true"
            + "&interim_results=true"
            + "&smart_format=true"
            + "&endpointing=300"
            + "&utterance_end_ms=1000"
        )

    async def start(self, on_transcript: TranscriptCallback) -> None:
        """Connect to Deepgram streaming API."""
        self._on_transcript = on_transcript
        if self._is_connected:
            return

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            logger.info("Connecting to Deepgram", model=self.config.deepgram_model)
            self._ws = await websockets.connect(
                self._build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            raise TranscriptionError(str(e)) from e

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected")

    async def stop(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected")

    async def send_audio(self, pcm16: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        self._last_audio_time = time.time()
        # 16 bytes per ms at 8kHz 16-bit mono
        self._metrics.total_audio_ms += len(pcm16) / 16
        await self._ws.send(pcm16)

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = str(data.get("type", "")).lower()

        if msg_type == "results":
            alternatives = data.get("channel", {}).get("alternatives", [])
            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            if not transcript:
                return

            is_final = bool(data.get("is_final", False))
            if is_final:
                self._current_transcript = transcript

            latency_ms = 0.0
            if self._last_audio_time > 0:
                latency_ms = (time.time() - self._last_audio_time) * 1000
            self._metrics.record_transcript(is_final, latency_ms)

            result = TranscriptionResult(
                text=transcript,
                is_final=is_final,
                confidence=alternatives[0].get("confidence", 0.0),
                speech_final=bool(data.get("speech_final", False)),
                latency_ms=latency_ms,
            )
            logger.debug(
                "STT transcript",
                text=transcript[:50],
                is_final=is_final,
                speech_final=result.speech_final,
            )
            if self._on_transcript:
                await self._on_transcript(result)

        elif msg_type in ("utteranceend", "utterance_end"):
            # Final results were already delivered; just reset
            self._current_transcript = ""

        elif msg_type == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message", "Unknown"),
                details=data,
            )
