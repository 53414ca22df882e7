"""
Per-call stream orchestrator.

Drives the conversation loop for one CallSession:

    call-leg audio -> StreamingBuffer -> transcode -> transcriber
    transcript fragments -> utterance -> response cache / streamed completion
    completed phrases -> concurrent synthesis -> in-order delivery to the call leg

Turns are strictly sequential. Within a turn, phrases are synthesized
concurrently but always reach the call leg in the order they were generated.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple

import structlog

from src.dialer.audio import transcode
from src.dialer.cache import ResponseCache, get_response_cache, make_key
from src.dialer.call_leg import CallLeg
from src.dialer.config import get_config
from src.dialer.extract import OrderExtractor
from src.dialer.llm import (
    CompletionClient,
    CompletionOptions,
    build_messages,
    fallback_greeting,
    flag_hints,
    get_greeting_instruction,
    get_system_prompt,
    render_messages,
)
from src.dialer.session import CallSession, CallStatus, MessageRole
from src.dialer.state_machine import END_NATURAL, END_NO_RESPONSE, CallStateMachine
from src.dialer.streaming_buffer import StreamingBuffer
from src.dialer.stt import Transcriber, TranscriptionResult
from src.dialer.tts import Synthesizer
from src.dialer.tts_types import VoiceOptions

if TYPE_CHECKING:
    from src.dialer.artifacts import TempAudioStore

logger = structlog.get_logger(__name__)

ENDING_PHRASES: tuple[str, ...] = (
    "have a great day",
    "have a wonderful day",
    "have a good day",
    "have a nice day",
    "goodbye",
    "good bye",
    "talk to you later",
    "speak to you soon",
    "thank you for your time",
    "thanks for your time",
    "have a pleasant day",
    "take care",
)

APOLOGY_REPLY = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Could you please repeat that?"
)

FRAGMENTS_PER_TURN = 3
MIN_CLAUSE_CHARS = 24

_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")
_CLAUSE_END_RE = re.compile(r"(?<=[,;:])\s+")


def contains_ending_phrase(text: str) -> bool:
    """Case-insensitive substring match against the call-ending phrases."""
    t = (text or "").lower().replace("’", "'")
    return any(phrase in t for phrase in ENDING_PHRASES)


class PhraseSplitter:
    """
    Cuts streamed completion text into speakable phrases.

    A phrase ends at a sentence terminator followed by whitespace, or at a
    clause break once the phrase is long enough to be worth a synthesis call.
    """

    def __init__(self, min_clause_chars: int = MIN_CLAUSE_CHARS):
        self.min_clause_chars = min_clause_chars
        self._buffer = ""

    def feed(self, delta: str) -> List[str]:
        self._buffer += delta
        phrases = []
        while True:
            cut = self._find_cut(self._buffer)
            if cut is None:
                break
            phrase = self._buffer[:cut].strip()
            self._buffer = self._buffer[cut:].lstrip()
            if phrase:
                phrases.append(phrase)
        return phrases

    def flush(self) -> List[str]:
        rest = self._buffer.strip()
        self._buffer = ""
        return [rest] if rest else []

    def _find_cut(self, text: str) -> Optional[int]:
        cuts = []
        sentence = _SENTENCE_END_RE.search(text)
        if sentence:
            cuts.append(sentence.start())
        for clause in _CLAUSE_END_RE.finditer(text):
            if clause.start() >= self.min_clause_chars:
                cuts.append(clause.start())
                break
        return min(cuts) if cuts else None


def split_phrases(text: str) -> List[str]:
    splitter = PhraseSplitter()
    return splitter.feed(text) + splitter.flush()


@dataclass
class PhraseAudio:
    """Synthesized audio for one phrase and its temp file, if one was kept."""
    audio: bytes
    artifact: Optional[Path] = None


class PhraseSequencer:
    """
    Synthesizes phrases concurrently and delivers audio in submission order.

    If a phrase fails to synthesize, it and every later phrase of the turn are
    collected and spoken once through the built-in voice fallback.
    """

    def __init__(
        self,
        synthesize: Callable[[str], Awaitable[PhraseAudio]],
        deliver: Callable[[PhraseAudio], Awaitable[None]],
        fallback: Callable[[str], Awaitable[None]],
    ):
        self._synthesize = synthesize
        self._deliver = deliver
        self._fallback = fallback
        self._queue: "asyncio.Queue[Optional[Tuple[str, asyncio.Task]]]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []
        self._worker = asyncio.create_task(self._deliver_in_order())
        self.fallback_phrases: List[str] = []
        self.delivered = 0
        self.first_audio_at: Optional[float] = None

    @property
    def degraded(self) -> bool:
        return bool(self.fallback_phrases)

    def submit(self, phrase: str) -> None:
        task = asyncio.create_task(self._synthesize(phrase))
        self._tasks.append(task)
        self._queue.put_nowait((phrase, task))

    async def finish(self) -> bool:
        """Wait until every submitted phrase has been delivered. Returns True if degraded."""
        self._queue.put_nowait(None)
        await self._worker
        return self.degraded

    async def abort(self) -> None:
        """Cancel outstanding synthesis and delivery; late results are discarded."""
        for task in self._tasks:
            self._discard(task)
        if not self._worker.done() and self._worker is not asyncio.current_task():
            self._worker.cancel()
            await asyncio.wait({self._worker})

    @staticmethod
    def _discard(task: asyncio.Task) -> None:
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            # Retrieve so a failed, unused synthesis is not reported as unhandled
            task.exception()

    async def _deliver_in_order(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                break
            phrase, task = item

            if self.degraded:
                self._discard(task)
                self.fallback_phrases.append(phrase)
                continue

            try:
                audio = await task
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Phrase synthesis failed, switching to built-in voice", error=str(e))
                self.fallback_phrases.append(phrase)
                continue

            if self.first_audio_at is None:
                self.first_audio_at = time.perf_counter()
            await self._deliver(audio)
            self.delivered += 1

        if self.fallback_phrases:
            text = " ".join(self.fallback_phrases)
            try:
                await self._fallback(text)
            except Exception as e:
                logger.error("Built-in voice fallback failed", error=str(e))


@dataclass
class TurnMetrics:
    """Latency breakdown for one turn."""
    turn_id: int
    start_time: float = field(default_factory=time.perf_counter)
    first_token_ms: float = 0.0
    first_audio_ms: float = 0.0
    total_ms: float = 0.0
    cached: bool = False
    degraded: bool = False

    def mark_first_token(self) -> None:
        if not self.first_token_ms:
            self.first_token_ms = (time.perf_counter() - self.start_time) * 1000

    def finalize(self, first_audio_at: Optional[float]) -> None:
        if first_audio_at is not None:
            self.first_audio_ms = (first_audio_at - self.start_time) * 1000
        self.total_ms = (time.perf_counter() - self.start_time) * 1000


@dataclass
class TurnResult:
    """Outcome of one conversational turn."""
    user_text: str
    reply: str
    cached: bool = False
    degraded: bool = False
    ended: bool = False


class StreamOrchestrator:
    """
    Sequences transcription, completion and synthesis for one call.

    Args:
        session: The call session
        machine: State machine owning the session lifecycle
        transcriber: Streaming speech-to-text capability
        completion: Streaming chat completion capability
        synthesizer: Speech synthesis capability
        leg: Outbound audio leg (may be attached later)
        cache: Shared response cache
    """

    def __init__(
        self,
        session: CallSession,
        machine: CallStateMachine,
        *,
        transcriber: Transcriber,
        completion: CompletionClient,
        synthesizer: Synthesizer,
        leg: Optional[CallLeg] = None,
        cache: Optional[ResponseCache] = None,
        extractor: Optional[OrderExtractor] = None,
        artifacts: Optional["TempAudioStore"] = None,
        config: Optional[Any] = None,
        completion_options: Optional[CompletionOptions] = None,
        voice_options: Optional[VoiceOptions] = None,
        utterance_gap_seconds: float = 2.0,
        playback_timeout_seconds: float = 30.0,
    ):
        self.config = config or get_config()
        self.session = session
        self.machine = machine
        self.transcriber = transcriber
        self.completion = completion
        self.synthesizer = synthesizer
        self.leg = leg
        self.cache = cache if cache is not None else get_response_cache()
        self.extractor = extractor or OrderExtractor()
        self.artifacts = artifacts
        self.completion_options = completion_options or CompletionOptions(
            model=self.config.completion_model,
            temperature=self.config.completion_temperature,
            max_tokens=self.config.completion_max_tokens,
        )
        self.voice_options = voice_options or VoiceOptions.from_config(self.config)
        self.no_speech_timeout = self.config.no_speech_timeout_seconds
        self.hangup_pause = self.config.hangup_pause_seconds
        self.utterance_gap_seconds = utterance_gap_seconds
        self.playback_timeout_seconds = playback_timeout_seconds

        self.buffer = StreamingBuffer(
            self._forward_audio,
            chunk_size=self.config.buffer_chunk_size,
            max_buffer_size=self.config.buffer_max_size,
            on_error=self._on_buffer_error,
            name=session.id,
        )
        self._fragments: "asyncio.Queue[TranscriptionResult]" = asyncio.Queue()
        self._turn_in_progress = False
        self._turn_counter = 0
        self._last_speech_at = 0.0
        self._loop_task: Optional[asyncio.Task] = None
        self._sequencers: Set[PhraseSequencer] = set()
        self._closed = False

        machine.add_cleanup_hook(self._on_session_end)

    @property
    def turn_in_progress(self) -> bool:
        return self._turn_in_progress

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def attach_leg(self, leg: CallLeg) -> None:
        """Use a (new) call leg for outbound audio, e.g. after the media stream reconnects."""
        self.leg = leg

    async def start(self, greet: bool = True) -> None:
        """Open the transcription stream and start the conversation loop."""
        if self._loop_task is not None:
            return
        try:
            await self.transcriber.start(self.on_transcript)
        except Exception as e:
            logger.error("Transcription stream unavailable", call_id=self.session.id, error=str(e))
        self._loop_task = asyncio.create_task(self._run(greet))

    async def wait_closed(self) -> None:
        if self._loop_task is not None:
            await asyncio.wait({self._loop_task})

    # Inbound audio and transcripts

    async def push_audio(self, ulaw: bytes) -> None:
        """Accept inbound call-leg audio. Dropped while a reply is being generated."""
        if self._closed or self._turn_in_progress:
            return
        await self.buffer.push(ulaw)

    async def _forward_audio(self, piece: bytes) -> None:
        await self.transcriber.send_audio(transcode(piece))

    def _on_buffer_error(self, error: Exception) -> None:
        logger.warning("Inbound audio dropped", call_id=self.session.id, error=str(error))

    async def on_transcript(self, result: TranscriptionResult) -> None:
        """
        Receive a transcript fragment.

        Interim results only surface as partial-speech events. Finalized
        fragments are queued for the conversation loop.
        """
        if self._closed:
            return
        text = (result.text or "").strip()
        if not text:
            return

        self._last_speech_at = time.monotonic()
        self.machine.record_speech()

        if self._turn_in_progress:
            logger.debug("Dropping speech during reply generation", call_id=self.session.id, text=text[:40])
            return

        if self.leg is not None and self.leg.is_playing:
            logger.info("Barge-in detected", call_id=self.session.id, text=text[:40])
            await self.leg.clear()

        if not result.is_final:
            self.session.emit("partial_speech", text=text)
            return

        await self._fragments.put(result)

    # Conversation loop

    async def _run(self, greet: bool) -> None:
        try:
            if greet:
                await self.greet()
            while not self.machine.is_ended and not self._closed:
                fragments = await self._collect_utterance()
                if self.machine.is_ended:
                    break
                utterance = " ".join(f.text.strip() for f in fragments if f.text.strip())
                if not utterance:
                    await self.handle_silence()
                    continue
                await self.run_turn(utterance)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Conversation loop failed",
                call_id=self.session.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self.machine.end("error")

    async def _collect_utterance(self) -> List[TranscriptionResult]:
        """
        Gather fragments into an utterance.

        Complete when a fragment is speech-final, after FRAGMENTS_PER_TURN
        fragments, or when the speaker pauses for `utterance_gap_seconds`.
        Returns an empty list on a no-speech timeout.
        """
        if self.leg is not None and self.leg.is_playing and self._fragments.empty():
            await self.leg.wait_for_playback(timeout=self.playback_timeout_seconds)

        fragments: List[TranscriptionResult] = []
        while True:
            timeout = self.utterance_gap_seconds if fragments else self.no_speech_timeout
            try:
                fragment = await asyncio.wait_for(self._fragments.get(), timeout=timeout)
            except asyncio.TimeoutError:
                if fragments:
                    return fragments
                if self._is_still_active(timeout):
                    continue
                return fragments

            fragments.append(fragment)
            if fragment.speech_final or len(fragments) >= FRAGMENTS_PER_TURN:
                return fragments

    def _is_still_active(self, window: float) -> bool:
        if self.leg is not None and self.leg.is_playing:
            return True
        if self.machine.status != CallStatus.CONNECTED:
            return True
        return time.monotonic() - self._last_speech_at < window

    async def handle_silence(self) -> None:
        """No-speech timeout: prompt the callee, or close the call after the last attempt."""
        outcome = self.machine.handle_no_speech()
        if outcome is None:
            return
        self.session.append_message(MessageRole.ASSISTANT, outcome.prompt)
        self.session.emit("response", text=outcome.prompt, timeout_attempt=outcome.attempt)
        await self._speak(outcome.prompt)
        if outcome.should_end:
            await self._finish_call(END_NO_RESPONSE)

    async def greet(self) -> str:
        """Speak the opening line, generated from the greeting instruction."""
        self._turn_in_progress = True
        try:
            instruction = get_greeting_instruction(self.session.manager_name, self.config)
            messages = build_messages(self._system_prompt(), [], instruction)
            key = make_key("completion", render_messages(messages), self.completion_options.as_dict())
            greeting = self.cache.get(key)
            degraded = False
            if greeting is not None:
                await self._speak(greeting)
            else:
                fallback = fallback_greeting(self.session.manager_name, self.config)
                greeting, degraded, _ = await self._stream_reply(messages, fallback, TurnMetrics(turn_id=0))
                if not degraded:
                    self.cache.put(key, greeting)
            self.session.append_message(MessageRole.ASSISTANT, greeting)
            self.session.emit("response", text=greeting, greeting=True)
            return greeting
        finally:
            self._turn_in_progress = False

    async def run_turn(self, utterance: str) -> TurnResult:
        """
        Produce and speak the reply to one complete user utterance.
        """
        self._turn_in_progress = True
        self.buffer.clear()
        self._turn_counter += 1
        metrics = TurnMetrics(turn_id=self._turn_counter)
        try:
            self.session.emit("user_speech", text=utterance)
            self.extractor.apply_user_utterance(self.session.order, utterance)
            previous_reply = self._last_assistant_message()

            messages = build_messages(
                self._system_prompt(),
                self.session.transcript,
                utterance,
                flag_hints(self.session.flags),
            )
            key = make_key("completion", render_messages(messages), self.completion_options.as_dict())

            cached_reply = self.cache.get(key)
            if cached_reply is not None:
                reply = cached_reply
                metrics.cached = True
                metrics.degraded, first_audio_at = await self._speak(reply)
            else:
                reply, metrics.degraded, first_audio_at = await self._stream_reply(
                    messages, APOLOGY_REPLY, metrics
                )

            ending = contains_ending_phrase(reply)

            self.session.append_message(MessageRole.USER, utterance)
            self.session.append_message(MessageRole.ASSISTANT, reply)
            added = self.extractor.apply_assistant_reply(self.session.order, reply)
            if added:
                self.session.emit("order_updated", order=self.session.order.to_dict())
            self.extractor.update_flags(self.session.flags, utterance, reply, previous_reply)
            self.session.emit("response", text=reply, cached=metrics.cached)

            if not metrics.cached and not metrics.degraded:
                self.cache.put(key, reply)

            metrics.finalize(first_audio_at)
            logger.info(
                "Turn completed",
                call_id=self.session.id,
                turn_id=metrics.turn_id,
                first_token_ms=round(metrics.first_token_ms, 2),
                first_audio_ms=round(metrics.first_audio_ms, 2),
                total_turn_ms=round(metrics.total_ms, 2),
                cached=metrics.cached,
                degraded=metrics.degraded,
                ending=ending,
            )
        finally:
            self._turn_in_progress = False

        if ending:
            await self._finish_call(END_NATURAL)
        elif self.machine.status == CallStatus.CONNECTED:
            self.machine.record_turn()

        return TurnResult(
            user_text=utterance,
            reply=reply,
            cached=metrics.cached,
            degraded=metrics.degraded,
            ended=ending,
        )

    async def _stream_reply(
        self,
        messages: Sequence[dict],
        failure_reply: str,
        metrics: TurnMetrics,
    ) -> Tuple[str, bool, Optional[float]]:
        """
        Stream a completion, speaking phrases as they complete.

        Returns:
            (reply text, degraded, first audio timestamp). On completion failure
            the reply is `failure_reply` and degraded is True.
        """
        sequencer = self._new_sequencer()
        splitter = PhraseSplitter()
        parts: List[str] = []
        try:
            async for delta in self.completion.complete(messages, self.completion_options):
                if self._closed:
                    break
                metrics.mark_first_token()
                parts.append(delta)
                self.session.emit("response_chunk", text=delta)
                for phrase in splitter.feed(delta):
                    sequencer.submit(phrase)
            for phrase in splitter.flush():
                sequencer.submit(phrase)
            reply = "".join(parts).strip()
            if not reply and not self._closed:
                raise ValueError("Empty completion")
        except asyncio.CancelledError:
            await self._drop_sequencer(sequencer)
            raise
        except Exception as e:
            logger.error(
                "Completion failed, apologizing",
                call_id=self.session.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._drop_sequencer(sequencer)
            if sequencer.delivered and self.leg is not None:
                await self.leg.clear()
            await self._speak(failure_reply)
            return failure_reply, True, None

        try:
            degraded = await sequencer.finish()
        finally:
            self._sequencers.discard(sequencer)
        return reply, degraded, sequencer.first_audio_at

    async def _speak(self, text: str) -> Tuple[bool, Optional[float]]:
        """
        Speak fixed text through the same synthesis/delivery path.

        Returns:
            (degraded, first audio timestamp)
        """
        sequencer = self._new_sequencer()
        for phrase in split_phrases(text):
            sequencer.submit(phrase)
        try:
            degraded = await sequencer.finish()
        finally:
            self._sequencers.discard(sequencer)
        return degraded, sequencer.first_audio_at

    async def _finish_call(self, reason: str) -> None:
        """Let the last reply play out, pause, hang up and end the call."""
        if self.leg is not None:
            await self.leg.wait_for_playback(timeout=self.playback_timeout_seconds)
        await asyncio.sleep(self.hangup_pause)
        if self.leg is not None:
            try:
                await self.leg.hangup()
            except Exception as e:
                logger.error("Failed to hang up call", call_id=self.session.id, error=str(e))
        await self.machine.end(reason)

    # Synthesis plumbing

    def _new_sequencer(self) -> PhraseSequencer:
        sequencer = PhraseSequencer(self._synthesize, self._deliver, self._say_built_in)
        self._sequencers.add(sequencer)
        return sequencer

    async def _drop_sequencer(self, sequencer: PhraseSequencer) -> None:
        self._sequencers.discard(sequencer)
        await sequencer.abort()

    async def _synthesize(self, phrase: str) -> PhraseAudio:
        key = make_key("synthesis", phrase, self.voice_options.as_dict())
        audio = self.cache.get(key)
        if audio is None:
            audio = await self.synthesizer.synthesize(phrase, self.voice_options)
            self.cache.put(key, audio)
        artifact = None
        if self.artifacts is not None and not self._closed:
            try:
                artifact = await self.artifacts.save(self.session.id, audio)
            except OSError as e:
                logger.warning("Failed to write temp audio", call_id=self.session.id, error=str(e))
            if artifact is not None and self._closed:
                # The call ended while the file was being written
                self.artifacts.purge_session(self.session.id)
                artifact = None
        return PhraseAudio(audio=audio, artifact=artifact)

    async def _deliver(self, phrase: PhraseAudio) -> None:
        if self._closed or self.leg is None:
            return
        await self.leg.send_audio(phrase.audio)
        if phrase.artifact is not None and self.artifacts is not None:
            self.artifacts.mark_delivered(self.session.id, phrase.artifact)
            self.session.emit(
                "audio",
                url=f"{self.config.base_url}/audio/{phrase.artifact.name}",
                bytes=len(phrase.audio),
            )

    async def _say_built_in(self, text: str) -> None:
        if self._closed or self.leg is None:
            return
        await self.leg.say_built_in(text)

    # Helpers

    def _system_prompt(self) -> str:
        return self.session.system_prompt or get_system_prompt(self.config)

    def _last_assistant_message(self) -> str:
        for message in reversed(self.session.transcript):
            if message.role == MessageRole.ASSISTANT:
                return message.content
        return ""

    async def _on_session_end(self, session: CallSession, reason: str) -> None:
        self._closed = True
        await self.buffer.close()

        for sequencer in list(self._sequencers):
            await sequencer.abort()
        self._sequencers.clear()

        try:
            await self.transcriber.stop()
        except Exception as e:
            logger.warning("Failed to stop transcription", call_id=session.id, error=str(e))

        task = self._loop_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        logger.info("Orchestrator stopped", call_id=session.id, reason=reason, turns=self._turn_counter)
