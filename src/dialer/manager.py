"""
Call lifecycle glue.

Creates sessions, places outbound calls, routes telephony callbacks to the
state machine and attaches media streams to a per-call orchestrator.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import structlog

from src.dialer.artifacts import TempAudioStore
from src.dialer.cache import ResponseCache, get_response_cache
from src.dialer.call_leg import CallLeg
from src.dialer.config import get_config
from src.dialer.history import HistoryStore, JsonFileHistoryStore
from src.dialer.llm import CompletionClient, get_completion_client
from src.dialer.orchestrator import StreamOrchestrator
from src.dialer.session import CallContext, CallSession, SessionRegistry
from src.dialer.state_machine import (
    END_MANUAL,
    END_NATURAL,
    END_NO_RESPONSE,
    CallStateMachine,
    telephony_end_reason,
)
from src.dialer.stt import DeepgramTranscriber, Transcriber, TranscriptionResult
from src.dialer.telephony import Telephony, get_telephony
from src.dialer.tts import Synthesizer

logger = structlog.get_logger(__name__)

ANSWERED_STATUSES = frozenset({"answered", "in-progress"})
PROGRESS_STATUSES = frozenset({"queued", "initiated", "ringing"})
FINAL_STATUSES = frozenset({"completed", "failed", "busy", "no-answer", "canceled"})

# The orchestrator hangs up itself for these
_SELF_HANGUP_REASONS = frozenset({END_NATURAL, END_NO_RESPONSE})

STREAM_RECONNECT_GRACE_SECONDS = 5.0
STREAM_CLOSED = "stream_closed"


class CallInitiationError(Exception):
    """Raised when an outbound call cannot be placed."""
    pass


class CallManager:
    """
    Owns every live call in the process.

    Capabilities default to the production implementations and can be
    replaced (tests pass fakes).
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        registry: Optional[SessionRegistry] = None,
        telephony: Optional[Telephony] = None,
        history_store: Optional[HistoryStore] = None,
        artifacts: Optional[TempAudioStore] = None,
        completion: Optional[CompletionClient] = None,
        synthesizer: Optional[Synthesizer] = None,
        transcriber_factory: Optional[Callable[[], Transcriber]] = None,
        cache: Optional[ResponseCache] = None,
        stream_reconnect_grace: float = STREAM_RECONNECT_GRACE_SECONDS,
    ):
        self.config = config or get_config()
        self.registry = registry or SessionRegistry()
        self._telephony = telephony
        self.history_store = history_store or JsonFileHistoryStore(self.config.history_dir)
        self.artifacts = artifacts or TempAudioStore(
            self.config.temp_audio_dir, self.config.temp_audio_ttl_seconds
        )
        self._completion = completion
        self._synthesizer = synthesizer
        self._transcriber_factory = transcriber_factory or (lambda: DeepgramTranscriber(self.config))
        self.cache = cache if cache is not None else get_response_cache()
        self.stream_reconnect_grace = stream_reconnect_grace

    @property
    def telephony(self) -> Telephony:
        if self._telephony is None:
            self._telephony = get_telephony()
        return self._telephony

    @property
    def completion(self) -> CompletionClient:
        if self._completion is None:
            self._completion = get_completion_client()
        return self._completion

    @property
    def synthesizer(self) -> Synthesizer:
        if self._synthesizer is None:
            self._synthesizer = Synthesizer(config=self.config)
        return self._synthesizer

    @property
    def active_calls(self) -> int:
        return sum(1 for s in self.registry.all() if not s.is_ended)

    def create_session(self, **kwargs: Any) -> CallSession:
        session = self.registry.create(**kwargs)
        machine = CallStateMachine(
            session,
            registry=self.registry,
            history_store=self.history_store,
            artifacts=self.artifacts,
            ring_timeout_seconds=self.config.ring_timeout_seconds,
            settle_delay_seconds=self.config.settle_delay_seconds,
            max_timeout_attempts=self.config.max_timeout_attempts,
            session_grace_seconds=self.config.session_grace_seconds,
        )
        machine.add_cleanup_hook(self._hangup_on_end)
        self.registry.context(session.id).machine = machine
        return session

    def get_session(self, call_id: str) -> CallSession:
        return self.registry.get(call_id)

    def get_machine(self, call_id: str) -> CallStateMachine:
        return self.registry.context(call_id).machine

    def get_orchestrator(self, call_id: str) -> Optional[StreamOrchestrator]:
        context = self.registry.find_context(call_id)
        return context.orchestrator if context is not None else None

    def resolve(self, call_id: str = "", call_sid: str = "") -> Optional[CallSession]:
        """Find a session by our id or by the telephony call handle."""
        if call_id:
            session = self.registry.find(call_id)
            if session is not None:
                return session
        return self.registry.find_by_call_sid(call_sid)

    def list_calls(self) -> List[Dict[str, Any]]:
        return [session.summary() for session in self.registry.all()]

    async def initiate_call(
        self,
        phone_number: str,
        manager_name: str = "",
        system_prompt: Optional[str] = None,
    ) -> CallSession:
        """
        Place an outbound call.

        Raises:
            CallInitiationError: If the call could not be placed; no session is kept
        """
        phone_number = (phone_number or "").strip()
        if not phone_number:
            raise CallInitiationError("A phone number is required")
        if not self.config.public_host:
            raise CallInitiationError("PUBLIC_HOST is not configured")

        session = self.create_session(
            phone_number=phone_number,
            manager_name=manager_name.strip(),
            system_prompt=system_prompt or None,
        )
        machine = self.get_machine(session.id)
        machine.start_calling()

        base = self.config.base_url
        try:
            call_sid = await self.telephony.place_call(
                phone_number,
                webhook_url=f"{base}/twiml?callId={session.id}",
                status_callback_url=f"{base}/api/voice/status?callId={session.id}",
            )
        except Exception as e:
            machine.cancel_timers()
            self.registry.remove(session.id)
            logger.error("Call initiation failed", call_id=session.id, to=phone_number, error=str(e))
            raise CallInitiationError(str(e)) from e

        session.call_sid = call_sid
        logger.info("Call initiated", call_id=session.id, call_sid=call_sid, to=phone_number)
        return session

    async def handle_status(self, status: str, call_id: str = "", call_sid: str = "") -> Optional[CallSession]:
        """Apply a telephony status callback."""
        status = (status or "").strip().lower()
        session = self.resolve(call_id, call_sid)
        if session is None:
            logger.warning("Status callback for unknown call", call_id=call_id, call_sid=call_sid, status=status)
            return None

        if call_sid and not session.call_sid:
            session.call_sid = call_sid
        machine = self.get_machine(session.id)
        logger.info("Call status callback", call_id=session.id, status=status)

        if status in ANSWERED_STATUSES:
            machine.mark_answered()
        elif status in FINAL_STATUSES:
            await machine.end(telephony_end_reason(status))
        elif status in PROGRESS_STATUSES:
            session.emit("status", status=session.status.value, telephony_status=status)
        return session

    async def terminate(self, call_id: str) -> bool:
        """Operator-requested hangup."""
        machine = self.get_machine(call_id)
        return await machine.end(END_MANUAL)

    async def attach_stream(self, call_id: str, leg: CallLeg, call_sid: str = "") -> Optional[StreamOrchestrator]:
        """
        Bind a connected media stream to its session and start (or resume) the conversation.

        An unknown call id is treated as an inbound call and gets a new session.
        """
        session = self.resolve(call_id, call_sid)
        if session is None:
            session = self.create_session(call_sid=call_sid)
            logger.info("Inbound media stream", call_id=session.id, call_sid=call_sid)

        context = self.registry.context(session.id)
        context.cancel_watchdog()
        if session.is_ended:
            logger.warning("Media stream for ended call", call_id=session.id)
            return None
        if call_sid and not session.call_sid:
            session.call_sid = call_sid

        context.machine.confirm_two_way_audio()

        if context.orchestrator is not None:
            context.orchestrator.attach_leg(leg)
            logger.info("Media stream reattached", call_id=session.id)
            return context.orchestrator

        context.orchestrator = StreamOrchestrator(
            session,
            context.machine,
            transcriber=self._transcriber_factory(),
            completion=self.completion,
            synthesizer=self.synthesizer,
            leg=leg,
            cache=self.cache,
            artifacts=self.artifacts,
            config=self.config,
        )
        await context.orchestrator.start(greet=True)
        return context.orchestrator

    def stream_stopped(self, call_id: str) -> None:
        """
        The media stream went away. The built-in voice fallback reconnects the
        stream, so only end the call if no new stream shows up.
        """
        context = self.registry.find_context(call_id)
        if context is None or context.session.is_ended:
            return
        context.cancel_watchdog()
        context.stream_watchdog = asyncio.create_task(self._end_if_not_reattached(context))

    async def handle_speech(self, call_id: str, text: str, confidence: float = 0.0, final: bool = True) -> bool:
        """Feed a provider-side speech recognition result into the orchestrator."""
        orchestrator = self.get_orchestrator(call_id)
        if orchestrator is None:
            return False
        await orchestrator.on_transcript(
            TranscriptionResult(text=text, is_final=final, speech_final=final, confidence=confidence)
        )
        return True

    async def shutdown(self) -> None:
        """End every live call (server shutdown)."""
        for session in self.registry.all():
            if not session.is_ended:
                await self.get_machine(session.id).end("server_shutdown")

    async def _end_if_not_reattached(self, context: CallContext) -> None:
        await asyncio.sleep(self.stream_reconnect_grace)
        context.stream_watchdog = None
        if not context.machine.is_ended:
            logger.info("Media stream did not reconnect", call_id=context.session.id)
            await context.machine.end(STREAM_CLOSED)

    async def _hangup_on_end(self, session: CallSession, reason: str) -> None:
        if reason in _SELF_HANGUP_REASONS or reason.startswith("telephony_"):
            return
        if session.call_sid:
            await self.telephony.hangup(session.call_sid)
