"""
Call session state machine.

idle -> calling -> connecting -> connected -> ended

- calling: ringtone cue + bounded wait for the callee to answer
- connecting: settle delay before the conversation starts (skipped on two-way audio)
- connected: turns loop here; no-speech timeouts are counted and retried
- ended: terminal; timers cancelled, artifacts purged, history saved, registry
  eviction scheduled after a grace period
"""

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set

import structlog

from src.dialer.session import CallSession, CallStatus, SessionRegistry

if TYPE_CHECKING:
    from src.dialer.artifacts import TempAudioStore
    from src.dialer.history import HistoryStore

logger = structlog.get_logger(__name__)

TIMEOUT_PROMPTS: tuple[str, ...] = (
    "Hello? Are you still there?",
    "I'm still here. Can you hear me okay?",
)
NO_RESPONSE_CLOSING = (
    "I'll try reaching you another time. Please feel free to call us back "
    "when convenient. Have a great day!"
)

END_NATURAL = "natural_ending"
END_NO_RESPONSE = "no_response"
END_NO_ANSWER = "no_answer"
END_MANUAL = "manual_termination"

_ALLOWED_TRANSITIONS: Dict[CallStatus, FrozenSet[CallStatus]] = {
    CallStatus.IDLE: frozenset({CallStatus.CALLING, CallStatus.CONNECTING, CallStatus.ENDED}),
    CallStatus.CALLING: frozenset({CallStatus.CONNECTING, CallStatus.ENDED}),
    CallStatus.CONNECTING: frozenset({CallStatus.CONNECTED, CallStatus.ENDED}),
    CallStatus.CONNECTED: frozenset({CallStatus.CONNECTED, CallStatus.ENDED}),
    CallStatus.ENDED: frozenset(),
}

CleanupHook = Callable[[CallSession, str], Awaitable[None]]


class InvalidTransition(Exception):
    """Raised on a state change the call lifecycle does not allow."""

    def __init__(self, current: CallStatus, target: CallStatus):
        self.current = current
        self.target = target
        super().__init__(f"Illegal call transition {current.value} -> {target.value}")


@dataclass(frozen=True)
class NoSpeechOutcome:
    """What to do after a no-speech timeout."""
    attempt: int
    prompt: str
    should_end: bool


def telephony_end_reason(status: str) -> str:
    return f"telephony_{status.replace('-', '_')}"


class CallStateMachine:
    """
    Owns the lifecycle of one CallSession.

    Args:
        session: The session to drive
        registry: Registry the call is evicted from after the grace period
        history_store: Receives the transcript and order when the call ends
        artifacts: Temp audio store purged for this session on end
    """

    def __init__(
        self,
        session: CallSession,
        *,
        registry: Optional[SessionRegistry] = None,
        history_store: Optional["HistoryStore"] = None,
        artifacts: Optional["TempAudioStore"] = None,
        ring_timeout_seconds: float = 60.0,
        settle_delay_seconds: float = 2.0,
        max_timeout_attempts: int = 3,
        session_grace_seconds: float = 60.0,
    ):
        self.session = session
        self.registry = registry
        self.history_store = history_store
        self.artifacts = artifacts
        self.ring_timeout_seconds = ring_timeout_seconds
        self.settle_delay_seconds = settle_delay_seconds
        self.max_timeout_attempts = max_timeout_attempts
        self.session_grace_seconds = session_grace_seconds

        self._ring_task: Optional[asyncio.Task] = None
        self._settle_task: Optional[asyncio.Task] = None
        self._evict_task: Optional[asyncio.Task] = None
        self._cleanup_hooks: List[CleanupHook] = []
        self._tasks: Set[asyncio.Task] = set()
        self._ended = asyncio.Event()

    @property
    def status(self) -> CallStatus:
        return self.session.status

    @property
    def is_ended(self) -> bool:
        return self.session.status == CallStatus.ENDED

    async def wait_ended(self) -> None:
        await self._ended.wait()

    def add_cleanup_hook(self, hook: CleanupHook) -> None:
        """Register a coroutine run (in registration order) when the call ends."""
        self._cleanup_hooks.append(hook)

    def transition(self, target: CallStatus, **details) -> None:
        """
        Move the session to `target`.

        Raises:
            InvalidTransition: If the lifecycle does not allow the move
        """
        current = self.session.status
        if target not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(current, target)

        self.session.status = target
        if current != target:
            logger.info(
                "Call status changed",
                call_id=self.session.id,
                call_sid=self.session.call_sid,
                from_status=current.value,
                to_status=target.value,
            )
            self.session.emit("status", status=target.value, previous=current.value, **details)

    def start_calling(self) -> None:
        """idle -> calling: cue the ringtone and start the answer wait."""
        self.transition(CallStatus.CALLING, ringing=True)
        self._ring_task = self._spawn(self._ring_timeout())

    def mark_answered(self) -> None:
        """calling -> connecting on the telephony answered signal."""
        if self.session.status != CallStatus.CALLING:
            logger.debug(
                "Ignoring answered signal",
                call_id=self.session.id,
                status=self.session.status.value,
            )
            return
        self._cancel(self._ring_task)
        self.transition(CallStatus.CONNECTING, ringing=False)
        self._settle_task = self._spawn(self._settle())

    def confirm_two_way_audio(self) -> None:
        """Go straight to connected once media is flowing both ways."""
        status = self.session.status
        if status in (CallStatus.CONNECTED, CallStatus.ENDED):
            return
        self._cancel(self._ring_task)
        self._cancel(self._settle_task)
        if status in (CallStatus.IDLE, CallStatus.CALLING):
            self.transition(CallStatus.CONNECTING, ringing=False)
        self.transition(CallStatus.CONNECTED)

    def record_speech(self) -> None:
        """Any user speech resets the no-speech counter."""
        if self.session.timeout_attempts:
            logger.debug(
                "No-speech counter reset",
                call_id=self.session.id,
                previous_attempts=self.session.timeout_attempts,
            )
        self.session.timeout_attempts = 0

    def record_turn(self) -> None:
        """connected -> connected after a turn that did not end the call."""
        self.transition(CallStatus.CONNECTED)

    def handle_no_speech(self) -> Optional[NoSpeechOutcome]:
        """
        Count a no-speech timeout.

        Returns:
            The prompt to speak and whether the call must then end, or None
            when the call is not in a state that counts timeouts
        """
        if self.session.status != CallStatus.CONNECTED:
            return None

        self.session.timeout_attempts += 1
        attempt = self.session.timeout_attempts
        should_end = attempt >= self.max_timeout_attempts
        if should_end:
            prompt = NO_RESPONSE_CLOSING
        else:
            prompt = TIMEOUT_PROMPTS[min(attempt, len(TIMEOUT_PROMPTS)) - 1]

        logger.info(
            "No speech timeout",
            call_id=self.session.id,
            attempt=attempt,
            max_attempts=self.max_timeout_attempts,
            closing=should_end,
        )
        return NoSpeechOutcome(attempt=attempt, prompt=prompt, should_end=should_end)

    async def end(self, reason: str) -> bool:
        """
        Enter the terminal state and tear the call down.

        Idempotent: returns False when the call had already ended.
        """
        if self.session.status == CallStatus.ENDED:
            return False

        self.transition(CallStatus.ENDED, reason=reason)
        self.session.ended_reason = reason
        self.session.ended_at = time.time()
        self._cancel(self._ring_task)
        self._cancel(self._settle_task)
        for task in list(self._tasks):
            self._cancel(task)

        for hook in self._cleanup_hooks:
            try:
                await hook(self.session, reason)
            except Exception as e:
                logger.error(
                    "Call cleanup hook failed",
                    call_id=self.session.id,
                    hook=getattr(hook, "__qualname__", repr(hook)),
                    error=str(e),
                )

        if self.artifacts is not None:
            self.artifacts.purge_session(self.session.id)

        saved_path = None
        if self.history_store is not None:
            try:
                saved_path = await self.history_store.save(self.session)
            except Exception as e:
                logger.error("Failed to save call history", call_id=self.session.id, error=str(e))

        self.session.emit(
            "completed",
            reason=reason,
            duration_seconds=round(self.session.duration_seconds, 1),
            order=self.session.order.to_dict(),
            history_file=str(saved_path) if saved_path else None,
        )
        logger.info(
            "Call ended",
            call_id=self.session.id,
            call_sid=self.session.call_sid,
            reason=reason,
            turns=len(self.session.transcript),
            order_lines=len(self.session.order.products),
            order_total=str(self.session.order.total),
        )

        if self.registry is not None:
            self._evict_task = asyncio.create_task(self._evict_after_grace())
        self._ended.set()
        return True

    async def _ring_timeout(self) -> None:
        await asyncio.sleep(self.ring_timeout_seconds)
        if self.session.status == CallStatus.CALLING:
            logger.warning("Call not answered", call_id=self.session.id, timeout_s=self.ring_timeout_seconds)
            await self.end(END_NO_ANSWER)

    async def _settle(self) -> None:
        await asyncio.sleep(self.settle_delay_seconds)
        if self.session.status == CallStatus.CONNECTING:
            self.transition(CallStatus.CONNECTED)

    async def _evict_after_grace(self) -> None:
        await asyncio.sleep(self.session_grace_seconds)
        self.registry.remove(self.session.id)

    def cancel_timers(self) -> None:
        """Stop ring/settle timers without ending the call (aborted initiation)."""
        self._cancel(self._ring_task)
        self._cancel(self._settle_task)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
