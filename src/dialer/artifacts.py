"""
Temporary synthesized-audio files.

Every synthesized phrase is also written to disk so it can be fetched by URL
(`/audio/<name>`) while the call is live. A file is deleted a fixed delay after
its audio was delivered to the caller, or when its call ends, whichever comes
first.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Dict, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class TempAudioStore:
    """Owns the temp audio directory and the files written per session."""

    def __init__(self, directory: str, ttl_seconds: float = 30.0):
        self.directory = Path(directory)
        self.ttl_seconds = ttl_seconds
        self._by_session: Dict[str, Set[Path]] = {}
        self._timers: Dict[Path, asyncio.TimerHandle] = {}

    async def save(self, session_id: str, audio: bytes, suffix: str = ".ulaw") -> Path:
        """
        Write audio for a session without blocking the event loop.

        The file lives until `mark_delivered` starts its deletion timer or the
        session is purged.
        """
        path = self.directory / f"{session_id}_{uuid.uuid4().hex[:12]}{suffix}"
        await asyncio.to_thread(self._write, path, audio)
        self._by_session.setdefault(session_id, set()).add(path)
        return path

    def mark_delivered(self, session_id: str, path: Path) -> None:
        """Start the deletion countdown for an artifact whose audio was sent."""
        if path not in self._by_session.get(session_id, set()):
            return
        self._schedule_delete(session_id, path)

    def resolve(self, name: str) -> Optional[Path]:
        """Map a public file name back to a live artifact path."""
        candidate = self.directory / Path(name).name
        for paths in self._by_session.values():
            if candidate in paths:
                return candidate
        return None

    def session_files(self, session_id: str) -> Set[Path]:
        return set(self._by_session.get(session_id, set()))

    def purge_session(self, session_id: str) -> int:
        """Delete every artifact of a session now. Returns the number removed."""
        paths = self._by_session.pop(session_id, set())
        for path in paths:
            timer = self._timers.pop(path, None)
            if timer is not None:
                timer.cancel()
            self._unlink(path)
        if paths:
            logger.debug("Session audio purged", call_id=session_id, files=len(paths))
        return len(paths)

    def _write(self, path: Path, audio: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(audio)

    def _schedule_delete(self, session_id: str, path: Path) -> None:
        loop = asyncio.get_running_loop()
        timer = self._timers.pop(path, None)
        if timer is not None:
            timer.cancel()
        self._timers[path] = loop.call_later(self.ttl_seconds, self._expire, session_id, path)

    def _expire(self, session_id: str, path: Path) -> None:
        self._timers.pop(path, None)
        paths = self._by_session.get(session_id)
        if paths is not None:
            paths.discard(path)
            if not paths:
                del self._by_session[session_id]
        self._unlink(path)

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete temp audio", path=str(path), error=str(e))
