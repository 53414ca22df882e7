"""
Call history export.

Each finished call is written once as a JSON document containing the
transcript and the captured order.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field

from src.dialer.session import CallSession

logger = structlog.get_logger(__name__)


class HistoryMessage(BaseModel):
    role: str
    content: str
    timestamp: float


class HistoryLineItem(BaseModel):
    product: str
    quantity: int = Field(gt=0)
    price_per_case: str
    total: str


class HistoryOrder(BaseModel):
    customer_name: str = ""
    hotel_name: str = ""
    products: List[HistoryLineItem] = Field(default_factory=list)
    total: str = "0"
    recommended_products: List[str] = Field(default_factory=list)


class HistoryFile(BaseModel):
    """A saved call as listed by the history endpoint."""
    filename: str
    size: int
    modified: float


class CallHistoryRecord(BaseModel):
    """Persisted shape of a finished call."""
    call_id: str
    call_sid: str = ""
    phone_number: str = ""
    started_at: float
    ended_at: Optional[float] = None
    ended_reason: Optional[str] = None
    transcript: List[HistoryMessage] = Field(default_factory=list)
    order: HistoryOrder = Field(default_factory=HistoryOrder)

    @classmethod
    def from_session(cls, session: CallSession) -> "CallHistoryRecord":
        return cls(
            call_id=session.id,
            call_sid=session.call_sid,
            phone_number=session.phone_number,
            started_at=session.start_time,
            ended_at=session.ended_at,
            ended_reason=session.ended_reason,
            transcript=[
                HistoryMessage(role=m.role.value, content=m.content, timestamp=m.timestamp)
                for m in session.transcript
            ],
            order=HistoryOrder(**session.order.to_dict()),
        )


class HistoryStore(ABC):
    """Receives the transcript and order of every finished call."""

    @abstractmethod
    async def save(self, session: CallSession) -> Optional[Path]:
        """Persist a finished call. Returns where it was written, if anywhere."""
        ...

    def list_files(self) -> List[HistoryFile]:
        """Saved calls, newest first. Stores that keep nothing browsable return none."""
        return []

    def load_by_name(self, filename: str) -> Optional[CallHistoryRecord]:
        return None


class JsonFileHistoryStore(HistoryStore):
    """Writes `call_<id>_<timestamp>.json` files into a directory; never overwrites."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def path_for(self, session: CallSession) -> Path:
        ts = datetime.fromtimestamp(session.ended_at or session.start_time, tz=timezone.utc)
        return self.directory / f"{session.id}_{ts.strftime('%Y%m%dT%H%M%SZ')}.json"

    async def save(self, session: CallSession) -> Optional[Path]:
        record = CallHistoryRecord.from_session(session)
        path = self.path_for(session)
        written = await asyncio.to_thread(self._write_once, path, record.model_dump_json(indent=2))
        if written:
            logger.info("Call history saved", call_id=session.id, path=str(path))
            return path
        logger.warning("Call history already exists", call_id=session.id, path=str(path))
        return None

    def load(self, path: Path) -> CallHistoryRecord:
        return CallHistoryRecord.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def list_files(self) -> List[HistoryFile]:
        if not self.directory.is_dir():
            return []
        files = []
        for path in self.directory.glob("*.json"):
            stat = path.stat()
            files.append(HistoryFile(filename=path.name, size=stat.st_size, modified=stat.st_mtime))
        files.sort(key=lambda f: (f.modified, f.filename), reverse=True)
        return files

    def resolve(self, filename: str) -> Optional[Path]:
        """
        Map a listed file name back to its path.

        Only bare `*.json` names inside the history directory resolve.
        """
        if not filename or Path(filename).name != filename or not filename.endswith(".json"):
            return None
        path = self.directory / filename
        return path if path.is_file() else None

    def load_by_name(self, filename: str) -> Optional[CallHistoryRecord]:
        path = self.resolve(filename)
        if path is None:
            return None
        return self.load(path)

    def _write_once(self, path: Path, payload: str) -> bool:
        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(payload)
        except FileExistsError:
            return False
        return True
