"""
Per-device conversation history.

Sessions are partitioned by business day: the day starts at 06:00 in the
shop's timezone, so a message at 05:59 still belongs to the previous day.
The in-memory map is only a cache; durable copies live in Supabase and are
never deleted by eviction or /api/chat/clear.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from starlette.concurrency import run_in_threadpool

from .models import Message


logger = logging.getLogger("app.conversation_store")

ANONYMOUS_DEVICE = "anonymous"
SESSION_BOUNDARY_HOUR = 6

DEVICE_ID_RE = re.compile(
    r"^dev_[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_device_id(raw: Optional[str]) -> bool:
    return bool(raw) and bool(DEVICE_ID_RE.match(raw.strip()))


def resolve_device_id(raw: Optional[str]) -> str:
    """Unvalidated clients share the anonymous pool instead of failing."""
    if is_valid_device_id(raw):
        return raw.strip()
    return ANONYMOUS_DEVICE


def business_day(now: datetime, tz: ZoneInfo, boundary_hour: int = SESSION_BOUNDARY_HOUR) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    if local.hour < boundary_hour:
        return local.date() - timedelta(days=1)
    return local.date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SupabasePersistence:
    """Durable copy of each device's daily session, one row per (device, day)."""

    def __init__(self, client: Any, table: str = "chat_sessions"):
        self.client = client
        self.table = table

    @staticmethod
    def row_id(device_id: str, session_date: date) -> str:
        return f"{device_id}_{session_date.isoformat()}"

    def save(self, device_id: str, session_date: date, messages: List[Dict[str, Any]]) -> bool:
        row = {
            "id": self.row_id(device_id, session_date),
            "device_id": device_id,
            "session_date": session_date.isoformat(),
            "messages": messages,
            "message_count": len(messages),
            "updated_at": utc_now().isoformat(),
        }
        try:
            self.client.table(self.table).upsert(row).execute()
            return True
        except Exception as e:
            logger.error("Failed to persist conversation %s: %s", row["id"], e)
            return False

    def load(self, device_id: str, session_date: date) -> List[Message]:
        row_id = self.row_id(device_id, session_date)
        try:
            resp = self.client.table(self.table).select("messages").eq("id", row_id).limit(1).execute()
        except Exception as e:
            logger.error("Failed to load conversation %s: %s", row_id, e)
            return []
        rows = getattr(resp, "data", None) or []
        if not rows:
            return []
        out: List[Message] = []
        for raw in rows[0].get("messages") or []:
            try:
                out.append(Message.model_validate(raw))
            except ValueError as e:
                logger.warning("Skipping stored message in %s: %s", row_id, e)
        return out


def create_supabase_persistence(url: str, key: str, table: str) -> SupabasePersistence:
    from supabase import create_client

    return SupabasePersistence(create_client(url, key), table)


@dataclass
class _Session:
    session_date: date
    messages: List[Message] = field(default_factory=list)
    last_access: float = 0.0


class ConversationStore:
    def __init__(
        self,
        persistence: Optional[SupabasePersistence] = None,
        tz: str = "Europe/Madrid",
        idle_seconds: int = 7200,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.persistence = persistence
        self.tz = ZoneInfo(tz)
        self.idle_seconds = idle_seconds
        self.clock = clock
        self._sessions: Dict[str, _Session] = {}

    @property
    def persistence_configured(self) -> bool:
        return self.persistence is not None

    def today(self) -> date:
        return business_day(self.clock(), self.tz)

    def evict_idle(self) -> int:
        cutoff = self.clock().timestamp() - self.idle_seconds
        stale = [d for d, s in self._sessions.items() if s.last_access < cutoff]
        for device_id in stale:
            del self._sessions[device_id]
        if stale:
            logger.info("Evicted %d idle conversations from memory", len(stale))
        return len(stale)

    async def _session(self, device_id: str) -> _Session:
        self.evict_idle()
        today = self.today()
        session = self._sessions.get(device_id)
        if session is None or session.session_date != today:
            messages: List[Message] = []
            if self.persistence is not None:
                messages = await run_in_threadpool(self.persistence.load, device_id, today)
            session = _Session(session_date=today, messages=messages)
            self._sessions[device_id] = session
        session.last_access = self.clock().timestamp()
        return session

    async def load(self, device_id: str) -> List[Message]:
        session = await self._session(device_id)
        return list(session.messages)

    async def append(self, device_id: str, message: Message) -> None:
        session = await self._session(device_id)
        session.messages.append(message)

    def clear(self, device_id: str) -> bool:
        return self._sessions.pop(device_id, None) is not None

    def snapshot(self, device_id: str) -> Optional[Tuple[date, List[Dict[str, Any]]]]:
        session = self._sessions.get(device_id)
        if session is None:
            return None
        payload = [m.model_dump(by_alias=True, exclude_none=True) for m in session.messages]
        return session.session_date, payload

    def __len__(self) -> int:
        return len(self._sessions)
