import asyncio
import copy
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from ..errors import PersistenceError
from ..models import (
    ANALYSIS_STYLES,
    Compaction,
    Message,
    Session,
    SummarizationRecord,
    UserPreferences,
    utcnow,
)
from ..settings import Settings, get_settings
from .storage import InMemoryStorage, StorageBackend

logger = logging.getLogger(__name__)

MAX_SUMMARIZATION_RECORDS = 10


class SessionStore:
    """Owns every Session: history, preferences and usage statistics.

    Mutations on one session id are serialized through a per-session lock;
    different sessions proceed independently. Every mutation writes the whole
    snapshot through the storage backend; a failed write is logged and the
    in-memory state stays authoritative.
    """

    def __init__(
        self,
        storage: StorageBackend | None = None,
        *,
        max_conversation_history: int = 50,
        max_recent_queries: int = 20,
        session_timeout: timedelta = timedelta(minutes=30),
    ) -> None:
        self._storage = storage if storage is not None else InMemoryStorage()
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._save_lock = asyncio.Lock()
        self.max_conversation_history = max_conversation_history
        self.max_recent_queries = max_recent_queries
        self.session_timeout = session_timeout

    @classmethod
    def from_settings(
        cls, storage: StorageBackend, settings: Settings | None = None
    ) -> "SessionStore":
        settings = settings or get_settings()
        return cls(
            storage,
            max_conversation_history=settings.max_conversation_history,
            max_recent_queries=settings.max_recent_queries,
            session_timeout=timedelta(minutes=settings.session_timeout_minutes),
        )

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # -- persistence -------------------------------------------------------

    async def load(self) -> int:
        """Load the snapshot once at startup. Returns the number of sessions loaded.

        A missing snapshot starts an empty store silently; an unreadable one
        starts an empty store with a warning.
        """
        try:
            snapshot = await self._storage.load()
        except PersistenceError as e:
            logger.warning("Failed to load memory, starting with empty memory: %s", e)
            return 0
        if not snapshot:
            return 0

        sessions: Dict[str, Session] = {}
        for session_id, data in (snapshot.get("sessions") or {}).items():
            try:
                sessions[session_id] = Session.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable session %s: %s", session_id, e)
        self._sessions = sessions
        logger.info("Loaded %d sessions from storage", len(sessions))
        return len(sessions)

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "sessions": {sid: s.to_dict() for sid, s in self._sessions.items()},
            "last_saved_at": utcnow().isoformat(),
        }

    async def _persist(self) -> bool:
        # The snapshot is taken inside the lock so the newest state is written last.
        async with self._save_lock:
            try:
                await self._storage.save(self._snapshot())
                return True
            except PersistenceError as e:
                logger.error("Failed to save memory: %s", e)
                return False

    async def close(self) -> None:
        await self._storage.close()

    # -- sessions ----------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    def _get_or_create_unlocked(self, session_id: str, user_id: str | None) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, user_id=user_id)
            self._sessions[session_id] = session
            logger.info("Created session %s", session_id)
        else:
            session.last_activity = utcnow()
            if user_id and not session.user_id:
                session.user_id = user_id
        return session

    async def get_or_create(self, session_id: str, user_id: str | None = None) -> Session:
        """Return or create the Session for session_id, touching last_activity."""
        async with self._lock(session_id):
            return self._get_or_create_unlocked(session_id, user_id)

    def _append_unlocked(self, session: Session, message: Message) -> None:
        history = session.conversation_history
        if history and message.timestamp < history[-1].timestamp:
            message.timestamp = history[-1].timestamp
        history.append(message)
        overflow = len(history) - self.max_conversation_history
        if overflow > 0:
            del history[:overflow]

        if message.role == "user":
            queries = session.stats.recent_queries
            queries.insert(0, message.content)
            del queries[self.max_recent_queries:]

        for tool in message.tools_used or []:
            counts = session.stats.tool_use_count
            counts[tool] = counts.get(tool, 0) + 1

        session.last_activity = max(session.last_activity, message.timestamp)

    async def add_message(self, session_id: str, message: Message) -> None:
        async with self._lock(session_id):
            session = self._get_or_create_unlocked(session_id, None)
            self._append_unlocked(session, message)
        await self._persist()

    async def update_preferences(
        self, session_id: str, partial: Dict[str, Any] | UserPreferences
    ) -> UserPreferences | None:
        """Shallow-merge known preference fields into the session's preferences."""
        if isinstance(partial, UserPreferences):
            partial = partial.to_dict()
        async with self._lock(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return None
            merged = session.preferences.to_dict()
            for key, value in partial.items():
                if key not in merged:
                    logger.debug("Ignoring unknown preference %s", key)
                elif key == "analysis_style" and value not in ANALYSIS_STYLES:
                    logger.debug("Ignoring invalid analysis_style %r", value)
                else:
                    merged[key] = copy.deepcopy(value)
            session.preferences = UserPreferences.from_dict(merged)
            result = session.preferences
        await self._persist()
        return result

    def _count_entities_unlocked(self, session: Session, entities: Iterable[str]) -> None:
        counts = session.stats.entity_access_count
        for entity in entities:
            counts[entity] = counts.get(entity, 0) + 1

    async def update_entity_access(self, session_id: str, entity: str) -> None:
        async with self._lock(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return
            self._count_entities_unlocked(session, [entity])
        await self._persist()

    def _record_unlocked(self, session: Session, record: SummarizationRecord) -> None:
        history = session.stats.summarization_history
        history.append(record)
        del history[:-MAX_SUMMARIZATION_RECORDS]
        session.stats.last_summarization = record

    def _compact_unlocked(self, session: Session, compaction: Compaction) -> bool:
        count = compaction.archived_count
        history = session.conversation_history
        if history[:count] != compaction.archived_messages:
            logger.warning(
                "History of %s changed since compaction was planned; skipping it",
                session.session_id,
            )
            return False
        history[:count] = [compaction.summary_message]
        self._record_unlocked(session, compaction.record)
        return True

    async def apply_compaction(self, session_id: str, compaction: Compaction) -> bool:
        """Replace the archived prefix with the summary message and log the record."""
        async with self._lock(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return False
            applied = self._compact_unlocked(session, compaction)
        if applied:
            await self._persist()
        return applied

    async def commit_turn(
        self,
        session_id: str,
        messages: List[Message],
        *,
        entities: Iterable[str] = (),
        compaction: Compaction | None = None,
        user_id: str | None = None,
    ) -> Session:
        """Apply one finished query turn in a single step.

        The staged compaction (if any) is applied first, then the turn's
        messages are appended in order and entity counters bumped. Nothing is
        awaited between the first and the last mutation.
        """
        async with self._lock(session_id):
            session = self._get_or_create_unlocked(session_id, user_id)
            if compaction is not None:
                self._compact_unlocked(session, compaction)
            self._count_entities_unlocked(session, entities)
            for message in messages:
                self._append_unlocked(session, message)
        await self._persist()
        return session

    async def export_session(self, session_id: str) -> Dict[str, Any] | None:
        async with self._lock(session_id):
            session = self._sessions.get(session_id)
            return session.to_dict() if session else None

    async def import_session(self, data: Dict[str, Any]) -> Session:
        session = Session.from_dict(data)
        async with self._lock(session.session_id):
            self._sessions[session.session_id] = session
        await self._persist()
        return session

    async def clear_session(self, session_id: str) -> bool:
        async with self._lock(session_id):
            removed = self._sessions.pop(session_id, None) is not None
        self._locks.pop(session_id, None)
        await self._persist()
        return removed

    async def cleanup_expired(self, now: datetime | None = None) -> List[str]:
        """Drop sessions idle for longer than the configured timeout."""
        now = now or utcnow()
        expired = [
            sid
            for sid, session in self._sessions.items()
            if now - session.last_activity > self.session_timeout
        ]
        for sid in expired:
            async with self._lock(sid):
                self._sessions.pop(sid, None)
            self._locks.pop(sid, None)
        if expired:
            logger.info("Removed %d expired sessions", len(expired))
            await self._persist()
        return expired

    # -- read-side views ---------------------------------------------------

    def session_stats(self, session_id: str) -> Dict[str, Any] | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return {
            "session_id": session.session_id,
            "user_id": session.user_id,
            "start_time": session.start_time.isoformat(),
            "last_activity": session.last_activity.isoformat(),
            "message_count": len(session.conversation_history),
            "recent_queries_count": len(session.stats.recent_queries),
            "frequently_accessed_entities": len(session.stats.entity_access_count),
            "frequently_used_tools": len(session.stats.tool_use_count),
        }

    def get_history(self, session_id: str, max_messages: int | None = None) -> List[Message]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        history = list(session.conversation_history)
        if max_messages:
            history = history[-max_messages:]
        return history

    def get_last_summarization(self, session_id: str) -> SummarizationRecord | None:
        session = self._sessions.get(session_id)
        return session.stats.last_summarization if session else None

    def get_summarization_history(
        self, session_id: str, limit: int | None = None
    ) -> List[SummarizationRecord]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        history = session.stats.summarization_history
        return list(history[-limit:] if limit else history)

    def summarization_overview(self, session_id: str) -> Dict[str, Any] | None:
        """Totals plus the last record, without archived messages."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        history = session.stats.summarization_history
        overview: Dict[str, Any] = {
            "total_summarizations": len(history),
            "total_tokens_saved": sum(r.tokens_saved for r in history),
        }
        last = session.stats.last_summarization
        if last is not None:
            overview["last_summarization"] = last.to_dict(include_archive=False)
        return overview
