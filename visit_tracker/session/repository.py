import json
import math
from typing import Any, Callable, List, Optional

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from visit_tracker.config import Settings, settings as default_settings
from visit_tracker.errors import StoreUnavailable
from visit_tracker.infrastructure.resilience import RetryPolicy
from visit_tracker.obs.logger import log_event
from visit_tracker.obs.metrics import inc_counter
from visit_tracker.store import KVStore, STORE_ERRORS
from visit_tracker.types import SessionCandidate, SessionStatus


_HISTORY_ADAPTER = TypeAdapter(List[SessionCandidate])


def session_key(user_id: str, location_id: str) -> str:
    return f"session:{user_id}:{location_id}"


def history_key(user_id: str) -> str:
    return f"history:{user_id}"


def lease_key(user_id: str, location_id: str) -> str:
    return f"lock:{session_key(user_id, location_id)}"


def history_lease_key(user_id: str) -> str:
    return f"lock:{history_key(user_id)}"


class _StoreBacked:
    def __init__(self, store: KVStore, retry: Optional[RetryPolicy] = None):
        self.store = store
        self.retry = retry or RetryPolicy(retry_on=STORE_ERRORS)

    async def _call(self, op: str, func: Callable, *args) -> Any:
        try:
            return await self.retry.execute_with_retry(func, *args, op=op)
        except STORE_ERRORS as e:
            inc_counter("store_errors_total", {"op": op})
            log_event("store_unavailable", level="ERROR", op=op, error=str(e))
            raise StoreUnavailable("Session store unavailable, try again shortly.") from e


class SessionRepository(_StoreBacked):
    """Reads and writes one SessionCandidate per (user, location)."""

    def __init__(self, store: KVStore, retry: Optional[RetryPolicy] = None, config: Settings = None):
        super().__init__(store, retry)
        self.config = config or default_settings

    async def get(self, user_id: str, location_id: str) -> Optional[SessionCandidate]:
        raw = await self._call("session_get", self.store.get, session_key(user_id, location_id))
        if not raw:
            return None
        try:
            return SessionCandidate.model_validate_json(raw)
        except PydanticValidationError as e:
            # Unreadable record: behave as if the key were empty so a new visit can start
            log_event("session_record_corrupt", level="ERROR", key=session_key(user_id, location_id),
                      error=str(e))
            return None

    def ttl_for(self, record: SessionCandidate, now_ms: int) -> int:
        if record.status == SessionStatus.FINALIZED:
            return self.config.FINALIZED_RETENTION_SECONDS
        return max(1, math.ceil((record.expires_at - now_ms) / 1000))

    async def put(self, record: SessionCandidate, now_ms: int) -> int:
        ttl = self.ttl_for(record, now_ms)
        await self._call(
            "session_set",
            self.store.set,
            session_key(record.user_id, record.location_id),
            record.model_dump_json(by_alias=True),
            ttl,
        )
        return ttl


class HistoryRepository(_StoreBacked):
    """Per-user list of finalized sessions, newest appended last."""

    def __init__(self, store: KVStore, retry: Optional[RetryPolicy] = None, config: Settings = None):
        super().__init__(store, retry)
        self.config = config or default_settings

    async def list(self, user_id: str) -> List[SessionCandidate]:
        raw = await self._call("history_get", self.store.get, history_key(user_id))
        if not raw:
            return []
        try:
            return _HISTORY_ADAPTER.validate_json(raw)
        except PydanticValidationError as e:
            log_event("history_corrupt", level="ERROR", user_id=user_id, error=str(e))
            return []

    async def _write(self, user_id: str, snapshots: List[SessionCandidate]) -> None:
        payload = json.dumps([s.model_dump(mode="json", by_alias=True) for s in snapshots])
        await self._call("history_set", self.store.set, history_key(user_id), payload,
                         self.config.HISTORY_TTL_SECONDS)

    async def append(self, user_id: str, snapshot: SessionCandidate,
                     guard: Optional[Callable[[], None]] = None) -> List[SessionCandidate]:
        """Add a finalized session, replacing an earlier entry with the same id.

        ``guard`` runs between the read and the write and may raise to abort.
        """
        history = [s for s in await self.list(user_id) if s.id != snapshot.id]
        history.append(snapshot)
        limit = self.config.HISTORY_MAX_ENTRIES
        if len(history) > limit:
            history = history[-limit:]
        if guard is not None:
            guard()
        await self._write(user_id, history)
        return history

    async def replace(self, user_id: str, snapshots: List[SessionCandidate],
                      guard: Optional[Callable[[], None]] = None) -> None:
        if guard is not None:
            guard()
        await self._write(user_id, snapshots)
