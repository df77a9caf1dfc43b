"""Visit service: the one path every check-in, check-out and tap goes through.

validate (caller) -> serialize on the key -> read record -> engine transition
-> append history when finalized -> confirm the lease -> write record.
"""

from dataclasses import dataclass
from typing import List, Optional

from visit_tracker.config import Settings, settings as default_settings
from visit_tracker.errors import ValidationError
from visit_tracker.infrastructure.resilience import RetryPolicy
from visit_tracker.locations import LocationCatalog
from visit_tracker.obs.logger import log_event
from visit_tracker.obs.metrics import record_session_action
from visit_tracker.session.confidence import ConfidenceTable
from visit_tracker.session.engine import (
    AnchorEvent,
    EventKind,
    SessionAction,
    SessionEngine,
    Transition,
)
from visit_tracker.session.repository import (
    HistoryRepository,
    SessionRepository,
    history_lease_key,
    lease_key,
)
from visit_tracker.session.serializer import KeyedSerializer
from visit_tracker.store import KVStore, STORE_ERRORS
from visit_tracker.types import AnchorType, Location, SessionCandidate
from visit_tracker.utils.times import now_ms as wall_clock_ms


_LOG_EVENTS = {
    SessionAction.CREATED: "session_created",
    SessionAction.UPGRADED: "session_upgraded",
    SessionAction.DUPLICATE: "session_duplicate",
    SessionAction.FINALIZED: "session_finalized",
    SessionAction.NFC_CHECKIN: "session_created",
    SessionAction.NFC_UPGRADE: "session_upgraded",
    SessionAction.NFC_CHECKOUT: "session_finalized",
}


@dataclass
class CleanupResult:
    before: int
    kept: List[SessionCandidate]

    @property
    def removed(self) -> int:
        return self.before - len(self.kept)


class VisitService:
    def __init__(
        self,
        store: KVStore,
        catalog: Optional[LocationCatalog] = None,
        engine: Optional[SessionEngine] = None,
        config: Settings = None,
    ):
        self.config = config or default_settings
        self.store = store
        self.catalog = catalog or LocationCatalog()
        self.engine = engine or SessionEngine(
            ConfidenceTable.from_settings(self.config),
            window_ms=self.config.session_window_ms,
        )
        retry = RetryPolicy(
            max_attempts=self.config.STORE_RETRY_ATTEMPTS,
            backoff_base=self.config.STORE_RETRY_BACKOFF_BASE,
            max_delay=self.config.STORE_RETRY_MAX_DELAY,
            retry_on=STORE_ERRORS,
        )
        self.sessions = SessionRepository(store, retry, self.config)
        self.history = HistoryRepository(store, retry, self.config)
        self.serializer = KeyedSerializer(
            store,
            lease_ttl_ms=self.config.LEASE_TTL_MS,
            wait_seconds=self.config.LEASE_WAIT_SECONDS,
        )

    @property
    def storage(self) -> str:
        return getattr(self.store, "backend", "unknown")

    def location(self, location_id: str) -> Location:
        location = self.catalog.get(location_id)
        if location is None:
            valid = self.catalog.ids()
            raise ValidationError(
                f"Unknown locationId: {location_id}. Valid locations: {', '.join(valid)}",
                validLocations=valid,
            )
        return location

    async def _apply(
        self,
        kind: EventKind,
        user_id: str,
        location_id: str,
        now_ms: Optional[int],
        anchor_type: Optional[AnchorType] = None,
    ) -> Transition:
        location = self.location(location_id)
        async with self.serializer.hold(lease_key(user_id, location_id)) as lease:
            now = now_ms if now_ms is not None else wall_clock_ms()
            current = await self.sessions.get(user_id, location_id)
            event = AnchorEvent(
                kind=kind,
                user_id=user_id,
                location_id=location_id,
                location_name=location.name,
                now_ms=now,
                anchor_type=anchor_type,
            )
            transition = self.engine.transition(current, event)

            if transition.mutated:
                lease.confirm()
                if transition.finalized:
                    # History first: if the session write fails the record stays
                    # pending and the retried checkout replaces this entry by id.
                    # History is shared by all of the user's locations.
                    async with self.serializer.hold(history_lease_key(user_id)) as history_lease:
                        await self.history.append(user_id, transition.record, guard=history_lease.confirm)
                    lease.confirm()
                await self.sessions.put(transition.record, now)

        record = transition.record
        record_session_action(transition.action.value)
        log_event(
            _LOG_EVENTS[transition.action],
            action=transition.action.value,
            session_id=record.id,
            location=location.name,
            anchors=[a.type.value for a in record.anchors],
            confidence=record.confidence_score,
            duration_min=record.duration_minutes,
        )
        return transition

    async def checkin(self, user_id: str, location_id: str, anchor_type: AnchorType,
                      now_ms: Optional[int] = None) -> Transition:
        return await self._apply(EventKind.CORROBORATE, user_id, location_id, now_ms, anchor_type)

    async def checkout(self, user_id: str, location_id: str, now_ms: Optional[int] = None,
                       exit_anchor: Optional[AnchorType] = None) -> Transition:
        return await self._apply(EventKind.FINALIZE, user_id, location_id, now_ms, exit_anchor)

    async def tap(self, user_id: str, location_id: str, now_ms: Optional[int] = None) -> Transition:
        return await self._apply(EventKind.SMART_TAP, user_id, location_id, now_ms)

    async def current(self, user_id: str, location_id: str) -> Optional[SessionCandidate]:
        return await self.sessions.get(user_id, location_id)

    async def recent_sessions(self, user_id: str, limit: int = 20) -> List[SessionCandidate]:
        history = await self.history.list(user_id)
        history.sort(key=lambda s: s.last_activity(), reverse=True)
        return history[:limit]

    async def cleanup_history(self, user_id: str, keep_ids: List[str]) -> CleanupResult:
        keep = set(keep_ids)
        async with self.serializer.hold(history_lease_key(user_id)) as lease:
            history = await self.history.list(user_id)
            kept = [s for s in history if s.id in keep]
            await self.history.replace(user_id, kept, guard=lease.confirm)
        log_event("history_cleanup", user_id=user_id, before=len(history), after=len(kept))
        return CleanupResult(before=len(history), kept=kept)
