"""Session aggregation state machine.

Decides, for one incoming event and the currently stored record, what the
next record looks like and which action that was. Pure: no I/O, no clock
reads, input records are never mutated.

States for a (user, location) key:

    Absent    no record, an expired record, or a finalized one
    Pending   open session inside its window
    Finalized closed session, kept briefly for lookup

    Absent  --corroborate(t)-->          Pending   created
    Pending --corroborate(t), new t-->   Pending   upgraded
    Pending --corroborate(t), seen t-->  Pending   duplicate (no change)
    Pending --finalize-->                Finalized finalized
    Absent  --smart_tap-->               Pending   nfc_checkin
    Pending --smart_tap, no nfc-->       Pending   nfc_upgrade
    Pending --smart_tap, has nfc-->      Finalized nfc_checkout (+ nfc_exit)

finalize on Absent raises NoOpenSession, on a stored finalized record
AlreadyFinalized.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import math
import random
import string
import time

from visit_tracker.errors import AlreadyFinalized, NoOpenSession
from visit_tracker.session.confidence import ConfidenceTable
from visit_tracker.types import Anchor, AnchorType, SessionCandidate, SessionStatus


class EventKind(str, Enum):
    CORROBORATE = "corroborate"
    FINALIZE = "finalize"
    SMART_TAP = "smart_tap"


class SessionAction(str, Enum):
    CREATED = "created"
    UPGRADED = "upgraded"
    DUPLICATE = "duplicate"
    FINALIZED = "finalized"
    NFC_CHECKIN = "nfc_checkin"
    NFC_UPGRADE = "nfc_upgrade"
    NFC_CHECKOUT = "nfc_checkout"


@dataclass(frozen=True)
class AnchorEvent:
    kind: EventKind
    user_id: str
    location_id: str
    location_name: str
    now_ms: int
    # corroborate: the anchor to add; finalize: optional exit anchor
    anchor_type: Optional[AnchorType] = None


@dataclass(frozen=True)
class Transition:
    record: SessionCandidate
    action: SessionAction
    previous: Optional[SessionCandidate] = None

    @property
    def mutated(self) -> bool:
        return self.action != SessionAction.DUPLICATE

    @property
    def finalized(self) -> bool:
        return self.record.status == SessionStatus.FINALIZED


_B36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _B36[r] + out
        if n == 0:
            return out


def generate_session_id() -> str:
    """SC-<base36 ms>-<6 random chars>, upper-cased."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_B36, k=6))
    return f"SC-{stamp}-{suffix}".upper()


def duration_minutes(start_ms: int, end_ms: int) -> int:
    # half-up, so a 30-second visit counts as one minute
    return int(math.floor((end_ms - start_ms) / 60000 + 0.5))


class SessionEngine:
    def __init__(
        self,
        confidence: ConfidenceTable,
        window_ms: int,
        id_factory: Callable[[], str] = generate_session_id,
    ):
        self.confidence = confidence
        self.window_ms = window_ms
        self.id_factory = id_factory

    def transition(self, current: Optional[SessionCandidate], event: AnchorEvent) -> Transition:
        live = current if current is not None and current.is_live(event.now_ms) else None

        if event.kind == EventKind.CORROBORATE:
            if event.anchor_type is None:
                raise ValueError("corroborate events need an anchor_type")
            if live is None:
                return Transition(self._create(event, event.anchor_type), SessionAction.CREATED, current)
            if live.has_anchor(event.anchor_type):
                return Transition(live, SessionAction.DUPLICATE, current)
            return Transition(self._append(live, event.anchor_type, event.now_ms), SessionAction.UPGRADED, current)

        if event.kind == EventKind.FINALIZE:
            if live is None:
                if current is not None and current.status == SessionStatus.FINALIZED:
                    raise AlreadyFinalized("Session already finalized.", session_id=current.id)
                raise NoOpenSession(
                    f"No open session found for {event.location_name}. Did you check in first?"
                )
            record = live
            if event.anchor_type is not None and not record.has_anchor(event.anchor_type):
                record = self._append(record, event.anchor_type, event.now_ms)
            return Transition(self._finalize(record, event.now_ms), SessionAction.FINALIZED, current)

        if event.kind == EventKind.SMART_TAP:
            if live is None:
                return Transition(self._create(event, AnchorType.NFC), SessionAction.NFC_CHECKIN, current)
            if not live.has_anchor(AnchorType.NFC):
                return Transition(self._append(live, AnchorType.NFC, event.now_ms), SessionAction.NFC_UPGRADE, current)
            record = live
            if not record.has_anchor(AnchorType.NFC_EXIT):
                record = self._append(record, AnchorType.NFC_EXIT, event.now_ms)
            return Transition(self._finalize(record, event.now_ms), SessionAction.NFC_CHECKOUT, current)

        raise ValueError(f"Unknown event kind: {event.kind}")

    def _anchor(self, anchor_type: AnchorType, now_ms: int) -> Anchor:
        return Anchor(
            type=anchor_type,
            confidence_increment=self.confidence.increment(anchor_type),
            observed_at=now_ms,
        )

    def _create(self, event: AnchorEvent, anchor_type: AnchorType) -> SessionCandidate:
        anchors = [self._anchor(anchor_type, event.now_ms)]
        return SessionCandidate(
            id=self.id_factory(),
            user_id=event.user_id,
            location_id=event.location_id,
            location_name=event.location_name,
            anchors=anchors,
            confidence_score=self.confidence.score(anchors),
            status=SessionStatus.PENDING,
            created_at=event.now_ms,
            updated_at=event.now_ms,
            expires_at=event.now_ms + self.window_ms,
        )

    def _append(self, record: SessionCandidate, anchor_type: AnchorType, now_ms: int) -> SessionCandidate:
        anchors = [*record.anchors, self._anchor(anchor_type, now_ms)]
        return record.model_copy(update={
            "anchors": anchors,
            "confidence_score": self.confidence.score(anchors),
            "updated_at": now_ms,
        })

    def _finalize(self, record: SessionCandidate, now_ms: int) -> SessionCandidate:
        return record.model_copy(update={
            "status": SessionStatus.FINALIZED,
            "confidence_score": self.confidence.score(record.anchors),
            "ended_at": now_ms,
            "updated_at": now_ms,
            "duration_minutes": duration_minutes(record.created_at, now_ms),
        })
