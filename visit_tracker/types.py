from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AnchorType(str, Enum):
    GEOFENCE = "geofence"
    GEOFENCE_EXIT = "geofence_exit"
    NFC = "nfc"
    NFC_EXIT = "nfc_exit"
    WIFI_BSSID = "wifi_bssid"


# Anchor types a client may send to /checkin and /checkout respectively
CHECKIN_ANCHOR_TYPES: Tuple[AnchorType, ...] = (
    AnchorType.GEOFENCE,
    AnchorType.NFC,
    AnchorType.WIFI_BSSID,
)
EXIT_ANCHOR_TYPES: Tuple[AnchorType, ...] = (
    AnchorType.GEOFENCE_EXIT,
    AnchorType.NFC_EXIT,
)


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"  # reserved, no transition assigns it
    FINALIZED = "finalized"


class _CamelModel(BaseModel):
    # Stored and served with camelCase keys, constructed with snake_case names
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Anchor(_CamelModel):
    model_config = ConfigDict(frozen=True)

    type: AnchorType
    confidence_increment: float
    observed_at: int = Field(..., description="epoch milliseconds")


class SessionCandidate(_CamelModel):
    id: str
    user_id: str
    location_id: str
    location_name: str
    anchors: List[Anchor] = Field(default_factory=list)
    confidence_score: float = 0.0
    status: SessionStatus = SessionStatus.PENDING
    created_at: int
    updated_at: int
    expires_at: int
    ended_at: Optional[int] = None
    duration_minutes: Optional[int] = None

    def has_anchor(self, anchor_type: AnchorType) -> bool:
        return any(a.type == anchor_type for a in self.anchors)

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at

    def is_live(self, now_ms: int) -> bool:
        """Pending and inside its window: the one record a key may hold open."""
        return self.status == SessionStatus.PENDING and not self.is_expired(now_ms)

    def last_activity(self) -> int:
        return self.ended_at or self.created_at


class Location(BaseModel):
    id: str
    name: str
    address: Optional[str] = None
    coords: Optional[Tuple[float, float]] = None
