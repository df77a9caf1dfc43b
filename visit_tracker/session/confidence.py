from typing import Dict, Iterable, Optional

from visit_tracker.config import Settings, settings as default_settings
from visit_tracker.types import Anchor, AnchorType


class ConfidenceTable:
    """Per-anchor confidence increments and the cap on their sum."""

    def __init__(self, increments: Dict[AnchorType, float], cap: float):
        missing = [t.value for t in AnchorType if t not in increments]
        if missing:
            raise ValueError(f"No confidence increment for anchor types: {', '.join(missing)}")
        self.increments = dict(increments)
        self.cap = cap

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "ConfidenceTable":
        config = config or default_settings
        return cls(
            {
                AnchorType.GEOFENCE: config.BOOST_GEOFENCE,
                AnchorType.GEOFENCE_EXIT: config.BOOST_GEOFENCE_EXIT,
                AnchorType.NFC: config.BOOST_NFC,
                AnchorType.NFC_EXIT: config.BOOST_NFC_EXIT,
                AnchorType.WIFI_BSSID: config.BOOST_WIFI_BSSID,
            },
            cap=config.CONFIDENCE_CAP,
        )

    def increment(self, anchor_type: AnchorType) -> float:
        return self.increments[anchor_type]

    def score(self, anchors: Iterable[Anchor]) -> float:
        # Cap the sum, not each increment; round away float noise (0.15 + 0.25 -> 0.4)
        total = sum(a.confidence_increment for a in anchors)
        return round(min(total, self.cap), 6)
