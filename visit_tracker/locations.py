import json
from pathlib import Path
from typing import Dict, List, Optional

from visit_tracker.config import settings
from visit_tracker.types import Location


DEFAULT_LOCATIONS: List[Location] = [
    Location(
        id="golds-venice",
        name="Gold's Gym Venice",
        address="360 Hampton Dr, Venice, CA 90291",
        coords=(33.9925, -118.4695),
    ),
    Location(
        id="jfm-boxing",
        name="JFM Boxing Club",
        address="3127 Washington Blvd Unit 1, Venice, CA 90292",
        coords=(33.9983, -118.4518),
    ),
    Location(
        id="gracie-originals",
        name="Gracie Originals",
        address="1934 14th St, Santa Monica, CA 90404",
        coords=(34.0195, -118.4695),
    ),
]


class LocationCatalog:
    """Known check-in locations keyed by id."""

    def __init__(self, locations: Optional[List[Location]] = None):
        self._by_id: Dict[str, Location] = {
            loc.id: loc for loc in (locations if locations is not None else DEFAULT_LOCATIONS)
        }

    @classmethod
    def from_file(cls, path: str) -> "LocationCatalog":
        # Expected shape: [{"id": ..., "name": ..., "address": ..., "coords": [lat, lon]}, ...]
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls([Location.model_validate(item) for item in raw])

    def get(self, location_id: str) -> Optional[Location]:
        return self._by_id.get(location_id)

    def ids(self) -> List[str]:
        return list(self._by_id.keys())

    def all(self) -> List[Location]:
        return list(self._by_id.values())


def load_catalog() -> LocationCatalog:
    if settings.LOCATIONS_FILE:
        return LocationCatalog.from_file(settings.LOCATIONS_FILE)
    return LocationCatalog()
