# visit_tracker/config.py
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App
    APP_ENV: Literal["dev", "prod", "staging"] = "dev"

    # Redis
    REDIS_URL: Optional[str] = None
    ALLOW_MEMORY_FALLBACK: bool = False  # single-instance only, see DESIGN.md

    # Session lifecycle
    SESSION_WINDOW_HOURS: int = 4
    FINALIZED_RETENTION_SECONDS: int = 24 * 60 * 60  # finalized records stay queryable for a day
    HISTORY_MAX_ENTRIES: int = 50
    HISTORY_TTL_SECONDS: int = 30 * 24 * 60 * 60  # 30 days

    # Confidence ladder
    CONFIDENCE_CAP: float = 0.65  # full anchor chain
    BOOST_GEOFENCE: float = 0.15
    BOOST_GEOFENCE_EXIT: float = 0.10
    BOOST_NFC: float = 0.25
    BOOST_NFC_EXIT: float = 0.15
    BOOST_WIFI_BSSID: float = 0.10

    # Store resilience
    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF_BASE: float = 0.05  # seconds, doubled per attempt
    STORE_RETRY_MAX_DELAY: float = 1.0
    LEASE_TTL_MS: int = 5000
    LEASE_WAIT_SECONDS: float = 3.0

    # Optional JSON file replacing the built-in location catalog
    LOCATIONS_FILE: Optional[str] = None

    # read .env and ignore any extra keys so this doesn't break again
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def session_window_ms(self) -> int:
        return self.SESSION_WINDOW_HOURS * 60 * 60 * 1000

settings = Settings()
