"""Engine configuration."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_TIMEZONE = "America/New_York"

FEED_CACHE_TTL_SECONDS = 15
BOARD_CACHE_TTL_SECONDS = 60
ALERTS_CACHE_TTL_SECONDS = 60
FEED_TIMEOUT_SECONDS = 15.0


@dataclass
class EngineConfig:
    """Settings shared by the feed client, schedule resolver and board builder."""
    data_dir: Path = Path("data")
    api_key: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    feed_timeout: float = FEED_TIMEOUT_SECONDS
    feed_cache_ttl: int = FEED_CACHE_TTL_SECONDS
    board_cache_ttl: int = BOARD_CACHE_TTL_SECONDS
    alerts_cache_ttl: int = ALERTS_CACHE_TTL_SECONDS

    @property
    def stops_path(self) -> Path:
        return self.data_dir / "stops.txt"

    @property
    def trips_path(self) -> Path:
        return self.data_dir / "trips.txt"

    @property
    def stop_times_path(self) -> Path:
        return self.data_dir / "stop_times.txt"

    @property
    def snapshot_path(self) -> Path:
        return self.data_dir / "schedule-cache.json"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from TRAINPULSE_* and MTA_API_KEY environment variables."""
        return cls(
            data_dir=Path(os.environ.get("TRAINPULSE_DATA_DIR", "data")),
            api_key=os.environ.get("MTA_API_KEY") or None,
            timezone=os.environ.get("TRAINPULSE_TIMEZONE", DEFAULT_TIMEZONE),
            feed_timeout=float(os.environ.get("TRAINPULSE_FEED_TIMEOUT", FEED_TIMEOUT_SECONDS)),
        )
