"""Main TransitEngine class."""

import logging
from datetime import datetime
from typing import Any, Iterable, List, Optional, Union

import requests

from .arrivals import ArrivalBoardBuilder
from .cache import MemoryCache, SafeCache
from .config import EngineConfig
from .gtfs_loader import StopDirectory
from .models import ArrivalBoard, ArrivalItem, FeedEntity, ServiceAlert, TrainPosition
from .mta_client import FeedClient
from .positions import calculate_train_positions
from .schedule import ArrivalQuery, DelayResult, ScheduleDelayResolver
from .timeutils import TimeLike

logger = logging.getLogger(__name__)


class TransitEngine:
    """
    Real-time feed engine for MTA subway data.

    This class provides methods to:
    - Fetch and decode GTFS-Realtime trip updates per feed group
    - Interpolate train positions between stops
    - Compute delays against the published schedule
    - Build per-stop arrival boards
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        stops: Optional[StopDirectory] = None,
        load_stops: bool = True,
        cache: Optional[Any] = None,
        enable_cache: bool = True,
        session: Optional[requests.Session] = None,
        resolver: Optional[ScheduleDelayResolver] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Engine settings; defaults to EngineConfig.from_env().
            stops: Preloaded stop directory. If None and load_stops is True,
                stops.txt is read from the configured data directory.
            load_stops: Read stops.txt on init when no directory is given.
            cache: Cache backend with get/set(key, value, ttl_seconds).
            enable_cache: Create an in-memory cache when no backend is given.
            session: requests session used for feed downloads.
            resolver: Schedule resolver; built from config when omitted. Its
                index is loaded on first delay lookup.

        Raises:
            ScheduleLoadError: If stops.txt cannot be loaded.
        """
        self.config = config or EngineConfig.from_env()

        if stops is not None:
            self.stops = stops
        elif load_stops:
            self.stops = StopDirectory.from_file(self.config.stops_path)
        else:
            self.stops = StopDirectory()

        if cache is None and enable_cache:
            cache = MemoryCache()
        self.cache = SafeCache(cache)

        self.feed_client = FeedClient(self.stops, self.config, cache=self.cache, session=session)
        self.boards = ArrivalBoardBuilder(self.feed_client, self.stops, self.config, cache=self.cache)
        self.resolver = resolver or ScheduleDelayResolver.from_config(self.config)

    def fetch_feed(self, group_id: str, use_cache: bool = True) -> List[FeedEntity]:
        return self.feed_client.fetch_feed(group_id, use_cache=use_cache)

    def fetch_all_feeds(self, use_cache: bool = True) -> List[FeedEntity]:
        return self.feed_client.fetch_all_feeds(use_cache=use_cache)

    def fetch_alerts(self, route_ids: Optional[Iterable[str]] = None, use_cache: bool = True) -> List[ServiceAlert]:
        return self.feed_client.fetch_alerts(route_ids, use_cache=use_cache)

    def calculate_train_positions(
        self, entities: Iterable[FeedEntity], now: Optional[datetime] = None
    ) -> List[TrainPosition]:
        return calculate_train_positions(entities, self.stops, now=now)

    def calculate_delay(
        self, trip_id: str, stop_id: str, actual_arrival: TimeLike, route_id: Optional[str] = None
    ) -> Optional[int]:
        return self.resolver.calculate_delay(trip_id, stop_id, actual_arrival, route_id)

    def resolve_delay(
        self, trip_id: str, stop_id: str, actual_arrival: TimeLike, route_id: Optional[str] = None
    ) -> DelayResult:
        return self.resolver.resolve_delay(trip_id, stop_id, actual_arrival, route_id)

    def calculate_delays_batch(self, items: Iterable[Union[ArrivalQuery, tuple]]) -> dict:
        return self.resolver.calculate_delays_batch(items)

    def get_arrival_board(
        self, group_id: str, stop_id: str, use_cache: bool = True, now: Optional[datetime] = None
    ) -> ArrivalBoard:
        return self.boards.get_arrival_board(group_id, stop_id, use_cache=use_cache, now=now)

    def get_arrivals_for_station(self, stop_id: str, use_cache: bool = True) -> List[ArrivalItem]:
        return self.boards.get_arrivals_for_station(stop_id, use_cache=use_cache)

    def cleanup(self) -> None:
        """Release the HTTP session and clear caches."""
        if self.cache.backend is not None and hasattr(self.cache.backend, "clear"):
            self.cache.backend.clear()
        self.feed_client.close()
        logger.info("Cleaned up engine resources")
