"""Per-stop arrival boards built from decoded feed entities."""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .cache import SafeCache
from .config import DEFAULT_TIMEZONE, EngineConfig
from .exceptions import UnknownFeedGroupError
from .feed_groups import get_group, list_groups
from .gtfs_loader import StopDirectory
from .models import ArrivalBoard, ArrivalItem, FeedEntity
from .mta_client import FeedClient
from .schedule import normalize_stop_id
from .timeutils import format_local_time, humanize_eta, parse_iso, utcnow

logger = logging.getLogger(__name__)

LOOKAHEAD = timedelta(minutes=20)
CLOCK_SKEW = timedelta(seconds=60)
MAX_ARRIVALS_PER_STOP = 8


def board_cache_key(group_id: str) -> str:
    return f"board:{group_id}"


def build_arrival_map(
    entities: Iterable[FeedEntity],
    now: Optional[datetime] = None,
    tz: str = DEFAULT_TIMEZONE,
) -> Dict[str, List[ArrivalItem]]:
    """
    Group upcoming stop events by stop id.

    Only events between one minute ago and twenty minutes ahead are kept.
    Each stop's list is sorted by time and capped at eight items.
    """
    now = now or utcnow()
    earliest = now - CLOCK_SKEW
    cutoff = now + LOOKAHEAD
    by_stop: Dict[str, List[tuple]] = {}

    for entity in entities:
        for update in entity.stop_updates:
            when_iso = update.event_time
            when = parse_iso(when_iso)
            if when is None or not update.stop_id:
                continue
            if when > cutoff or when < earliest:
                continue

            item = ArrivalItem(
                stop_id=update.stop_id,
                stop_name=update.stop_name,
                when_iso=when_iso,
                when_local=format_local_time(when_iso, tz),
                eta_text=humanize_eta(when_iso, now),
                route_id=entity.route_id,
                trip_id=entity.trip_id,
                schedule_relationship=update.schedule_relationship,
                arrival_delay=update.arrival.delay,
                departure_delay=update.departure.delay,
            )
            by_stop.setdefault(update.stop_id, []).append((when, item))

    arrival_map: Dict[str, List[ArrivalItem]] = {}
    for stop_id, timed_items in by_stop.items():
        timed_items.sort(key=lambda pair: pair[0])
        arrival_map[stop_id] = [item for _, item in timed_items[:MAX_ARRIVALS_PER_STOP]]
    return arrival_map


class ArrivalBoardBuilder:
    """Builds and caches arrival boards for each feed group."""

    def __init__(
        self,
        feed_client: FeedClient,
        stops: StopDirectory,
        config: Optional[EngineConfig] = None,
        cache: Optional[Any] = None,
    ):
        self.feed_client = feed_client
        self.stops = stops
        self.config = config or EngineConfig()
        self.cache = cache if isinstance(cache, SafeCache) else SafeCache(cache)

    def build_boards(
        self, group_id: str, use_cache: bool = True, now: Optional[datetime] = None
    ) -> Dict[str, ArrivalBoard]:
        """Return every stop's board for a feed group, from cache when fresh."""
        group = get_group(group_id)
        if group is None:
            raise UnknownFeedGroupError(f"Unknown feed group: {group_id}")

        cache_key = board_cache_key(group.id)
        if use_cache:
            boards = self.cache.get(cache_key)
            if boards is not None:
                logger.debug(f"Using cached boards for {group.id}")
                return boards

        now = now or utcnow()
        entities = self.feed_client.fetch_feed(group.id, use_cache=use_cache)
        built_at = now.isoformat()

        boards = {}
        for stop_id, items in build_arrival_map(entities, now, self.config.timezone).items():
            boards[stop_id] = ArrivalBoard(
                stop_id=stop_id,
                stop_name=items[0].stop_name or self.stops.name_for(stop_id) or stop_id,
                updated_at=built_at,
                now=built_at,
                arrivals=tuple(items),
            )

        if use_cache:
            self.cache.set(cache_key, boards, self.config.board_cache_ttl)
        return boards

    def get_arrival_board(
        self,
        group_id: str,
        stop_id: str,
        use_cache: bool = True,
        now: Optional[datetime] = None,
    ) -> ArrivalBoard:
        """
        Get the arrival board for one stop in a feed group.

        Args:
            group_id: Feed group id (e.g. "1234567").
            stop_id: Platform or parent stop id. A platform id with no
                arrivals falls back to its parent ("101N" -> "101").
            use_cache: Use the feed and board caches.
            now: Reference time; defaults to the current UTC time.

        Returns:
            ArrivalBoard with ETA strings computed against now. Stops without
            arrivals get an empty board with updated_at None.
        """
        now = now or utcnow()
        boards = self.build_boards(group_id, use_cache=use_cache, now=now)

        board = boards.get(stop_id)
        if board is None:
            parent_id = normalize_stop_id(stop_id)
            if parent_id != stop_id:
                board = boards.get(parent_id)

        if board is None:
            return ArrivalBoard(
                stop_id=stop_id,
                stop_name=self.stops.name_for(stop_id),
                updated_at=None,
                now=now.isoformat(),
            )

        return self._refresh(board, now)

    def get_arrivals_for_station(self, stop_id: str, use_cache: bool = True) -> List[ArrivalItem]:
        """
        Merge a stop's arrivals from every feed group.

        Groups that fail are skipped. The result is sorted by time with one
        item per trip.
        """
        now = utcnow()
        arrivals: List[ArrivalItem] = []
        for group_id in list_groups():
            try:
                arrivals.extend(self.get_arrival_board(group_id, stop_id, use_cache=use_cache, now=now).arrivals)
            except Exception as e:
                logger.warning(f"Failed to get arrivals for {stop_id} from {group_id}: {e}")

        arrivals.sort(key=lambda item: parse_iso(item.when_iso))

        seen = set()
        unique: List[ArrivalItem] = []
        for item in arrivals:
            if not item.trip_id or item.trip_id in seen:
                continue
            seen.add(item.trip_id)
            unique.append(item)
        return unique

    def _refresh(self, board: ArrivalBoard, now: datetime) -> ArrivalBoard:
        """Recompute time-relative strings on a possibly cached board."""
        return replace(
            board,
            now=now.isoformat(),
            arrivals=tuple(
                replace(
                    item,
                    eta_text=humanize_eta(item.when_iso, now),
                    when_local=format_local_time(item.when_iso, self.config.timezone),
                )
                for item in board.arrivals
            ),
        )
