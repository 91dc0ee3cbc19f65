"""MTA GTFS-Realtime feed fetcher, decoder and normalizer."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, List, Optional

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .cache import SafeCache
from .config import EngineConfig
from .exceptions import FeedDecodeError, FeedFetchError, UnknownFeedGroupError
from .feed_groups import ALERTS_URL, FEED_GROUPS, get_group, list_groups
from .gtfs_loader import StopDirectory
from .models import ActivePeriod, FeedEntity, ServiceAlert, StopEvent, StopUpdate
from .timeutils import format_timestamp

logger = logging.getLogger(__name__)

ALERTS_CACHE_KEY = "alerts:all"

# GTFS-Realtime Alert.effect -> severity
EFFECT_SEVERITY = {
    "NO_SERVICE": "critical",
    "SIGNIFICANT_DELAYS": "warning",
    "REDUCED_SERVICE": "warning",
    "DETOUR": "warning",
    "MODIFIED_SERVICE": "warning",
    "STOP_MOVED": "warning",
}
SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

SUBWAY_ROUTES = frozenset(route for group in FEED_GROUPS for route in group.routes)


def feed_cache_key(group_id: str) -> str:
    return f"feed:{group_id}:latest"


def _enum_name(message: Any, field_name: str) -> Optional[str]:
    """Name of an enum field's value, or None when the field is unset."""
    if not message.HasField(field_name):
        return None
    field = message.DESCRIPTOR.fields_by_name[field_name]
    value = field.enum_type.values_by_number.get(getattr(message, field_name))
    return value.name if value else None


def _stop_event(stop_time_update: Any, field_name: str) -> StopEvent:
    if not stop_time_update.HasField(field_name):
        return StopEvent()
    event = getattr(stop_time_update, field_name)
    return StopEvent(
        time=format_timestamp(event.time) if event.HasField("time") else None,
        delay=event.delay if event.HasField("delay") else None,
    )


def _translated_text(translated: Any, language: str = "en") -> str:
    """Pick the preferred translation from a TranslatedString, falling back to the first."""
    translations = list(translated.translation)
    if not translations:
        return ""
    for translation in translations:
        if translation.language == language:
            return translation.text
    return translations[0].text


class FeedDecoder:
    """
    Decodes GTFS-Realtime protobuf payloads into domain records.

    The FeedMessage schema is bound once per decoder and reused for every
    payload.
    """

    def __init__(self, stops: StopDirectory):
        self.stops = stops
        self._message_type = gtfs_realtime_pb2.FeedMessage

    def decode(self, group_id: str, payload: bytes) -> Any:
        """Parse raw bytes into a FeedMessage, raising FeedDecodeError on garbage."""
        feed = self._message_type()
        try:
            feed.ParseFromString(payload)
        except DecodeError as e:
            raise FeedDecodeError(group_id, f"Malformed feed payload: {e}") from e
        return feed

    def to_entities(self, feed: Any) -> List[FeedEntity]:
        """
        Map each trip update in a FeedMessage to a FeedEntity.

        Args:
            feed: Decoded FeedMessage.

        Returns:
            FeedEntity records in feed order; stop update order is preserved.
        """
        header_ts = None
        if feed.HasField("header") and feed.header.HasField("timestamp"):
            header_ts = format_timestamp(feed.header.timestamp)

        entities: List[FeedEntity] = []
        for entity in feed.entity:
            if not entity.HasField("trip_update"):
                continue

            trip_update = entity.trip_update
            trip = trip_update.trip

            stop_updates = tuple(
                StopUpdate(
                    stop_id=stu.stop_id or None,
                    stop_name=self.stops.name_for(stu.stop_id),
                    arrival=_stop_event(stu, "arrival"),
                    departure=_stop_event(stu, "departure"),
                    schedule_relationship=_enum_name(stu, "schedule_relationship"),
                )
                for stu in trip_update.stop_time_update
            )

            entities.append(FeedEntity(
                entity_id=entity.id or None,
                route_id=trip.route_id or None,
                trip_id=trip.trip_id or None,
                start_date=trip.start_date or None,
                vehicle_id=self._vehicle_id(entity),
                stop_updates=stop_updates,
                timestamp=header_ts,
            ))

        return entities

    def to_alerts(self, feed: Any) -> List[ServiceAlert]:
        """Extract subway service alerts, most severe and most recent first."""
        alerts: List[ServiceAlert] = []

        for entity in feed.entity:
            if not entity.HasField("alert"):
                continue

            alert = entity.alert
            routes: List[str] = []
            stop_ids: List[str] = []
            for informed in alert.informed_entity:
                # Route can be specified directly in route_id OR in trip.route_id
                route_id = informed.route_id
                if not route_id and informed.HasField("trip"):
                    route_id = informed.trip.route_id
                route_id = route_id.upper()
                if route_id in SUBWAY_ROUTES and route_id not in routes:
                    routes.append(route_id)
                if informed.stop_id and informed.stop_id not in stop_ids:
                    stop_ids.append(informed.stop_id)

            # Skip bus and commuter rail alerts
            if not routes:
                continue

            stop_names: List[str] = []
            for stop_id in stop_ids:
                name = self.stops.parent_name(stop_id) or stop_id
                if name not in stop_names:
                    stop_names.append(name)

            periods = tuple(
                ActivePeriod(
                    start=format_timestamp(period.start),
                    end=format_timestamp(period.end),
                )
                for period in alert.active_period
            )

            alerts.append(ServiceAlert(
                alert_id=entity.id,
                severity=EFFECT_SEVERITY.get(_enum_name(alert, "effect") or "", "info"),
                header_text=_translated_text(alert.header_text),
                description_text=_translated_text(alert.description_text),
                affected_routes=tuple(routes),
                affected_stops=tuple(stop_ids),
                affected_stop_names=tuple(stop_names),
                active_periods=periods,
            ))

        # Newest first, then stable sort by severity
        alerts.sort(key=lambda a: max((p.start or "" for p in a.active_periods), default=""), reverse=True)
        alerts.sort(key=lambda a: SEVERITY_ORDER[a.severity])
        logger.debug(f"Parsed {len(alerts)} alerts")
        return alerts

    @staticmethod
    def _vehicle_id(entity: Any) -> Optional[str]:
        if entity.HasField("vehicle") and entity.vehicle.HasField("vehicle"):
            return entity.vehicle.vehicle.id or None
        if entity.trip_update.HasField("vehicle"):
            return entity.trip_update.vehicle.id or None
        return None


class FeedClient:
    """Fetches, decodes and caches MTA GTFS-Realtime feeds per feed group."""

    def __init__(
        self,
        stops: StopDirectory,
        config: Optional[EngineConfig] = None,
        cache: Optional[Any] = None,
        session: Optional[requests.Session] = None,
        decoder: Optional[FeedDecoder] = None,
    ):
        self.config = config or EngineConfig()
        self.cache = cache if isinstance(cache, SafeCache) else SafeCache(cache)
        self.decoder = decoder or FeedDecoder(stops)
        self._session = session
        self._local = threading.local()
        self._owned_sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """
        HTTP session for the calling thread.

        An injected session is shared as given. Otherwise each thread gets its
        own requests.Session, since sessions are not safe to share across the
        fetch_all_feeds pool.
        """
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._sessions_lock:
                self._owned_sessions.append(session)
        return session

    def close(self) -> None:
        """Close the injected session and every per-thread session created so far."""
        if self._session is not None:
            self._session.close()
        with self._sessions_lock:
            owned, self._owned_sessions = self._owned_sessions, []
        for session in owned:
            session.close()
        self._local = threading.local()

    def fetch_feed(self, group_id: str, use_cache: bool = True) -> List[FeedEntity]:
        """
        Fetch the normalized trip updates for one feed group.

        Args:
            group_id: Feed group id (e.g. "ACE"), case-insensitive.
            use_cache: Read from and write to the short-TTL cache.

        Returns:
            FeedEntity list for the group.

        Raises:
            UnknownFeedGroupError: If group_id is not a known feed group.
            FeedFetchError: On network failure, timeout or non-2xx response.
            FeedDecodeError: If the payload is not a valid feed message.
        """
        group = get_group(group_id)
        if group is None:
            raise UnknownFeedGroupError(f"Unknown feed group: {group_id}")

        cache_key = feed_cache_key(group.id)
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"Using cached feed for {group.id}")
                return list(cached)

        payload = self._download(group.id, group.url)
        feed = self.decoder.decode(group.id, payload)
        entities = self.decoder.to_entities(feed)
        logger.debug(f"Decoded {len(entities)} trip updates for {group.id}")

        if use_cache:
            self.cache.set(cache_key, tuple(entities), self.config.feed_cache_ttl)

        return entities

    def fetch_all_feeds(self, use_cache: bool = True, group_ids: Optional[Iterable[str]] = None) -> List[FeedEntity]:
        """
        Fetch every feed group concurrently and flatten the results.

        A failing group is logged and contributes no entities.
        """
        group_ids = list(group_ids) if group_ids is not None else list_groups()
        if not group_ids:
            return []

        def fetch_one(group_id: str) -> List[FeedEntity]:
            try:
                return self.fetch_feed(group_id, use_cache=use_cache)
            except Exception as e:
                logger.warning(f"Failed to fetch feed {group_id}: {e}")
                return []

        with ThreadPoolExecutor(max_workers=len(group_ids)) as pool:
            results = list(pool.map(fetch_one, group_ids))

        return [entity for entities in results for entity in entities]

    def fetch_alerts(self, route_ids: Optional[Iterable[str]] = None, use_cache: bool = True) -> List[ServiceAlert]:
        """
        Fetch subway service alerts, optionally filtered to some routes.

        Raises:
            FeedFetchError, FeedDecodeError: As for fetch_feed.
        """
        alerts = self.cache.get(ALERTS_CACHE_KEY) if use_cache else None
        if alerts is None:
            payload = self._download("alerts", ALERTS_URL)
            alerts = self.decoder.to_alerts(self.decoder.decode("alerts", payload))
            if use_cache:
                self.cache.set(ALERTS_CACHE_KEY, tuple(alerts), self.config.alerts_cache_ttl)

        if route_ids is None:
            return list(alerts)
        return filter_alerts_by_routes(alerts, route_ids)

    def _download(self, group_id: str, url: str) -> bytes:
        headers = {"x-api-key": self.config.api_key} if self.config.api_key else None
        logger.debug(f"Fetching {url}")
        try:
            response = self.session.get(url, headers=headers, timeout=self.config.feed_timeout)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(f"Feed {group_id} returned HTTP {status}")
            raise FeedFetchError(group_id, f"HTTP {status} from {url}", status_code=status) from e
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {url}: {e}")
            raise FeedFetchError(group_id, str(e)) from e
        return response.content


def filter_alerts_by_routes(alerts: Iterable[ServiceAlert], route_ids: Iterable[str]) -> List[ServiceAlert]:
    """Keep alerts affecting any of route_ids; an empty route list keeps everything."""
    wanted = {route_id.upper() for route_id in route_ids}
    if not wanted:
        return list(alerts)
    return [alert for alert in alerts if wanted.intersection(alert.affected_routes)]
