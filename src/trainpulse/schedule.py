"""
Static schedule matching and delay calculation.

Live trip ids rarely match the published schedule exactly, so lookups fall
back through three tiers of decreasing confidence:

1. exact     ``tripId:stopId``
2. shape     ``routeId:shapeId:stopId``
3. direction ``routeId:direction:stopId``

A lower tier is consulted only when every candidate key of the tiers above
it misses. Index keys are stored for both the platform stop id ("101N") and
its base id ("101"), and for both the full static trip id and the shorter
suffix used by the real-time feed.
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Union
from zoneinfo import ZoneInfo

import pandas as pd

from .config import DEFAULT_TIMEZONE, EngineConfig
from .exceptions import ScheduleLoadError
from .timeutils import TimeLike, round_half_up, to_datetime

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

_TRIP_SUFFIX_RE = re.compile(r"-00_(.+)$")
_SHAPE_RE = re.compile(r"_([A-Z0-9]+\.\.[NS][A-Z0-9]*)$", re.IGNORECASE)
_DIRECTION_RE = re.compile(r"\.\.([NS])", re.IGNORECASE)
_STOP_SUFFIX_RE = re.compile(r"[NS]$")


class MatchTier(Enum):
    """Which index tier produced a schedule match."""
    EXACT = "exact"
    SHAPE = "shape"
    DIRECTION = "direction"
    NONE = "none"


@dataclass(frozen=True)
class ScheduleEntry:
    """One scheduled stop event; minutes since service-day midnight, may exceed 1440."""
    arrival_minutes: int
    departure_minutes: int
    stop_sequence: int


@dataclass(frozen=True)
class ScheduleMatch:
    entry: Optional[ScheduleEntry]
    tier: MatchTier
    key: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.entry is not None


@dataclass(frozen=True)
class DelayResult:
    delay_seconds: Optional[int]
    tier: MatchTier


class ArrivalQuery(NamedTuple):
    """Input row for batch delay calculation."""
    trip_id: str
    stop_id: str
    predicted_arrival: TimeLike
    route_id: Optional[str] = None


NO_MATCH = ScheduleMatch(entry=None, tier=MatchTier.NONE)


def parse_time_to_minutes(time_str: str) -> int:
    """
    Parse a GTFS HH:MM:SS time into minutes from midnight.

    GTFS allows hours past 24 for trips that run after midnight, so
    "25:10:00" -> 1510. Seconds are dropped.
    """
    parts = time_str.strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid GTFS time: {time_str!r}")
    return int(parts[0]) * 60 + int(parts[1])


def normalize_stop_id(stop_id: str) -> str:
    """Strip the platform direction suffix: "101N" -> "101", "101" -> "101"."""
    return _STOP_SUFFIX_RE.sub("", stop_id)


def extract_trip_suffix(trip_id: str) -> Optional[str]:
    """
    Extract the real-time style trip id from a static one.

    "AFA25GEN-1038-Sunday-00_000600_1..S03R" -> "000600_1..S03R"
    """
    match = _TRIP_SUFFIX_RE.search(trip_id)
    return match.group(1) if match else None


def extract_shape_from_trip_id(trip_id: str) -> Optional[str]:
    """
    Extract the shape token from a trip id.

    "114450_N..N31R" -> "N..N31R", "119650_7..N" -> "7..N"
    """
    match = _SHAPE_RE.search(trip_id)
    return match.group(1) if match else None


def extract_direction_from_shape(shape: str) -> Optional[str]:
    """Direction token of a shape: "7..N" -> "N", "N..S31R" -> "S"."""
    match = _DIRECTION_RE.search(shape)
    return match.group(1).upper() if match else None


def _unique(keys: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for key in keys:
        if key not in seen:
            seen.append(key)
    return seen


def tier1_keys(trip_id: str, stop_id: str) -> List[str]:
    """Exact-tier candidates: trip id (as given, suffix) x stop id (as given, base)."""
    base_stop = normalize_stop_id(stop_id)
    trip_ids = [trip_id]
    suffix = extract_trip_suffix(trip_id)
    if suffix:
        trip_ids.append(suffix)
    return _unique(f"{trip}:{stop}" for trip in trip_ids for stop in (stop_id, base_stop))


def tier2_keys(trip_id: str, stop_id: str, route_id: Optional[str]) -> List[str]:
    """Shape-tier candidates; empty when no route is given or no shape can be extracted."""
    shape = extract_shape_from_trip_id(trip_id)
    if not route_id or not shape:
        return []
    return _unique(f"{route_id}:{shape}:{stop}" for stop in (stop_id, normalize_stop_id(stop_id)))


def tier3_keys(trip_id: str, stop_id: str, route_id: Optional[str]) -> List[str]:
    """Direction-tier candidates; empty when no route, shape or direction is available."""
    shape = extract_shape_from_trip_id(trip_id)
    direction = extract_direction_from_shape(shape) if shape else None
    if not route_id or not direction:
        return []
    return _unique(f"{route_id}:{direction}:{stop}" for stop in (stop_id, normalize_stop_id(stop_id)))


def _read_csv(path: Union[str, Path]) -> pd.DataFrame:
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False, skipinitialspace=True)
    except (OSError, UnicodeDecodeError, pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        raise ScheduleLoadError(f"Cannot read schedule file {path}: {e}") from e
    frame.columns = [column.strip() for column in frame.columns]
    return frame


def _require_columns(frame: pd.DataFrame, columns: Iterable[str], name: str) -> None:
    missing = [column for column in columns if column not in frame.columns]
    if missing:
        raise ScheduleLoadError(f"{name} is missing columns: {', '.join(missing)}")


class ScheduleIndex:
    """Three-tier schedule lookup index. Read-only once built."""

    def __init__(self):
        self.exact: Dict[str, ScheduleEntry] = {}
        self.by_shape: Dict[str, ScheduleEntry] = {}
        self.by_direction: Dict[str, ScheduleEntry] = {}
        self.trip_routes: Dict[str, str] = {}

    @classmethod
    def build(cls, trips_path: Union[str, Path], stop_times_path: Union[str, Path]) -> "ScheduleIndex":
        """Build the index from trips.txt and stop_times.txt."""
        return cls.from_frames(_read_csv(trips_path), _read_csv(stop_times_path))

    @classmethod
    def from_frames(cls, trips: pd.DataFrame, stop_times: pd.DataFrame) -> "ScheduleIndex":
        """
        Build the index from trips and stop_times tables.

        Raises:
            ScheduleLoadError: If required columns are missing or a time is malformed.
        """
        _require_columns(trips, ("trip_id", "route_id"), "trips.txt")
        _require_columns(
            stop_times,
            ("trip_id", "stop_id", "arrival_time", "departure_time", "stop_sequence"),
            "stop_times.txt",
        )

        index = cls()
        trip_shapes: Dict[str, str] = {}
        shape_ids = trips["shape_id"] if "shape_id" in trips.columns else [""] * len(trips)

        for trip_id, route_id, shape_id in zip(trips["trip_id"], trips["route_id"], shape_ids):
            trip_id = trip_id.strip()
            route_id = route_id.strip()
            suffix = extract_trip_suffix(trip_id)
            # Shape regex matches the end of the string, so it works on full ids too
            shape = shape_id.strip() or extract_shape_from_trip_id(trip_id)

            for key in filter(None, (trip_id, suffix)):
                index.trip_routes[key] = route_id
                if shape:
                    trip_shapes[key] = shape

        skipped = 0
        rows = zip(
            stop_times["trip_id"],
            stop_times["stop_id"],
            stop_times["arrival_time"],
            stop_times["departure_time"],
            stop_times["stop_sequence"],
        )
        for trip_id, stop_id, arrival, departure, sequence in rows:
            trip_id = trip_id.strip()
            stop_id = stop_id.strip()
            if not trip_id or not stop_id or not arrival.strip():
                skipped += 1
                continue

            try:
                entry = ScheduleEntry(
                    arrival_minutes=parse_time_to_minutes(arrival),
                    departure_minutes=parse_time_to_minutes(departure or arrival),
                    stop_sequence=int(sequence),
                )
            except ValueError as e:
                raise ScheduleLoadError(f"Malformed stop_times row for trip {trip_id}: {e}") from e

            index.add(trip_id, stop_id, entry, index.trip_routes.get(trip_id), trip_shapes.get(trip_id))

        if skipped:
            logger.debug(f"Skipped {skipped} stop_times rows without trip, stop or time")
        return index

    def add(
        self,
        trip_id: str,
        stop_id: str,
        entry: ScheduleEntry,
        route_id: Optional[str] = None,
        shape: Optional[str] = None,
    ) -> None:
        """Index one stop_times row in every tier it qualifies for."""
        base_stop = normalize_stop_id(stop_id)
        suffix = extract_trip_suffix(trip_id)

        for trip in filter(None, (trip_id, suffix)):
            self.exact[f"{trip}:{base_stop}"] = entry
            self.exact[f"{trip}:{stop_id}"] = entry

        if not route_id or not shape:
            return

        # First occurrence wins in the fallback tiers
        for stop in (base_stop, stop_id):
            self.by_shape.setdefault(f"{route_id}:{shape}:{stop}", entry)

        direction = extract_direction_from_shape(shape)
        if direction:
            for stop in (base_stop, stop_id):
                self.by_direction.setdefault(f"{route_id}:{direction}:{stop}", entry)

    def lookup(self, trip_id: str, stop_id: str, route_id: Optional[str] = None) -> ScheduleMatch:
        """Find the schedule entry for a live trip at a stop, probing tiers in order."""
        for key in tier1_keys(trip_id, stop_id):
            entry = self.exact.get(key)
            if entry is not None:
                return ScheduleMatch(entry, MatchTier.EXACT, key)

        if not route_id:
            return NO_MATCH

        for key in tier2_keys(trip_id, stop_id, route_id):
            entry = self.by_shape.get(key)
            if entry is not None:
                return ScheduleMatch(entry, MatchTier.SHAPE, key)

        for key in tier3_keys(trip_id, stop_id, route_id):
            entry = self.by_direction.get(key)
            if entry is not None:
                return ScheduleMatch(entry, MatchTier.DIRECTION, key)

        return NO_MATCH

    def sizes(self) -> Dict[str, int]:
        return {"tier1": len(self.exact), "tier2": len(self.by_shape), "tier3": len(self.by_direction)}

    def to_snapshot(self) -> Dict[str, Any]:
        def pack(tier: Dict[str, ScheduleEntry]) -> List[list]:
            return [[key, [e.arrival_minutes, e.departure_minutes, e.stop_sequence]] for key, e in tier.items()]

        return {
            "version": SNAPSHOT_VERSION,
            "tier1": pack(self.exact),
            "tier2": pack(self.by_shape),
            "tier3": pack(self.by_direction),
            "tripRoutes": list(self.trip_routes.items()),
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> Optional["ScheduleIndex"]:
        """Rebuild an index from to_snapshot() output; None if the version differs."""
        if data.get("version") != SNAPSHOT_VERSION:
            return None

        def unpack(rows: List[list]) -> Dict[str, ScheduleEntry]:
            return {key: ScheduleEntry(*values) for key, values in rows}

        index = cls()
        index.exact = unpack(data["tier1"])
        index.by_shape = unpack(data["tier2"])
        index.by_direction = unpack(data["tier3"])
        index.trip_routes = dict(data["tripRoutes"])
        return index

    def save(self, path: Union[str, Path]) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_snapshot(), f)

    @classmethod
    def load(cls, path: Union[str, Path]) -> Optional["ScheduleIndex"]:
        """Load a saved snapshot; None when absent, unreadable or from another version."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls.from_snapshot(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable schedule snapshot {path}: {e}")
            return None


class ScheduleDelayResolver:
    """
    Matches live trip/stop pairs against the static schedule and computes delay.

    The index is built lazily on first use. Concurrent first callers block on
    the same build instead of starting their own.
    """

    def __init__(
        self,
        trips_path: Union[str, Path],
        stop_times_path: Union[str, Path],
        snapshot_path: Optional[Union[str, Path]] = None,
        tz: str = DEFAULT_TIMEZONE,
    ):
        self.trips_path = Path(trips_path)
        self.stop_times_path = Path(stop_times_path)
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self.tz = ZoneInfo(tz)
        self._index: Optional[ScheduleIndex] = None
        self._build_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ScheduleDelayResolver":
        return cls(config.trips_path, config.stop_times_path, config.snapshot_path, tz=config.timezone)

    @classmethod
    def from_index(cls, index: ScheduleIndex, tz: str = DEFAULT_TIMEZONE) -> "ScheduleDelayResolver":
        """Resolver over an already built index (no files are read)."""
        resolver = cls("trips.txt", "stop_times.txt", tz=tz)
        resolver._index = index
        return resolver

    def get_index(self) -> ScheduleIndex:
        """
        Return the index, building it on first call.

        Raises:
            ScheduleLoadError: If the static schedule files cannot be read.
        """
        index = self._index
        if index is not None:
            return index

        with self._build_lock:
            if self._index is None:
                self._index = self._load_index()
            return self._index

    def invalidate(self) -> None:
        """Drop the in-memory index; the next lookup reloads it."""
        with self._build_lock:
            self._index = None

    def _load_index(self) -> ScheduleIndex:
        started = time.monotonic()

        if self.snapshot_path is not None:
            index = ScheduleIndex.load(self.snapshot_path)
            if index is not None:
                logger.info(f"Schedule index loaded from snapshot in {self._elapsed_ms(started)}ms")
                return index
            logger.info("No usable schedule snapshot, rebuilding from CSV")

        try:
            index = ScheduleIndex.build(self.trips_path, self.stop_times_path)
        except ScheduleLoadError as e:
            logger.error(f"Failed to load schedule data: {e}")
            raise

        sizes = index.sizes()
        logger.info(
            f"Schedule index built from CSV in {self._elapsed_ms(started)}ms "
            f"(Tier1: {sizes['tier1']}, Tier2: {sizes['tier2']}, Tier3: {sizes['tier3']} entries)"
        )

        if self.snapshot_path is not None:
            try:
                index.save(self.snapshot_path)
            except OSError as e:
                logger.warning(f"Failed to save schedule snapshot: {e}")

        return index

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def lookup(self, trip_id: str, stop_id: str, route_id: Optional[str] = None) -> ScheduleMatch:
        return self.get_index().lookup(trip_id, stop_id, route_id)

    def scheduled_time(self, entry: ScheduleEntry, reference: TimeLike) -> datetime:
        """
        Scheduled instant for an entry on the calendar day of reference.

        The day is taken in the service timezone. Minutes past 1440 land on
        the following calendar day.
        """
        local = to_datetime(reference).astimezone(self.tz)
        midnight = datetime(local.year, local.month, local.day, tzinfo=self.tz)
        return midnight + timedelta(minutes=entry.arrival_minutes)

    def get_scheduled_arrival(
        self, trip_id: str, stop_id: str, reference: TimeLike, route_id: Optional[str] = None
    ) -> Optional[datetime]:
        match = self.lookup(trip_id, stop_id, route_id)
        if match.entry is None:
            return None
        return self.scheduled_time(match.entry, reference)

    def resolve_delay(
        self, trip_id: str, stop_id: str, actual_arrival: TimeLike, route_id: Optional[str] = None
    ) -> DelayResult:
        """Delay in seconds (positive = late) together with the tier that matched."""
        match = self.lookup(trip_id, stop_id, route_id)
        if match.entry is None:
            return DelayResult(None, MatchTier.NONE)

        actual = to_datetime(actual_arrival).astimezone(timezone.utc)
        scheduled = self.scheduled_time(match.entry, actual).astimezone(timezone.utc)
        return DelayResult(round_half_up((actual - scheduled).total_seconds()), match.tier)

    def calculate_delay(
        self, trip_id: str, stop_id: str, actual_arrival: TimeLike, route_id: Optional[str] = None
    ) -> Optional[int]:
        """Delay in seconds (positive = late, negative = early), or None without a schedule match."""
        return self.resolve_delay(trip_id, stop_id, actual_arrival, route_id).delay_seconds

    def calculate_delays_batch(self, items: Iterable[Union[ArrivalQuery, tuple]]) -> Dict[int, int]:
        """
        Resolve delays for many arrivals.

        Args:
            items: (trip_id, stop_id, predicted_arrival[, route_id]) rows.

        Returns:
            Input index -> delay seconds, omitting rows with no schedule match
            or an unusable timestamp.
        """
        self.get_index()
        results: Dict[int, int] = {}
        for i, item in enumerate(items):
            query = item if isinstance(item, ArrivalQuery) else ArrivalQuery(*item)
            try:
                delay = self.calculate_delay(query.trip_id, query.stop_id, query.predicted_arrival, query.route_id)
            except (ValueError, TypeError, OverflowError, OSError) as e:
                logger.warning(f"Skipping batch row {i} ({query.trip_id} at {query.stop_id}): {e}")
                continue
            if delay is not None:
                results[i] = delay
        return results
