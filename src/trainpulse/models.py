"""Data models for the trainpulse engine."""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


@dataclass(frozen=True)
class Stop:
    """Represents a station or platform from stops.txt."""
    stop_id: str
    name: str
    latitude: float
    longitude: float
    parent_station: Optional[str] = None


@dataclass(frozen=True)
class StopEvent:
    """Predicted arrival or departure at a stop."""
    time: Optional[str] = None  # ISO-8601, UTC
    delay: Optional[int] = None  # Seconds, as reported by the feed


@dataclass(frozen=True)
class StopUpdate:
    """A single predicted event at a stop within a trip."""
    stop_id: Optional[str]
    stop_name: Optional[str]
    arrival: StopEvent = StopEvent()
    departure: StopEvent = StopEvent()
    schedule_relationship: Optional[str] = None

    @property
    def event_time(self) -> Optional[str]:
        """Arrival time, or departure time for origin stops."""
        return self.arrival.time or self.departure.time


@dataclass(frozen=True)
class FeedEntity:
    """One active trip as reported by the real-time feed."""
    entity_id: Optional[str]
    route_id: Optional[str]
    trip_id: Optional[str]
    start_date: Optional[str]
    vehicle_id: Optional[str]
    stop_updates: Tuple[StopUpdate, ...]
    timestamp: Optional[str]  # Feed header publish time, ISO-8601


@dataclass(frozen=True)
class TrainPosition:
    """Estimated position of a train between two stops."""
    trip_id: str
    route_id: str
    lat: float
    lon: float
    heading: float  # Degrees from north, [0, 360)
    next_stop_id: str
    next_stop_name: str
    eta: str  # Feed's predicted arrival at next_stop_id


@dataclass(frozen=True)
class ArrivalItem:
    """One upcoming arrival on a stop's board."""
    stop_id: str
    stop_name: Optional[str]
    when_iso: str
    when_local: Optional[str]
    eta_text: str  # e.g. "now", "in 4 min", "2 min ago"
    route_id: Optional[str]
    trip_id: Optional[str]
    schedule_relationship: Optional[str] = None
    arrival_delay: Optional[int] = None
    departure_delay: Optional[int] = None


@dataclass(frozen=True)
class ArrivalBoard:
    """Sorted upcoming arrivals for a single stop."""
    stop_id: str
    stop_name: Optional[str]
    updated_at: Optional[str]  # When the board was built, None if nothing matched
    now: str
    arrivals: Tuple[ArrivalItem, ...] = ()


@dataclass(frozen=True)
class ActivePeriod:
    start: Optional[str]
    end: Optional[str] = None


@dataclass(frozen=True)
class ServiceAlert:
    """Represents a service alert affecting one or more routes."""
    alert_id: str
    severity: str  # "critical", "warning" or "info"
    header_text: str
    description_text: str
    affected_routes: Tuple[str, ...]
    affected_stops: Tuple[str, ...] = ()
    affected_stop_names: Tuple[str, ...] = ()
    active_periods: Tuple[ActivePeriod, ...] = ()


@dataclass
class TrainSnapshot:
    """A position sample produced by the collection job."""
    feed_group_id: str
    position: TrainPosition
    eta_seconds: int
    feed_timestamp: str


@dataclass
class ArrivalEvent:
    """A predicted arrival with its resolved delay, produced by the collection job."""
    feed_group_id: str
    station_id: str
    route_id: str
    trip_id: str
    direction: Optional[str]
    predicted_arrival: str
    delay_seconds: Optional[int]
    delay_source: str  # "schedule", "feed" or "none"
    feed_timestamp: Optional[str]


@dataclass
class CollectionResult:
    """Records produced by one collection pass, plus per-group errors."""
    records: List[Any] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def count(self) -> int:
        return len(self.records)
