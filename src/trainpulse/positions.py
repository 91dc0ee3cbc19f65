"""
Train position interpolation.

GTFS-Realtime only gives stop-level predictions, so a train's position is
estimated by blending the coordinates of the stop it last departed and the
stop it arrives at next, weighted by elapsed time between the two.

Latitude and longitude are blended linearly rather than along a great
circle. Subway stops are a few hundred metres apart, where the difference is
negligible.
"""

import math
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from .gtfs_loader import StopDirectory
from .models import FeedEntity, StopUpdate, TrainPosition
from .timeutils import parse_iso, utcnow


def find_segment(
    stop_updates: Tuple[StopUpdate, ...], now: datetime
) -> Optional[Tuple[StopUpdate, StopUpdate]]:
    """Return (prev, next) where next is the first stop with a future arrival."""
    for i, stop in enumerate(stop_updates):
        arrival = parse_iso(stop.arrival.time)
        if arrival is not None and arrival > now:
            if i == 0:
                return None
            return stop_updates[i - 1], stop
    return None


def interpolation_progress(prev_time: datetime, next_time: datetime, now: datetime) -> Optional[float]:
    """Fraction of the prev->next leg completed at now, clamped to [0, 1]; None for a non-positive leg."""
    total = (next_time - prev_time).total_seconds()
    if total <= 0:
        return None
    elapsed = (now - prev_time).total_seconds()
    return max(0.0, min(1.0, elapsed / total))


def calculate_heading(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Initial bearing from point 1 to point 2 in degrees from north, in [0, 360)."""
    d_lon = math.radians(lon2 - lon1)
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)

    y = math.sin(d_lon) * math.cos(lat2_rad)
    x = math.cos(lat1_rad) * math.sin(lat2_rad) - math.sin(lat1_rad) * math.cos(lat2_rad) * math.cos(d_lon)

    heading = math.degrees(math.atan2(y, x)) % 360.0
    # -0.0 % 360 and tiny negatives can round up to exactly 360.0
    return 0.0 if heading >= 360.0 else heading


def calculate_train_positions(
    entities: Iterable[FeedEntity],
    stops: StopDirectory,
    now: Optional[datetime] = None,
) -> List[TrainPosition]:
    """
    Estimate one position per trip currently between two known stops.

    Trips are skipped when they have fewer than two stop updates, no future
    arrival with a preceding stop, unknown stop coordinates, missing times,
    or a non-positive duration between the two stops.

    Args:
        entities: Latest decoded feed entities. Not modified.
        stops: Static stop coordinates.
        now: Reference time; defaults to the current UTC time.

    Returns:
        TrainPosition list, in entity order.
    """
    now = now or utcnow()
    positions: List[TrainPosition] = []

    for entity in entities:
        if not entity.route_id or not entity.trip_id or len(entity.stop_updates) < 2:
            continue

        segment = find_segment(entity.stop_updates, now)
        if segment is None:
            continue
        prev_stop, next_stop = segment

        prev_data = stops.get(prev_stop.stop_id)
        next_data = stops.get(next_stop.stop_id)
        if prev_data is None or next_data is None:
            continue

        prev_time = parse_iso(prev_stop.departure.time or prev_stop.arrival.time)
        next_time = parse_iso(next_stop.arrival.time)
        if prev_time is None or next_time is None:
            continue

        progress = interpolation_progress(prev_time, next_time, now)
        if progress is None:
            continue

        lat = prev_data.latitude + (next_data.latitude - prev_data.latitude) * progress
        lon = prev_data.longitude + (next_data.longitude - prev_data.longitude) * progress
        heading = calculate_heading(prev_data.latitude, prev_data.longitude, next_data.latitude, next_data.longitude)

        positions.append(TrainPosition(
            trip_id=entity.trip_id,
            route_id=entity.route_id,
            lat=lat,
            lon=lon,
            heading=heading,
            next_stop_id=next_data.stop_id,
            next_stop_name=next_data.name,
            eta=next_stop.arrival.time,
        ))

    return positions


def filter_trains_by_route(positions: Iterable[TrainPosition], route_id: str) -> List[TrainPosition]:
    wanted = route_id.upper()
    return [p for p in positions if p.route_id.upper() == wanted]


def get_trains_near_station(positions: Iterable[TrainPosition], stop_id: str) -> List[TrainPosition]:
    """Trains whose next stop is stop_id."""
    return [p for p in positions if p.next_stop_id == stop_id]
