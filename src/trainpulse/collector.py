"""
Collection passes over every feed group.

Produces in-memory snapshot, arrival and alert records for a historical store;
writing them anywhere is left to the caller.
"""

import logging
import time
from datetime import datetime
from typing import List, Optional

from .engine import TransitEngine
from .feed_groups import list_groups
from .models import ArrivalEvent, CollectionResult, TrainSnapshot
from .timeutils import parse_iso, utcnow

logger = logging.getLogger(__name__)


def _direction(stop_id: str) -> Optional[str]:
    """Platform direction from the stop id suffix: "101N" -> "N"."""
    suffix = stop_id[-1:].upper()
    return suffix if suffix in ("N", "S") else None


def collect_train_snapshots(engine: TransitEngine, now: Optional[datetime] = None) -> CollectionResult:
    """Fetch every feed group uncached and record one snapshot per interpolated train."""
    started = time.monotonic()
    now = now or utcnow()
    feed_timestamp = now.isoformat()
    result = CollectionResult()

    for group_id in list_groups():
        try:
            entities = engine.fetch_feed(group_id, use_cache=False)
            positions = engine.calculate_train_positions(entities, now=now)
        except Exception as e:
            logger.warning(f"Snapshot collection failed for {group_id}: {e}")
            result.errors.append(f"{group_id}: {e}")
            continue

        for position in positions:
            eta = parse_iso(position.eta)
            eta_seconds = max(0, int((eta - now).total_seconds())) if eta else 0
            result.records.append(TrainSnapshot(
                feed_group_id=group_id,
                position=position,
                eta_seconds=eta_seconds,
                feed_timestamp=feed_timestamp,
            ))

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(f"Collected {result.count} train snapshots with {len(result.errors)} errors")
    return result


def collect_arrival_events(engine: TransitEngine) -> CollectionResult:
    """
    Record every predicted arrival with its delay.

    The delay comes from the schedule when a match exists and from the
    feed's own arrival delay otherwise.
    """
    started = time.monotonic()
    result = CollectionResult()

    for group_id in list_groups():
        try:
            entities = engine.fetch_feed(group_id, use_cache=True)
        except Exception as e:
            logger.warning(f"Arrival collection failed for {group_id}: {e}")
            result.errors.append(f"{group_id}: {e}")
            continue

        events: List[ArrivalEvent] = []
        for entity in entities:
            if not entity.route_id or not entity.trip_id:
                continue
            for update in entity.stop_updates:
                if not update.stop_id or not update.arrival.time:
                    continue

                delay = engine.calculate_delay(entity.trip_id, update.stop_id, update.arrival.time, entity.route_id)
                if delay is not None:
                    source = "schedule"
                elif update.arrival.delay is not None:
                    delay, source = update.arrival.delay, "feed"
                else:
                    source = "none"

                events.append(ArrivalEvent(
                    feed_group_id=group_id,
                    station_id=update.stop_id,
                    route_id=entity.route_id,
                    trip_id=entity.trip_id,
                    direction=_direction(update.stop_id),
                    predicted_arrival=update.arrival.time,
                    delay_seconds=delay,
                    delay_source=source,
                    feed_timestamp=entity.timestamp,
                ))
        result.records.extend(events)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(f"Collected {result.count} arrival events with {len(result.errors)} errors")
    return result


def collect_alerts(engine: TransitEngine) -> CollectionResult:
    """Fetch current subway service alerts uncached as ServiceAlert records."""
    started = time.monotonic()
    result = CollectionResult()

    try:
        result.records.extend(engine.fetch_alerts(use_cache=False))
    except Exception as e:
        logger.warning(f"Alert collection failed: {e}")
        result.errors.append(f"alerts: {e}")

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(f"Collected {result.count} service alerts with {len(result.errors)} errors")
    return result
