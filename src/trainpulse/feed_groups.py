"""MTA subway GTFS-Realtime feed groups."""

from dataclasses import dataclass
from typing import List, Optional, Tuple

_BASE_URL = "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2F"

# GTFS-Realtime subway alerts (protobuf)
ALERTS_URL = "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/camsys%2Fsubway-alerts"


@dataclass(frozen=True)
class FeedGroup:
    """A named partition of the real-time feed."""
    id: str
    url: str
    routes: Tuple[str, ...]


FEED_GROUPS: List[FeedGroup] = [
    FeedGroup("ACE", _BASE_URL + "gtfs-ace", ("A", "C", "E")),
    FeedGroup("BDFM", _BASE_URL + "gtfs-bdfm", ("B", "D", "F", "M")),
    FeedGroup("G", _BASE_URL + "gtfs-g", ("G",)),
    FeedGroup("JZ", _BASE_URL + "gtfs-jz", ("J", "Z")),
    FeedGroup("NQRW", _BASE_URL + "gtfs-nqrw", ("N", "Q", "R", "W")),
    FeedGroup("L", _BASE_URL + "gtfs-l", ("L",)),
    FeedGroup("SI", _BASE_URL + "gtfs-si", ("SI", "SIR")),
    FeedGroup("1234567", _BASE_URL + "gtfs", ("1", "2", "3", "4", "5", "6", "7", "S")),
]


def get_group(group_id: str) -> Optional[FeedGroup]:
    """Find a feed group by id (case-insensitive)."""
    wanted = group_id.lower()
    for group in FEED_GROUPS:
        if group.id.lower() == wanted:
            return group
    return None


def get_group_url(group_id: str) -> Optional[str]:
    group = get_group(group_id)
    return group.url if group else None


def get_feed_group_for_route(route_id: str) -> Optional[str]:
    """Return the id of the feed group carrying a route, e.g. "A" -> "ACE"."""
    wanted = route_id.lower()
    for group in FEED_GROUPS:
        if any(route.lower() == wanted for route in group.routes):
            return group.id
    return None


def list_groups() -> List[str]:
    return [group.id for group in FEED_GROUPS]
