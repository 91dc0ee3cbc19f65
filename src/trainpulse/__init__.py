"""trainpulse - Real-time MTA subway feed engine: positions, delays and arrival boards."""

__version__ = "0.1.0"

from .models import (
    ArrivalBoard,
    ArrivalEvent,
    ArrivalItem,
    CollectionResult,
    FeedEntity,
    ServiceAlert,
    Stop,
    StopEvent,
    StopUpdate,
    TrainPosition,
    TrainSnapshot,
)
from .exceptions import (
    FeedDecodeError,
    FeedError,
    FeedFetchError,
    ScheduleLoadError,
    TrainPulseError,
    UnknownFeedGroupError,
)
from .config import EngineConfig
from .cache import MemoryCache, SafeCache
from .gtfs_loader import StopDirectory, download_static_gtfs
from .mta_client import FeedClient, FeedDecoder
from .positions import calculate_train_positions
from .schedule import ArrivalQuery, MatchTier, ScheduleDelayResolver, ScheduleEntry, ScheduleIndex
from .arrivals import ArrivalBoardBuilder, build_arrival_map
from .engine import TransitEngine

__all__ = [
    "TransitEngine",
    "EngineConfig",
    "FeedClient",
    "FeedDecoder",
    "StopDirectory",
    "download_static_gtfs",
    "MemoryCache",
    "SafeCache",
    "calculate_train_positions",
    "ScheduleDelayResolver",
    "ScheduleIndex",
    "ScheduleEntry",
    "ArrivalQuery",
    "MatchTier",
    "ArrivalBoardBuilder",
    "build_arrival_map",
    "Stop",
    "StopEvent",
    "StopUpdate",
    "FeedEntity",
    "TrainPosition",
    "ArrivalItem",
    "ArrivalBoard",
    "ServiceAlert",
    "TrainSnapshot",
    "ArrivalEvent",
    "CollectionResult",
    "TrainPulseError",
    "FeedError",
    "FeedFetchError",
    "FeedDecodeError",
    "UnknownFeedGroupError",
    "ScheduleLoadError",
]
