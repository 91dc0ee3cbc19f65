"""Exception types raised by the trainpulse engine."""

from typing import Optional


class TrainPulseError(Exception):
    """Base class for all engine errors."""


class FeedError(TrainPulseError):
    """A single feed group could not be fetched or decoded."""

    def __init__(self, group_id: str, message: str):
        super().__init__(f"{group_id}: {message}")
        self.group_id = group_id


class FeedFetchError(FeedError):
    """Network failure, timeout or non-2xx response from the feed endpoint."""

    def __init__(self, group_id: str, message: str, status_code: Optional[int] = None):
        super().__init__(group_id, message)
        self.status_code = status_code


class FeedDecodeError(FeedError):
    """The feed payload is not a valid GTFS-Realtime message."""


class UnknownFeedGroupError(TrainPulseError, ValueError):
    """The requested feed group is not one of the known groups."""


class ScheduleLoadError(TrainPulseError):
    """Static stop or schedule data is missing or corrupt."""
