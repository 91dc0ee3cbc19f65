"""GTFS static reference data: stop dictionary and published schedule files."""

import csv
import io
import logging
import zipfile
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

import requests

from .exceptions import ScheduleLoadError
from .models import Stop

logger = logging.getLogger(__name__)

# MTA GTFS static data URL
MTA_GTFS_URL = "https://rrgtfsfeeds.s3.amazonaws.com/gtfs_subway.zip"

STATIC_FILES = ("stops.txt", "trips.txt", "stop_times.txt")


class StopDirectory:
    """Loads and indexes stops.txt: id -> name, coordinates and parent station."""

    def __init__(self, stops: Optional[List[Stop]] = None):
        self.stops: Dict[str, Stop] = {}
        self.parent_to_children: Dict[str, List[str]] = {}
        self.parent_names: Dict[str, str] = {}
        for stop in stops or []:
            self.add(stop)

    @classmethod
    def from_file(cls, stops_path: Union[str, Path]) -> "StopDirectory":
        """Load a directory from a local stops.txt."""
        directory = cls()
        directory.load_from_file(stops_path)
        return directory

    def load_from_file(self, stops_path: Union[str, Path]) -> None:
        logger.info(f"Loading stops from {stops_path}")
        try:
            with open(stops_path, "r", encoding="utf-8-sig") as f:
                self.load_csv(f.read())
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to read stops file {stops_path}: {e}")
            raise ScheduleLoadError(f"Cannot read stops file {stops_path}: {e}") from e
        logger.info(f"Loaded {len(self.stops)} stops")

    def load_csv(self, csv_content: str) -> None:
        """Parse stops.txt content."""
        reader = csv.DictReader(io.StringIO(csv_content), skipinitialspace=True)
        try:
            for row in reader:
                self.add(Stop(
                    stop_id=row["stop_id"].strip(),
                    name=row["stop_name"].strip(),
                    latitude=float(row["stop_lat"]),
                    longitude=float(row["stop_lon"]),
                    parent_station=(row.get("parent_station") or "").strip() or None,
                ))
        except (KeyError, ValueError, TypeError) as e:
            raise ScheduleLoadError(f"Malformed stops data: {e}") from e

    def add(self, stop: Stop) -> None:
        self.stops[stop.stop_id] = stop
        parent = stop.parent_station
        if parent:
            self.parent_to_children.setdefault(parent, []).append(stop.stop_id)
            # First child's name labels the parent when the parent row is absent
            self.parent_names.setdefault(parent, stop.name)

    def get(self, stop_id: Optional[str]) -> Optional[Stop]:
        if not stop_id:
            return None
        return self.stops.get(stop_id)

    def name_for(self, stop_id: Optional[str]) -> Optional[str]:
        stop = self.get(stop_id)
        return stop.name if stop else None

    def parent_name(self, stop_id: str) -> Optional[str]:
        """Name of the parent station for a platform, falling back to the stop's own name."""
        stop = self.get(stop_id)
        if stop is None:
            return None
        if stop.parent_station:
            return self.parent_names.get(stop.parent_station, stop.name)
        return stop.name

    def get_related_stop_ids(self, stop_id: str) -> List[str]:
        """Return the platform children of a stop's parent station, or the parent itself."""
        stop = self.get(stop_id)
        if stop is None:
            return [stop_id]

        parent_id = stop.parent_station or stop_id
        children = self.parent_to_children.get(parent_id, [])
        if children:
            return list(children)
        return [parent_id]

    def __contains__(self, stop_id: object) -> bool:
        return stop_id in self.stops

    def __iter__(self) -> Iterator[Stop]:
        return iter(self.stops.values())

    def __len__(self) -> int:
        return len(self.stops)


def download_static_gtfs(
    dest_dir: Union[str, Path],
    url: str = MTA_GTFS_URL,
    session: Optional[requests.Session] = None,
    timeout: float = 60.0,
) -> List[Path]:
    """
    Download the published GTFS zip and extract the files the engine reads.

    Args:
        dest_dir: Directory to write stops.txt, trips.txt and stop_times.txt into.
        url: GTFS static zip URL.
        session: Optional requests session to reuse.
        timeout: Request timeout in seconds.

    Returns:
        Paths of the extracted files.
    """
    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    http = session or requests.Session()

    logger.info(f"Downloading GTFS data from {url}")
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"Failed to download GTFS data: {e}")
        raise ScheduleLoadError(f"Cannot download GTFS data from {url}: {e}") from e

    written: List[Path] = []
    try:
        with zipfile.ZipFile(io.BytesIO(response.content)) as zip_file:
            for name in STATIC_FILES:
                target = dest / name
                target.write_bytes(zip_file.read(name))
                written.append(target)
    except (zipfile.BadZipFile, KeyError) as e:
        raise ScheduleLoadError(f"Invalid GTFS archive from {url}: {e}") from e

    logger.info(f"Extracted {len(written)} GTFS files to {dest}")
    return written
