"""Tests for schedule matching and delay calculation."""

import json
import tempfile
import threading
import time
import unittest
from datetime import datetime
from unittest.mock import patch
import sys
from pathlib import Path
from zoneinfo import ZoneInfo

import pandas as pd

# Add src to path so we can import trainpulse
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainpulse.exceptions import ScheduleLoadError
from trainpulse.schedule import (
    SNAPSHOT_VERSION,
    ArrivalQuery,
    MatchTier,
    ScheduleDelayResolver,
    ScheduleEntry,
    ScheduleIndex,
    extract_direction_from_shape,
    extract_shape_from_trip_id,
    extract_trip_suffix,
    normalize_stop_id,
    parse_time_to_minutes,
    tier1_keys,
)

NY = ZoneInfo("America/New_York")

TRIP_1 = "AFA23GEN-1038-Weekday-00_000600_1..S03R"
TRIP_2 = "AFA23GEN-1038-Weekday-00_001000_1..S03R"
TRIP_A = "BFA23GEN-A055-Weekday-00_002000_A..N"

TRIPS_CSV = f"""route_id,trip_id,service_id,trip_headsign,direction_id,shape_id
1,{TRIP_1},Weekday,South Ferry,1,1..S03R
1,{TRIP_2},Weekday,South Ferry,1,1..S03R
A,{TRIP_A},Weekday,Inwood-207 St,0,
"""

STOP_TIMES_CSV = f"""trip_id,stop_id,arrival_time,departure_time,stop_sequence
{TRIP_1},101S,08:00:00,08:00:00,1
{TRIP_1},103S,08:02:00,08:02:30,2
{TRIP_2},101S,08:10:00,08:10:00,1
{TRIP_2},103S,08:12:00,08:12:00,2
{TRIP_A},A02N,24:10:00,24:10:00,1
{TRIP_A},A03N,,,2
"""


def write_gtfs(directory: Path) -> None:
    (directory / "trips.txt").write_text(TRIPS_CSV)
    (directory / "stop_times.txt").write_text(STOP_TIMES_CSV)


def build_index() -> ScheduleIndex:
    with tempfile.TemporaryDirectory() as tmp:
        write_gtfs(Path(tmp))
        return ScheduleIndex.build(Path(tmp) / "trips.txt", Path(tmp) / "stop_times.txt")


class TestKeyHelpers(unittest.TestCase):
    """Test id parsing helpers."""

    def test_normalize_stop_id(self):
        """Test stripping the direction suffix."""
        self.assertEqual(normalize_stop_id("101N"), "101")
        self.assertEqual(normalize_stop_id("101S"), "101")
        self.assertEqual(normalize_stop_id("101"), "101")
        self.assertEqual(normalize_stop_id("A41S"), "A41")

    def test_direction_suffix_round_trip(self):
        """Test stop ids without a suffix are unchanged."""
        for base in ("101", "A41", "R16"):
            for direction in ("N", "S"):
                self.assertEqual(normalize_stop_id(base + direction), base)

    def test_extract_trip_suffix(self):
        """Test extracting the live trip id suffix."""
        self.assertEqual(extract_trip_suffix(TRIP_1), "000600_1..S03R")
        self.assertIsNone(extract_trip_suffix("000600_1..S03R"))

    def test_extract_shape(self):
        """Test extracting the shape from a trip id."""
        self.assertEqual(extract_shape_from_trip_id("114450_N..N31R"), "N..N31R")
        self.assertEqual(extract_shape_from_trip_id("031700_1..S03R"), "1..S03R")
        self.assertEqual(extract_shape_from_trip_id("119650_7..N"), "7..N")
        self.assertEqual(extract_shape_from_trip_id(TRIP_1), "1..S03R")
        self.assertIsNone(extract_shape_from_trip_id("no-shape-here"))

    def test_extract_direction(self):
        """Test extracting the direction from a shape."""
        self.assertEqual(extract_direction_from_shape("7..N"), "N")
        self.assertEqual(extract_direction_from_shape("N..S31R"), "S")
        self.assertIsNone(extract_direction_from_shape("7X"))

    def test_parse_time_to_minutes(self):
        """Test parsing GTFS times to minutes."""
        self.assertEqual(parse_time_to_minutes("08:02:30"), 482)
        self.assertEqual(parse_time_to_minutes("25:10:00"), 1510)
        with self.assertRaises(ValueError):
            parse_time_to_minutes("noon")

    def test_tier1_key_order(self):
        """Test exact-tier candidate order."""
        self.assertEqual(
            tier1_keys(TRIP_1, "101S"),
            [f"{TRIP_1}:101S", f"{TRIP_1}:101", "000600_1..S03R:101S", "000600_1..S03R:101"],
        )
        self.assertEqual(tier1_keys("000600_1..S03R", "101"), ["000600_1..S03R:101"])


class TestScheduleIndex(unittest.TestCase):
    """Test the three-tier index."""

    @classmethod
    def setUpClass(cls):
        cls.index = build_index()

    def test_exact_match_with_live_trip_id(self):
        """Test an exact match from a live trip id."""
        match = self.index.lookup("000600_1..S03R", "103S", "1")
        self.assertEqual(match.tier, MatchTier.EXACT)
        self.assertEqual(match.entry, ScheduleEntry(482, 482, 2))

    def test_exact_match_with_base_stop_id(self):
        """Test an exact match through the base stop id."""
        match = self.index.lookup("000600_1..S03R", "103")
        self.assertEqual(match.tier, MatchTier.EXACT)
        self.assertEqual(match.entry.arrival_minutes, 482)

    def test_exact_match_with_static_trip_id(self):
        """Test an exact match from a full static trip id."""
        match = self.index.lookup(TRIP_2, "101S")
        self.assertEqual(match.tier, MatchTier.EXACT)
        self.assertEqual(match.entry.arrival_minutes, 490)

    def test_shape_fallback_first_occurrence_wins(self):
        """Test the shape tier keeps the first entry."""
        match = self.index.lookup("999999_1..S03R", "101S", "1")
        self.assertEqual(match.tier, MatchTier.SHAPE)
        self.assertEqual(match.entry.arrival_minutes, 480)
        self.assertEqual(match.key, "1:1..S03R:101S")

    def test_direction_fallback(self):
        """Test the direction tier fallback."""
        match = self.index.lookup("999999_1..S", "103S", "1")
        self.assertEqual(match.tier, MatchTier.DIRECTION)
        self.assertEqual(match.entry.arrival_minutes, 482)

    def test_shape_derived_from_trip_id_when_column_blank(self):
        """Test the shape comes from the trip id when blank."""
        match = self.index.lookup("555555_A..N", "A02N", "A")
        self.assertEqual(match.tier, MatchTier.SHAPE)
        self.assertEqual(match.entry.arrival_minutes, 1450)

    def test_fallback_tiers_need_route(self):
        """Test fallback tiers are skipped without a route."""
        match = self.index.lookup("999999_1..S03R", "101S")
        self.assertEqual(match.tier, MatchTier.NONE)
        self.assertIsNone(match.entry)

    def test_no_match(self):
        """Test an unknown trip has no match."""
        self.assertFalse(self.index.lookup("999999_6..N", "101S", "6").matched)
        self.assertFalse(self.index.lookup("garbage", "XYZ", "1").matched)

    def test_rows_without_time_skipped(self):
        """Test rows without an arrival time are skipped."""
        self.assertNotIn(f"{TRIP_A}:A03N", self.index.exact)

    def test_exact_hit_never_probes_fallback_tiers(self):
        """Test an exact hit skips the fallback tiers."""
        with patch("trainpulse.schedule.tier2_keys") as mock_tier2, \
                patch("trainpulse.schedule.tier3_keys") as mock_tier3:
            match = self.index.lookup("000600_1..S03R", "101S", "1")

        self.assertEqual(match.tier, MatchTier.EXACT)
        mock_tier2.assert_not_called()
        mock_tier3.assert_not_called()

    def test_shape_hit_never_probes_direction_tier(self):
        """Test a shape hit skips the direction tier."""
        with patch("trainpulse.schedule.tier3_keys") as mock_tier3:
            match = self.index.lookup("999999_1..S03R", "101S", "1")

        self.assertEqual(match.tier, MatchTier.SHAPE)
        mock_tier3.assert_not_called()

    def test_snapshot_restores_lookups(self):
        """Test a snapshot restores every tier."""
        restored = ScheduleIndex.from_snapshot(json.loads(json.dumps(self.index.to_snapshot())))
        self.assertEqual(restored.sizes(), self.index.sizes())
        self.assertEqual(restored.lookup("999999_1..S", "103S", "1").entry.arrival_minutes, 482)

    def test_snapshot_version_mismatch(self):
        """Test a snapshot with another version is rejected."""
        snapshot = self.index.to_snapshot()
        snapshot["version"] = SNAPSHOT_VERSION + 1
        self.assertIsNone(ScheduleIndex.from_snapshot(snapshot))

    def test_missing_columns(self):
        """Test missing columns raise ScheduleLoadError."""
        trips = pd.DataFrame({"trip_id": [TRIP_1]})
        stop_times = pd.DataFrame({"trip_id": [TRIP_1]})
        with self.assertRaises(ScheduleLoadError):
            ScheduleIndex.from_frames(trips, stop_times)

    def test_malformed_time(self):
        """Test a malformed time raises ScheduleLoadError."""
        trips = pd.DataFrame({"trip_id": [TRIP_1], "route_id": ["1"]})
        stop_times = pd.DataFrame({
            "trip_id": [TRIP_1],
            "stop_id": ["101S"],
            "arrival_time": ["eight"],
            "departure_time": ["eight"],
            "stop_sequence": ["1"],
        })
        with self.assertRaises(ScheduleLoadError):
            ScheduleIndex.from_frames(trips, stop_times)


class TestDelayCalculation(unittest.TestCase):
    """Test delay sign, batch mode and service day handling."""

    @classmethod
    def setUpClass(cls):
        cls.resolver = ScheduleDelayResolver.from_index(build_index())

    def test_late_is_positive(self):
        """Test late arrivals give a positive delay."""
        actual = datetime(2024, 3, 5, 8, 1, 30, tzinfo=NY)
        self.assertEqual(self.resolver.calculate_delay("000600_1..S03R", "101S", actual, "1"), 90)

    def test_early_is_negative(self):
        """Test early arrivals give a negative delay."""
        actual = datetime(2024, 3, 5, 7, 58, 30, tzinfo=NY)
        self.assertEqual(self.resolver.calculate_delay("000600_1..S03R", "101S", actual, "1"), -90)

    def test_accepts_iso_string(self):
        """Test ISO string arrivals."""
        # 13:01:30 UTC is 08:01:30 EST
        self.assertEqual(self.resolver.calculate_delay("000600_1..S03R", "101N", "2024-03-05T13:01:30+00:00"), 90)

    def test_resolve_delay_reports_tier(self):
        """Test resolve_delay reports the matching tier."""
        actual = datetime(2024, 3, 5, 8, 3, 0, tzinfo=NY)
        result = self.resolver.resolve_delay("999999_1..S", "103S", actual, "1")
        self.assertEqual(result.tier, MatchTier.DIRECTION)
        self.assertEqual(result.delay_seconds, 60)

    def test_no_match_returns_none(self):
        """Test no match gives a None delay."""
        actual = datetime(2024, 3, 5, 8, 0, tzinfo=NY)
        self.assertIsNone(self.resolver.calculate_delay("unknown", "101S", actual))
        self.assertEqual(self.resolver.resolve_delay("unknown", "101S", actual).tier, MatchTier.NONE)

    def test_minutes_past_midnight_land_on_next_day(self):
        """Test times past 24:00 land on the next day."""
        # 24:10 on the service day starting 2024-03-05
        actual = datetime(2024, 3, 5, 23, 58, tzinfo=NY)
        scheduled = self.resolver.get_scheduled_arrival("002000_A..N", "A02N", actual, "A")
        self.assertEqual(scheduled, datetime(2024, 3, 6, 0, 10, tzinfo=NY))
        self.assertEqual(self.resolver.calculate_delay("002000_A..N", "A02N", actual, "A"), -720)

    def test_actual_after_midnight_uses_its_own_calendar_day(self):
        """Test an arrival after midnight anchors to its own day."""
        # No rollover reconciliation: the schedule is anchored to 2024-03-06
        actual = datetime(2024, 3, 6, 0, 12, tzinfo=NY)
        self.assertEqual(self.resolver.calculate_delay("002000_A..N", "A02N", actual, "A"), 120 - 86400)

    def test_batch_is_sparse_and_keyed_by_input_index(self):
        """Test batch results are keyed by input index."""
        items = [
            ArrivalQuery("000600_1..S03R", "101S", datetime(2024, 3, 5, 8, 1, tzinfo=NY), "1"),
            ("unknown_trip", "999S", datetime(2024, 3, 5, 8, 1, tzinfo=NY)),
            ("001000_1..S03R", "103S", datetime(2024, 3, 5, 8, 11, tzinfo=NY), "1"),
        ]
        self.assertEqual(self.resolver.calculate_delays_batch(items), {0: 60, 2: -60})

    def test_batch_skips_rows_with_bad_timestamps(self):
        """Test one unparseable timestamp does not discard the other rows."""
        actual = datetime(2024, 3, 5, 8, 1, tzinfo=NY)
        items = [
            ("000600_1..S03R", "101S", actual, "1"),
            ("000600_1..S03R", "101S", "garbage", "1"),
            ("000600_1..S03R", "101S", actual, "1"),
        ]
        self.assertEqual(self.resolver.calculate_delays_batch(items), {0: 60, 2: 60})

    def test_half_seconds_round_up(self):
        """Test half-second delays round toward positive infinity."""
        late = datetime(2024, 3, 5, 8, 1, 30, 500000, tzinfo=NY)
        early = datetime(2024, 3, 5, 7, 58, 29, 500000, tzinfo=NY)
        self.assertEqual(self.resolver.calculate_delay("000600_1..S03R", "101S", late, "1"), 91)
        self.assertEqual(self.resolver.calculate_delay("000600_1..S03R", "101S", early, "1"), -90)


class TestScheduleDelayResolver(unittest.TestCase):
    """Test lazy loading, snapshots and single-flight builds."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.data_dir = Path(self.tmp.name)
        write_gtfs(self.data_dir)
        self.snapshot = self.data_dir / "schedule-cache.json"

    def tearDown(self):
        self.tmp.cleanup()

    def make_resolver(self, snapshot=True) -> ScheduleDelayResolver:
        return ScheduleDelayResolver(
            self.data_dir / "trips.txt",
            self.data_dir / "stop_times.txt",
            self.snapshot if snapshot else None,
        )

    def test_builds_lazily_and_writes_snapshot(self):
        """Test the index builds on first use and saves a snapshot."""
        resolver = self.make_resolver()
        self.assertFalse(self.snapshot.exists())

        self.assertEqual(resolver.lookup("000600_1..S03R", "101S").tier, MatchTier.EXACT)
        self.assertTrue(self.snapshot.exists())

    def test_loads_snapshot_without_rebuilding(self):
        """Test a saved snapshot avoids a rebuild."""
        self.make_resolver().get_index()

        with patch.object(ScheduleIndex, "build") as mock_build:
            index = self.make_resolver().get_index()

        mock_build.assert_not_called()
        self.assertEqual(index.lookup("000600_1..S03R", "101S").entry.arrival_minutes, 480)

    def test_stale_snapshot_triggers_rebuild(self):
        """Test an old snapshot version triggers a rebuild."""
        self.snapshot.write_text(json.dumps({"version": 0}))
        index = self.make_resolver().get_index()

        self.assertTrue(index.lookup("000600_1..S03R", "101S").matched)
        self.assertEqual(json.loads(self.snapshot.read_text())["version"], SNAPSHOT_VERSION)

    def test_corrupt_snapshot_triggers_rebuild(self):
        """Test a corrupt snapshot triggers a rebuild."""
        self.snapshot.write_text("{not json")
        self.assertTrue(self.make_resolver().get_index().lookup("000600_1..S03R", "101S").matched)

    def test_missing_schedule_files_are_fatal(self):
        """Test missing schedule files raise ScheduleLoadError."""
        (self.data_dir / "stop_times.txt").unlink()
        resolver = self.make_resolver(snapshot=False)
        with self.assertRaises(ScheduleLoadError):
            resolver.calculate_delay("000600_1..S03R", "101S", datetime(2024, 3, 5, 8, 0, tzinfo=NY))
        with self.assertRaises(ScheduleLoadError):
            resolver.calculate_delays_batch([])

    def test_undecodable_schedule_file_is_fatal(self):
        """Test invalid UTF-8 in trips.txt raises ScheduleLoadError."""
        (self.data_dir / "trips.txt").write_bytes(b"route_id,trip_id\n1,T\xff\xfe1\n")
        with self.assertRaises(ScheduleLoadError):
            self.make_resolver(snapshot=False).get_index()

    def test_concurrent_first_lookups_build_once(self):
        """Test concurrent first lookups build the index once."""
        real_index = build_index()
        build_calls = []

        def slow_build(*args):
            build_calls.append(args)
            time.sleep(0.1)
            return real_index

        resolver = self.make_resolver(snapshot=False)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(resolver.lookup("000600_1..S03R", "101S").tier)

        with patch.object(ScheduleIndex, "build", side_effect=slow_build):
            threads = [threading.Thread(target=worker) for _ in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

        self.assertEqual(len(build_calls), 1)
        self.assertEqual(results, [MatchTier.EXACT] * 8)

    def test_invalidate_forces_rebuild(self):
        """Test invalidate forces a rebuild."""
        resolver = self.make_resolver(snapshot=False)
        with patch.object(ScheduleIndex, "build", wraps=ScheduleIndex.build) as mock_build:
            resolver.get_index()
            resolver.get_index()
            resolver.invalidate()
            resolver.get_index()
        self.assertEqual(mock_build.call_count, 2)


if __name__ == "__main__":
    unittest.main()
