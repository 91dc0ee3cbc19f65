"""Example usage of TransitEngine."""

import logging
import sys
from pathlib import Path

# Add src to path so we can import trainpulse
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainpulse import TrainPulseError, TransitEngine
from trainpulse.feed_groups import get_feed_group_for_route

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def print_board(engine: TransitEngine, route_id: str, stop_id: str):
    """
    Display the arrival board and delays for a stop.

    Args:
        route_id: Route used to pick the feed group (e.g. "1").
        stop_id: Platform stop ID (e.g. "127N").
    """
    group_id = get_feed_group_for_route(route_id)
    if group_id is None:
        print(f"Unknown route: {route_id}")
        sys.exit(1)

    board = engine.get_arrival_board(group_id, stop_id)
    print(f"\n{'='*70}")
    print(f"{board.stop_name or stop_id} ({board.stop_id}) - feed {group_id}")
    print(f"{'='*70}\n")

    if not board.arrivals:
        print("  No arrivals in the next 20 minutes")
    for item in board.arrivals:
        delay = engine.calculate_delay(item.trip_id, item.stop_id, item.when_iso, item.route_id)
        delay_text = f"{delay:+d}s vs schedule" if delay is not None else "no schedule match"
        print(f"  {item.route_id:>3}  {item.when_local:>8}  {item.eta_text:<12} {delay_text}")

    positions = engine.calculate_train_positions(engine.fetch_feed(group_id))
    print(f"\n{len(positions)} trains currently between stops on feed {group_id}\n")


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("Usage: example.py ROUTE STOP_ID   (e.g. example.py 1 127N)")
        sys.exit(2)

    try:
        print_board(TransitEngine(), sys.argv[1], sys.argv[2])
    except TrainPulseError as e:
        logger.error(f"Failed to fetch data: {e}", exc_info=True)
        print(f"Error: {e}")
        sys.exit(1)
