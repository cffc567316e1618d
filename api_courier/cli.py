"""CLI entry point for api-courier.

Handles argument parsing and dispatches to pending or replay mode. Both
modes operate on the offline store named in the runtime configuration.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from api_courier.client import Courier
from api_courier.config_loader import ConfigError, load_courier_config
from api_courier.errors import CourierError
from api_courier.storage import StoreError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class PendingArgs:
    """Parsed arguments for pending mode."""

    config: Path


@dataclass
class ReplayArgs:
    """Parsed arguments for replay mode."""

    config: Path
    log_level: str


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with pending and replay subcommands."""
    parser = argparse.ArgumentParser(
        prog="api-courier",
        description="Inspect and replay HTTP requests that failed while offline.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, help="Execution mode")

    pending_parser = subparsers.add_parser(
        "pending",
        help="List requests waiting in the offline store, oldest first",
    )
    pending_parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to runtime configuration file (YAML)",
    )

    replay_parser = subparsers.add_parser(
        "replay",
        help="Re-send every request in the offline store, one at a time",
    )
    replay_parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to runtime configuration file (YAML)",
    )
    replay_parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default="WARNING",
        dest="log_level",
        help="Logging level (default: WARNING)",
    )

    return parser


def parse_args(args: list[str] | None = None) -> PendingArgs | ReplayArgs:
    """Parse command-line arguments and return typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if namespace.command == "pending":
        return PendingArgs(config=namespace.config)
    elif namespace.command == "replay":
        return ReplayArgs(config=namespace.config, log_level=namespace.log_level)
    else:
        # Should not happen with required=True on subparsers
        parser.error(f"Unknown command: {namespace.command}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        parsed = parse_args(argv)

        if isinstance(parsed, PendingArgs):
            return run_pending(parsed)
        else:
            return run_replay(parsed)

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 1


def _open_courier(config_path: Path) -> Courier | None:
    try:
        config = load_courier_config(config_path)
        return Courier.from_config(config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
    except StoreError as e:
        print(f"Error opening offline store: {e}", file=sys.stderr)
    return None


def run_pending(args: PendingArgs) -> int:
    """Run pending mode: print stored capsules in FIFO order."""
    courier = _open_courier(args.config)
    if courier is None:
        return 1

    with courier:
        capsules = courier.offline_store.pending_capsules()
        for capsule in capsules:
            created = capsule.created_at.isoformat(timespec="seconds")
            print(f"{capsule.capsule_id}  {created}  {capsule.descriptor.key}")
        print(f"Total: {len(capsules)} pending request(s)")
    return 0


def run_replay(args: ReplayArgs) -> int:
    """Run replay mode: re-send stored capsules and report what is left."""
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    courier = _open_courier(args.config)
    if courier is None:
        return 1

    with courier:
        total = len(courier.offline_store)
        if total == 0:
            print("No pending requests.")
            return 0

        print(f"Replaying {total} request(s)...")
        try:
            exchange = courier.replay().result()
        except CourierError as e:
            print(f"Last replayed request failed: {e}", file=sys.stderr)
            print(f"Still pending: {len(courier.offline_store)}")
            return 1

        if exchange is not None:
            print(f"Last response: {exchange.status_code} for {exchange.descriptor.key}")
        print(f"Still pending: {len(courier.offline_store)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
