#!/usr/bin/env python3
"""
pNode Crawler Command Line Interface.

Commands:
    - run: Start the sync scheduler and crawl until interrupted
    - sync: Run a single sync cycle and print the result as JSON
    - check: Verify the bootstrap directory is reachable
    - info: Display the effective configuration

Usage:
    pnode-crawler run [--no-initial-delay]
    pnode-crawler sync [--pretty]
    pnode-crawler check
    pnode-crawler info
    pnode-crawler --version
"""

import argparse
import json
import os
import platform
import sys
import time

from dotenv import load_dotenv

from crawler_config import CrawlerConfig
from crawler_errors import DirectoryError
from monitoring import configure_logging, metrics
from node_store import NodeStore
from prpc_client import DirectoryClient
from sync_engine import SyncEngine

__version__ = "0.1.0"


def _load_config() -> CrawlerConfig:
    load_dotenv()
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))
    return CrawlerConfig.from_env()


def cmd_run(args) -> int:
    """Run the scheduler until interrupted."""
    config = _load_config()
    if args.no_initial_delay:
        config = CrawlerConfig(**{**config.to_dict(), "initial_sync_delay": 0.0})

    engine = SyncEngine(NodeStore(), config)
    engine.start()
    try:
        while engine.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        engine.close()
    return 0


def cmd_sync(args) -> int:
    """Run one cycle and print the cycle result plus network stats."""
    config = _load_config()
    store = NodeStore()
    engine = SyncEngine(store, config)
    try:
        result = engine.trigger_sync_now()
    finally:
        engine.close()

    output = {"result": result.to_dict()}
    if result.success:
        output["network"] = store.calculate_network_stats()
    if args.metrics:
        output["metrics"] = metrics.get_all()

    print(json.dumps(output, indent=2 if args.pretty else None, default=str))
    return 0 if result.success else 1


def cmd_check(args) -> int:
    """Fetch the pod list once from the bootstrap directory."""
    config = _load_config()
    print("pNode Crawler Directory Check")
    print("=" * 40)
    print(f"Bootstrap: {config.bootstrap_url}")

    directory = DirectoryClient(config.bootstrap_url, timeout=config.directory_timeout)
    try:
        pods = directory.get_pods()
    except DirectoryError as e:
        print(f"  ✗ Directory: FAIL: {e}")
        return 1
    finally:
        directory.close()

    unique_ips = {pod.ip for pod in pods}
    print(f"  ✓ Directory: OK ({len(pods)} pods, {len(unique_ips)} unique IPs)")
    return 0


def cmd_info(args) -> int:
    """Display version and effective configuration."""
    try:
        config = _load_config()
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    print("pNode Crawler Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    print()
    print("Configuration:")
    for key, value in config.to_dict().items():
        print(f"  {key}: {value}")
    print(f"  log_level: {os.getenv('LOG_LEVEL', 'INFO (default)')}")
    print(f"  log_format: {os.getenv('LOG_FORMAT', 'console (default)')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pnode-crawler",
        description="pNode Crawler - network crawler and health monitor for pNodes",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Start the sync scheduler")
    run_parser.add_argument(
        "--no-initial-delay", action="store_true", help="Run the first cycle immediately"
    )

    sync_parser = subparsers.add_parser("sync", help="Run a single sync cycle")
    sync_parser.add_argument("--pretty", action="store_true", help="Indent JSON output")
    sync_parser.add_argument("--metrics", action="store_true", help="Include collected metrics")

    subparsers.add_parser("check", help="Check the bootstrap directory")
    subparsers.add_parser("info", help="Display configuration")

    return parser


def main(argv: list[str] | None = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "run": cmd_run,
        "sync": cmd_sync,
        "check": cmd_check,
        "info": cmd_info,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(command(args))


if __name__ == "__main__":
    main()
