import argparse
import logging
import os
import sys

# This boilerplate allows the script to be run directly (e.g., `python worker_monitor`)
# by adding the project root to the Python path so the absolute imports resolve.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from worker_monitor import server
from worker_monitor.config import MonitorConfig
from worker_monitor.errors import SpawnError
from worker_monitor.supervisor import resolve_worker_info

# --- Centralized Logging Configuration ---
log = logging.getLogger("WorkerMonitor")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Worker Monitor - supervises a worker process and aggregates its request telemetry",
        epilog="""
Examples:
  # Supervise ./worker and serve statistics on port 8080
  %(prog)s --worker ./worker

  # Faster ticks for local testing, no persisted statistics
  %(prog)s --worker ./worker --tick-interval-ms 2000 --disable-logs

  # Require an API key for raw (non-normalized) history
  WORKER_MONITOR_API_KEY=secret %(prog)s --worker ./worker --require-api-key
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--worker', metavar='PATH',
                        help="Worker directory containing __main__.py and manifest.json.")
    parser.add_argument('--logs-dir', metavar='DIR', help="Directory for persisted statistics and error trails.")
    parser.add_argument('--port', type=int, help="Port of the statistics API.")
    parser.add_argument('--host', help="Host address to bind the statistics API to.")
    parser.add_argument('--tick-interval-ms', type=int, help="Sampling interval in milliseconds.")
    parser.add_argument('--restart-delay-ms', type=int, help="Delay before restarting a crashed worker.")
    parser.add_argument('--no-restart', action='store_true', help="Do not restart the worker after a crash.")
    parser.add_argument('--disable-logs', action='store_true', help="Do not persist statistics to disk.")
    parser.add_argument('--suppress-console', action='store_true', help="Do not echo worker output.")
    parser.add_argument('--require-api-key', action='store_true',
                        help="Only callers presenting X-API-Key receive raw history values.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    return parser


def config_from_args(args: argparse.Namespace) -> MonitorConfig:
    return MonitorConfig.from_env().with_overrides(
        worker_path=args.worker,
        logs_dir=args.logs_dir,
        host=args.host,
        port=args.port,
        tick_interval_ms=args.tick_interval_ms,
        restart_delay_ms=args.restart_delay_ms,
        should_restart=False if args.no_restart else None,
        disable_logs=True if args.disable_logs else None,
        suppress_console=True if args.suppress_console else None,
        require_api_key=True if args.require_api_key else None,
    )


def main():
    args = build_parser().parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    try:
        config = config_from_args(args)
    except ValueError as e:
        log.critical(f"Invalid configuration: {e}")
        sys.exit(1)

    if config.require_api_key and not config.api_key:
        log.critical("--require-api-key is set but WORKER_MONITOR_API_KEY is empty.")
        sys.exit(1)

    # Fail fast on a bad worker before binding the port
    try:
        info = resolve_worker_info(config.worker_path)
    except SpawnError as e:
        log.critical(f"Cannot start worker: {e}")
        sys.exit(1)
    log.info(f"Worker manifest: {info.name}@{info.version}")

    try:
        server.run_server(config)
    except SpawnError as e:
        log.critical(f"Cannot start worker: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
