"""Main entry point for live-rebuild.

This module handles the command-line interface (CLI), configuration loading,
logging setup and the watch-mode lifecycle. It constructs every long-lived
object once (notifier, pipeline, scheduler, watch service, HTTP server) and
wires them together explicitly.

Key Responsibilities:
    - CLI Argument Parsing: ``watch`` and ``dump-config`` commands plus overrides.
    - Signal Handling: SIGINT/SIGTERM set a stop event for graceful shutdown.
    - Logging: Console logging plus optional rotating file logging (10MB).
    - Exit Codes: 0 on clean shutdown, 1 when a build configuration file changed
      or watch mode could not start, 2 on invalid configuration or usage.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType
from typing import List, Optional

from live_rebuild import __version__
from live_rebuild.bundler import EsbuildBundler
from live_rebuild.compiler import CommandCompiler
from live_rebuild.config import Config, config_to_dict, load_config
from live_rebuild.errors import FatalConfigChange, WatchEstablishmentFailed
from live_rebuild.expression import build_watch_expression
from live_rebuild.filter import ChangeFilter, build_config_paths
from live_rebuild.lockfile import LockFile
from live_rebuild.notifier import SubscriberNotifier
from live_rebuild.pipeline import LIVE_RELOAD_SCRIPT, BuildPipeline
from live_rebuild.scheduler import SerialRebuildScheduler
from live_rebuild.server import DevServer
from live_rebuild.session import EXIT_FATAL_CONFIG_CHANGE, WatchSession
from live_rebuild.watcher import WatchService

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_USAGE = 2

# Time to let an in-flight build finish on shutdown
SHUTDOWN_GRACE_SECONDS = 10.0

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Stage markers, changed files, HTTP requests.
            - ``WARNING``: Failed builds, proxy failures.
            - ``ERROR``: Stage errors, lock file problems, fatal config changes.
            - ``DEBUG``: Commands run, ignored batches, subscriber bookkeeping.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="live-rebuild",
        description="Watch a project, rebuild it on change and live-reload the browser.",
    )
    parser.add_argument("command", choices=["watch", "dump-config"], help="What to do.")
    parser.add_argument(
        "override", nargs="?", default=None, help="JSON object merged over the configuration."
    )
    parser.add_argument("--root", type=str, default=None, help="Project directory (default: cwd).")
    parser.add_argument("--port", type=int, default=None, help="HTTP port of the dev server (default: 8020).")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (overrides --log-level).")
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", type=str, default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO"
    )
    parser.add_argument(
        "--debounce-seconds", type=float, default=None, help="Time in seconds to debounce file events."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def dump_config(config: Config) -> None:
    data = config_to_dict(config)
    if sys.stdout.isatty():
        print(json.dumps(data, indent=2, sort_keys=True))
    else:
        sys.stdout.write(json.dumps(data))


def run_watch(config: Config, stop_event: Optional[threading.Event] = None) -> int:
    """Run watch mode until stopped.

    Builds once at startup, then rebuilds on every relevant change until
    ``stop_event`` is set (signal) or a build configuration file changes.

    Args:
        config (Config): The resolved configuration.
        stop_event (Optional[threading.Event]): Set to request shutdown.

    Returns:
        int: The process exit code.
    """
    stop_event = stop_event or threading.Event()
    exit_code = EXIT_OK

    lock = LockFile(config.lock_file)
    lock.acquire()

    notifier = SubscriberNotifier()
    server = DevServer(config.http, notifier)
    compiler = CommandCompiler(config.compiler.command, cwd=config.root)
    bundler = EsbuildBundler(config.esbuild, executable=config.esbuild_path, cwd=config.root)
    pipeline = BuildPipeline(compiler, bundler, notifier, inject=[*config.esbuild.inject, LIVE_RELOAD_SCRIPT])
    scheduler = SerialRebuildScheduler()
    service = WatchService(debounce_seconds=config.debounce_seconds)

    expression = build_watch_expression(config)
    change_filter = ChangeFilter(
        expression, build_config_paths(config.workspace_root, config.build_config_files)
    )

    def on_fatal(error: FatalConfigChange) -> None:
        nonlocal exit_code
        logger.error(f"{error}. Restart live-rebuild to pick up the new configuration.")
        exit_code = EXIT_FATAL_CONFIG_CHANGE
        stop_event.set()

    session = WatchSession(service, change_filter, scheduler, pipeline, on_fatal)

    try:
        try:
            server.start()
        except OSError as e:
            logger.critical(f"[http] could not listen on {config.http.host}:{config.http.port}: {e}")
            return EXIT_STARTUP_FAILURE

        try:
            session.start(config.workspace_root, expression)
        except WatchEstablishmentFailed as e:
            logger.critical(f"[watcher] {e}")
            return EXIT_STARTUP_FAILURE

        # Initial compilation + bundle
        scheduler.trigger(pipeline)

        stop_event.wait()
        return exit_code
    finally:
        watch_stats = service.get_statistics()
        session.stop()
        scheduler.stop()
        if not scheduler.wait_idle(timeout=SHUTDOWN_GRACE_SECONDS):
            logger.warning("Build still running at shutdown; exiting anyway.")
        server.stop()
        lock.release()
        stats = pipeline.get_statistics()
        logger.info(
            f"Stopped after {stats['builds_succeeded']} successful and {stats['builds_failed']} failed build(s)."
        )
        logger.debug(f"Watcher statistics: {watch_stats}")
        logger.debug(f"Scheduler statistics: {scheduler.get_statistics()}")


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the command line interface.

    Args:
        argv (Optional[List[str]]): Arguments without the program name. Defaults to ``sys.argv[1:]``.

    Raises:
        SystemExit: Always, with the exit code of the command.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO, handlers=[bootstrap_handler], force=True
    )

    try:
        config = load_config(vars(args))
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.stderr.write(f"Configuration Error: {e}\n")
        sys.exit(EXIT_USAGE)

    if args.command == "dump-config":
        dump_config(config)
        sys.exit(EXIT_OK)

    logger.info(f"Starting live-rebuild v{__version__} (PID: {os.getpid()}) in {config.root}")

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        code = run_watch(config, stop_event)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
        code = EXIT_OK
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        code = EXIT_STARTUP_FAILURE
    sys.exit(code)


if __name__ == "__main__":
    main()
