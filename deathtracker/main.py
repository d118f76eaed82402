"""poe-death-tracker: entry point.

Usage:
    poe-death-tracker --log "D:/Games/Path of Exile 2/logs/Client.txt"
    poe-death-tracker --output death-stats --debug
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

from dotenv import load_dotenv

from deathtracker.config import CONFIG_FILE, AppConfig, resolve_log_path
from deathtracker.overlay import OverlayWriter
from deathtracker.pipeline import PipelineConfig, TrackerPipeline
from deathtracker.state import DeathPolicy

_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def _setup_logging(debug: bool) -> None:
    """Log to deathtracker.log and the console."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=_LOG_FMT,
        handlers=[
            logging.FileHandler("deathtracker.log", encoding="utf-8", mode="w"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def _build_pipeline_config(config: AppConfig) -> PipelineConfig:
    """Convert AppConfig to PipelineConfig."""
    try:
        policy = DeathPolicy(config.death_policy)
    except ValueError:
        logger.warning("Unknown death_policy %r, using %s",
                       config.death_policy, DeathPolicy.NEW_INSTANCE.value)
        policy = DeathPolicy.NEW_INSTANCE

    return PipelineConfig(
        log_path=resolve_log_path(config),
        db_path=config.db_path if config.persist_state else None,
        poll_interval=config.poll_interval,
        min_read_interval=config.min_read_interval,
        recent_deaths=config.recent_deaths,
        death_policy=policy,
        snapshot_interval=config.snapshot_interval,
    )


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="poe-death-tracker",
        description="Death and leveling tracker for Path of Exile 2",
    )
    parser.add_argument("-p", "--log", help="Path to Client.txt")
    parser.add_argument("-o", "--output", help="Output directory for overlay files")
    parser.add_argument("-c", "--config", default=CONFIG_FILE, help="Settings file (JSON)")
    parser.add_argument("--no-overlay", action="store_true", help="Do not write overlay files")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parse_args(argv)

    config = AppConfig.load(args.config)
    if args.log:
        config.log_path = args.log
    if args.output:
        config.output_dir = args.output
    if args.no_overlay:
        config.overlay_enabled = False

    _setup_logging(args.debug or config.debug)

    pipeline_config = _build_pipeline_config(config)
    pipeline = TrackerPipeline(pipeline_config)
    if config.overlay_enabled:
        pipeline.add_sink(OverlayWriter(config.output_dir).on_snapshot)
        logger.info("Overlay files are written to %s", config.output_dir)

    done = threading.Event()

    def shutdown(*_: object) -> None:
        logger.info("Shutting down...")
        done.set()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    pipeline.start()
    logger.info("Death tracker started")
    try:
        while not done.wait(0.5):
            pass
    finally:
        pipeline.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
