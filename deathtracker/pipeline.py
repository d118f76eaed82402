"""Tracking pipeline: watcher -> parser -> enricher -> engine -> sinks."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from deathtracker.context import ContextEnricher, EnrichedEvent
from deathtracker.parser import Death, LevelUp, classify
from deathtracker.state import (
    DEFAULT_RECENT_DEATHS,
    AggregationEngine,
    DeathPolicy,
    StateSnapshot,
)
from deathtracker.store import SIGNATURE_BYTES, StateStore, file_signature
from deathtracker.watcher import MIN_READ_INTERVAL, POLL_INTERVAL, ClientLogWatcher

logger = logging.getLogger(__name__)

# Receives every live snapshot; event is None for the end-of-startup refresh
Sink = Callable[[StateSnapshot, EnrichedEvent | None], None]

STATE_VERSION = 1


@dataclass
class PipelineConfig:
    """Pipeline configuration."""

    log_path: Path = Path("Client.txt")
    db_path: str | None = "deathtracker.db"  # None disables snapshotting
    poll_interval: float = POLL_INTERVAL
    min_read_interval: float = MIN_READ_INTERVAL
    recent_deaths: int = DEFAULT_RECENT_DEATHS
    death_policy: DeathPolicy = DeathPolicy.NEW_INSTANCE
    snapshot_interval: float = 5.0


class TrackerPipeline:
    """Orchestrates the full tracking pipeline.

    Flow: file watcher -> line classifier -> context enricher
    -> aggregation engine -> snapshot sinks.

    Each line is handled in isolation: a failure is logged and the next
    line is processed. Sinks run after the state change and cannot affect it.
    """

    def __init__(
        self,
        config: PipelineConfig,
        sinks: list[Sink] | None = None,
    ) -> None:
        self._config = config
        self._sinks: list[Sink] = list(sinks or [])
        self._lock = threading.RLock()

        self._store = StateStore(config.db_path) if config.db_path else None
        self._enricher = ContextEnricher()
        self._engine = AggregationEngine(
            recent_limit=config.recent_deaths,
            death_policy=config.death_policy,
        )
        resume_offset = self._restore()

        self._watcher = ClientLogWatcher(
            config.log_path,
            self._on_new_line,
            on_startup_done=self._on_startup_done,
            on_batch_done=self._on_batch_done,
            resume_offset=resume_offset,
            poll_interval=config.poll_interval,
            min_interval=config.min_read_interval,
        )

        self._dirty = False
        self._last_save: float | None = None
        self._started = False
        self._stopped = False

    @property
    def engine(self) -> AggregationEngine:
        return self._engine

    @property
    def enricher(self) -> ContextEnricher:
        return self._enricher

    @property
    def watcher(self) -> ClientLogWatcher:
        return self._watcher

    def add_sink(self, sink: Sink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def snapshot(self) -> StateSnapshot:
        with self._lock:
            return self._engine.snapshot()

    def start(self, follow: bool = True) -> None:
        """Replay the existing log, then keep tailing it (when follow)."""
        self._started = True
        self._watcher.start(follow=follow)
        logger.info("Pipeline started (%s)", self._config.log_path)

    def stop(self) -> None:
        """Stop the pipeline. No sink is called after this returns."""
        if self._stopped:
            return
        self._watcher.stop()
        with self._lock:
            self._stopped = True
            if self._store is not None:
                if self._started:
                    self._save(self._watcher.committed_offset)
                self._store.close()
        logger.info("Pipeline stopped")

    def _restore(self) -> int:
        """Load saved state. Returns the log offset to resume from."""
        if self._store is None:
            return 0
        saved = self._store.load(self._config.log_path)
        if saved is None:
            return 0

        try:
            engine = AggregationEngine.from_dict(
                saved.state.get("engine", {}),
                recent_limit=self._config.recent_deaths,
                death_policy=self._config.death_policy,
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Saved state is unusable, starting fresh: %s", e)
            return 0
        self._engine = engine
        self._enricher.restore(saved.state.get("context", {}))

        current = file_signature(
            self._config.log_path, min(saved.log_offset, SIGNATURE_BYTES),
        )
        if current != saved.signature:
            logger.info("Client log was replaced since last run, reading it from the start")
            return 0
        try:
            size = Path(self._config.log_path).stat().st_size
        except OSError:
            size = 0
        if size < saved.log_offset:
            # Same head but shorter: everything left was already counted
            logger.info(
                "Client log shrank to %d bytes since last run (saved at %d), resuming at its end",
                size, saved.log_offset,
            )
            return size
        logger.info(
            "Restored state: %d deaths, resuming at byte %d",
            engine.total_deaths, saved.log_offset,
        )
        return saved.log_offset

    def _on_new_line(self, line: str, is_startup: bool) -> None:
        """Classify, enrich and aggregate one log line."""
        with self._lock:
            if self._stopped:
                return
            try:
                event = classify(line)
                if event is None:
                    return
                enriched = self._enricher.process(event, is_startup=is_startup)
                snapshot = self._engine.apply(enriched)
            except Exception:
                logger.exception("Failed to process line: %s", line[:150])
                return

            if isinstance(event, (Death, LevelUp)):
                self._dirty = True
            if not is_startup:
                logger.debug("Event %s: %s", event.kind.value, enriched.character)
            if snapshot is not None:
                self._publish(snapshot, enriched)

    def _on_startup_done(self) -> None:
        with self._lock:
            snapshot = self._engine.snapshot()
            logger.info(
                "Startup done: %d deaths across %d characters",
                snapshot.total_deaths, len(snapshot.characters),
            )
            self._publish(snapshot, None)

    def _on_batch_done(self, offset: int) -> None:
        with self._lock:
            if self._store is None or not self._dirty:
                return
            if (
                self._last_save is not None
                and time.monotonic() - self._last_save < self._config.snapshot_interval
            ):
                return
            self._save(offset)

    def _publish(self, snapshot: StateSnapshot, event: EnrichedEvent | None) -> None:
        for sink in self._sinks:
            try:
                sink(snapshot, event)
            except Exception:
                logger.exception("Sink %r failed", sink)

    def _save(self, offset: int) -> None:
        state = {
            "version": STATE_VERSION,
            "engine": self._engine.to_dict(),
            "context": self._enricher.to_dict(),
        }
        try:
            self._store.save(self._config.log_path, offset, state)
        except (sqlite3.Error, OSError) as e:
            logger.warning("Cannot save state: %s", e)
            return
        self._dirty = False
        self._last_save = time.monotonic()
