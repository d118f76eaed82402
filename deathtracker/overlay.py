"""Text files for stream overlay software (OBS text sources etc.)."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from deathtracker.context import EnrichedEvent
from deathtracker.state import CharacterInstance, DeathRecord, DeathTimeStats, StateSnapshot

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = "death-stats"
LAST_DEATHS_COUNT = 5


def format_death(death: DeathRecord) -> str:
    """2025/01/02 03:04:05 | 12 Player123 (Witch) | The Riverbank"""
    return f"{death.timestamp} | {death.level} {death.name} ({death.char_class}) | {death.area or ''}"


def format_duration(seconds: float | None) -> str:
    """75 -> "1m 15s", 3725 -> "1h 2m"."""
    if seconds is None:
        return "N/A"
    seconds = int(seconds)
    if seconds == 0:
        return "0s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def _clock(timestamp: str) -> str:
    return timestamp.split(" ")[-1]


class OverlayWriter:
    """Snapshot sink writing one small text file per overlay element.

    Files:
        total_deaths.txt                Total Deaths: N
        last_five_deaths_desc.txt       most recent death first
        last_five_deaths_asc.txt        oldest first
        current_character.txt           Name (Class) | Level N | Deaths: D
        current_character_session.txt   session length, level, deaths, start time
        current_character_records.txt   fastest and slowest level, average, pace
        current_character_levels.txt    time taken for each level
        deaths_by_hour.txt              all deaths by hour of day
    """

    def __init__(self, output_dir: str | Path = DEFAULT_OUTPUT_DIR) -> None:
        self._output_dir = Path(output_dir)

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def on_snapshot(self, snapshot: StateSnapshot, event: EnrichedEvent | None) -> None:
        """Render the snapshot. event is None for the end-of-startup refresh."""
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._write("total_deaths.txt", f"Total Deaths: {snapshot.total_deaths}")

        last = list(snapshot.stats.deaths.recent)[-LAST_DEATHS_COUNT:]
        if last:
            lines = [format_death(d) for d in last]
            self._write("last_five_deaths_desc.txt", "\n".join(reversed(lines)))
            self._write("last_five_deaths_asc.txt", "\n".join(lines))

        name = event.character.name if event is not None else self._latest_name(snapshot)
        instance = snapshot.active(name) if name else None
        if instance is not None:
            self._write(
                "current_character.txt",
                f"{instance.name} ({instance.char_class}) | Level {instance.max_level}"
                f" | Deaths: {instance.deaths.total}",
            )
            self._write_character_stats(instance)

        self._write_death_hours(snapshot.stats.deaths.times)

    def _write_character_stats(self, instance: CharacterInstance) -> None:
        self._write(
            "current_character_session.txt",
            f"Session Length: {format_duration(instance.session_seconds())}"
            f" | Levels Gained: {instance.max_level}"
            f" | Deaths: {instance.deaths.total}"
            f" | Started: {_clock(instance.created)}",
        )

        summary = instance.leveling_summary()
        if summary.fastest_level is None:
            return
        pace = instance.levels_per_hour()
        pace_text = f"{pace:.1f}" if pace is not None else "N/A"
        self._write(
            "current_character_records.txt",
            f"Fastest: L{summary.fastest_level} ({format_duration(summary.fastest_seconds)})"
            f" | Slowest: L{summary.slowest_level} ({format_duration(summary.slowest_seconds)})"
            f" | Average: {format_duration(summary.average_seconds)}"
            f" | Pace: {pace_text} lvl/hr",
        )
        history = [
            f"{_clock(instance.level_times[level])} | Level {level}"
            f" | {format_duration(instance.seconds_to_level(level))}"
            for level in sorted(instance.level_times)
        ]
        self._write("current_character_levels.txt", "Level History:\n" + "\n".join(history))

    def _write_death_hours(self, times: DeathTimeStats) -> None:
        if not times.by_hour:
            return
        lines = [f"{hour:02d}:00 {count}" for hour, count in sorted(times.by_hour.items())]
        self._write("deaths_by_hour.txt", "\n".join(lines))

    @staticmethod
    def _latest_name(snapshot: StateSnapshot) -> str | None:
        """Name of the character whose active instance was seen last."""
        latest = None
        for name, history in snapshot.characters.items():
            if latest is None or history[-1].last_seen >= snapshot.characters[latest][-1].last_seen:
                latest = name
        return latest

    def _write(self, filename: str, content: str) -> None:
        # Write-then-rename so the overlay never reads a half-written file
        path = self._output_dir / filename
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
