"""Aggregation engine: fold enriched events into character instances and death stats.

Character instances are resolved per name. The log has no explicit
"character switched" marker, so whether an event continues the active
instance or starts a new one is a heuristic, kept in should_reuse_instance().
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from deathtracker.context import EnrichedEvent
from deathtracker.parser import AreaChange, Death, LevelUp

logger = logging.getLogger(__name__)

UNKNOWN_CLASS = "Unknown"
DEFAULT_RECENT_DEATHS = 10

_TS_FORMAT = "%Y/%m/%d %H:%M:%S"


class League(Enum):
    HARDCORE = "hardcore"
    STANDARD = "standard"


class DeathPolicy(Enum):
    """What a death does to an active instance that never levelled past 1."""

    NEW_INSTANCE = "new_instance"
    MERGE = "merge"


def parse_timestamp(timestamp: str) -> datetime | None:
    try:
        return datetime.strptime(timestamp, _TS_FORMAT)
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class DeathRecord:
    timestamp: str
    name: str
    char_class: str
    level: int
    area: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "name": self.name,
            "char_class": self.char_class,
            "level": self.level,
            "area": self.area,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeathRecord:
        return cls(
            timestamp=data["timestamp"],
            name=data["name"],
            char_class=data.get("char_class", UNKNOWN_CLASS),
            level=int(data.get("level", 1)),
            area=data.get("area"),
        )


@dataclass
class DeathTimeStats:
    """Death counts by hour of day, day of month, month and year."""

    by_hour: dict[int, int] = field(default_factory=dict)
    by_day: dict[int, int] = field(default_factory=dict)
    by_month: dict[int, int] = field(default_factory=dict)
    by_year: dict[int, int] = field(default_factory=dict)

    def record(self, timestamp: str) -> None:
        when = parse_timestamp(timestamp)
        if when is None:
            return
        for buckets, key in (
            (self.by_hour, when.hour),
            (self.by_day, when.day),
            (self.by_month, when.month),
            (self.by_year, when.year),
        ):
            buckets[key] = buckets.get(key, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            name: {str(k): v for k, v in getattr(self, name).items()}
            for name in ("by_hour", "by_day", "by_month", "by_year")
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeathTimeStats:
        return cls(**{
            name: {int(k): int(v) for k, v in data.get(name, {}).items()}
            for name in ("by_hour", "by_day", "by_month", "by_year")
        })


@dataclass
class DeathStats:
    """Death total plus a ring buffer of the most recent deaths."""

    total: int = 0
    recent: deque[DeathRecord] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_RECENT_DEATHS),
    )
    times: DeathTimeStats = field(default_factory=DeathTimeStats)

    @classmethod
    def empty(cls, limit: int = DEFAULT_RECENT_DEATHS) -> DeathStats:
        return cls(total=0, recent=deque(maxlen=limit))

    def record(self, death: DeathRecord) -> None:
        self.total += 1
        self.recent.append(death)  # deque drops the oldest when full
        self.times.record(death.timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "recent": [d.to_dict() for d in self.recent],
            "times": self.times.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], limit: int = DEFAULT_RECENT_DEATHS) -> DeathStats:
        recent = deque(
            (DeathRecord.from_dict(d) for d in data.get("recent", [])),
            maxlen=limit,
        )
        return cls(
            total=int(data.get("total", 0)),
            recent=recent,
            times=DeathTimeStats.from_dict(data.get("times", {})),
        )


@dataclass
class LeagueStatus:
    current: League = League.HARDCORE
    hardcore_until: str | None = None

    def convert_to_standard(self, timestamp: str) -> bool:
        """Hardcore death converts the character to standard, once."""
        if self.current is not League.HARDCORE:
            return False
        self.current = League.STANDARD
        self.hardcore_until = timestamp
        return True


@dataclass(frozen=True, slots=True)
class LevelingSummary:
    fastest_level: int | None
    fastest_seconds: int | None
    slowest_level: int | None
    slowest_seconds: int | None
    average_seconds: float | None


@dataclass
class CharacterInstance:
    """One play session of a named character."""

    name: str
    char_class: str
    max_level: int
    created: str
    last_seen: str
    area: str | None = None
    deaths: DeathStats = field(default_factory=DeathStats)
    league: LeagueStatus = field(default_factory=LeagueStatus)
    # level -> timestamp the level was reached
    level_times: dict[int, str] = field(default_factory=dict)

    def seconds_to_level(self, level: int) -> int | None:
        """Seconds spent going from level-1 to level, if both were seen."""
        reached = self.level_times.get(level)
        previous = self.level_times.get(level - 1)
        if reached is None or previous is None:
            return None
        start = parse_timestamp(previous)
        end = parse_timestamp(reached)
        if start is None or end is None:
            return None
        return int((end - start).total_seconds())

    def session_seconds(self) -> int | None:
        """Seconds between creation and the last event of this instance."""
        start = parse_timestamp(self.created)
        end = parse_timestamp(self.last_seen)
        if start is None or end is None:
            return None
        return int((end - start).total_seconds())

    def levels_per_hour(self) -> float | None:
        seconds = self.session_seconds()
        if not seconds:
            return None
        return self.max_level * 3600 / seconds

    def leveling_summary(self) -> LevelingSummary:
        times = {}
        for level in sorted(self.level_times):
            if level <= 1:
                continue
            seconds = self.seconds_to_level(level)
            if seconds is not None:
                times[level] = seconds
        if not times:
            return LevelingSummary(None, None, None, None, None)
        fastest = min(times, key=lambda lvl: times[lvl])
        slowest = max(times, key=lambda lvl: times[lvl])
        return LevelingSummary(
            fastest_level=fastest,
            fastest_seconds=times[fastest],
            slowest_level=slowest,
            slowest_seconds=times[slowest],
            average_seconds=sum(times.values()) / len(times),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "char_class": self.char_class,
            "max_level": self.max_level,
            "created": self.created,
            "last_seen": self.last_seen,
            "area": self.area,
            "deaths": self.deaths.to_dict(),
            "league": {
                "current": self.league.current.value,
                "hardcore_until": self.league.hardcore_until,
            },
            # JSON object keys are strings
            "level_times": {str(k): v for k, v in self.level_times.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], limit: int = DEFAULT_RECENT_DEATHS) -> CharacterInstance:
        league = data.get("league", {})
        return cls(
            name=data["name"],
            char_class=data.get("char_class", UNKNOWN_CLASS),
            max_level=int(data.get("max_level", 1)),
            created=data["created"],
            last_seen=data.get("last_seen", data["created"]),
            area=data.get("area"),
            deaths=DeathStats.from_dict(data.get("deaths", {}), limit),
            league=LeagueStatus(
                current=League(league.get("current", League.HARDCORE.value)),
                hardcore_until=league.get("hardcore_until"),
            ),
            level_times={int(k): v for k, v in data.get("level_times", {}).items()},
        )


@dataclass
class GlobalStats:
    deaths: DeathStats = field(default_factory=DeathStats)

    @property
    def total_deaths(self) -> int:
        return self.deaths.total


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time copy of the engine state handed to sinks.

    Holds copies: changing them does not affect the engine.
    """

    stats: GlobalStats
    characters: Mapping[str, tuple[CharacterInstance, ...]]
    current_area: str | None = None

    @property
    def total_deaths(self) -> int:
        return self.stats.total_deaths

    def active(self, name: str) -> CharacterInstance | None:
        history = self.characters.get(name)
        return history[-1] if history else None


def should_reuse_instance(
    instance: CharacterInstance,
    level: int | None,
    policy: DeathPolicy = DeathPolicy.NEW_INSTANCE,
) -> bool:
    """Decide whether an event continues the active instance of its character.

    Events without a level (deaths) continue a run that already levelled
    past 1; at level 1 the policy decides. Events with a level continue it
    only when the level went up and the class is known, anything else is
    taken as a different character reusing the name.
    """
    if level is None:
        if instance.max_level > 1:
            return True
        return policy is DeathPolicy.MERGE
    return level > instance.max_level and instance.char_class != UNKNOWN_CLASS


class AggregationEngine:
    """Stateful fold of enriched events.

    Usage:
        engine = AggregationEngine()
        snapshot = engine.apply(enriched)  # None for startup events
    """

    def __init__(
        self,
        recent_limit: int = DEFAULT_RECENT_DEATHS,
        death_policy: DeathPolicy = DeathPolicy.NEW_INSTANCE,
    ) -> None:
        self._recent_limit = recent_limit
        self._death_policy = death_policy
        self._stats = GlobalStats(deaths=DeathStats.empty(recent_limit))
        # name -> instances in session order; the last one is the active instance
        self._characters: dict[str, list[CharacterInstance]] = {}
        self._current_area: str | None = None

    @property
    def total_deaths(self) -> int:
        return self._stats.total_deaths

    @property
    def current_area(self) -> str | None:
        return self._current_area

    @property
    def death_policy(self) -> DeathPolicy:
        return self._death_policy

    def instances(self, name: str) -> tuple[CharacterInstance, ...]:
        return tuple(self._characters.get(name, ()))

    def active_instance(self, name: str) -> CharacterInstance | None:
        history = self._characters.get(name)
        return history[-1] if history else None

    def apply(self, enriched: EnrichedEvent) -> StateSnapshot | None:
        """Fold one event. Returns a snapshot for live state-changing events."""
        event = enriched.event
        if isinstance(event, Death):
            self._handle_death(enriched, event)
        elif isinstance(event, LevelUp):
            self._handle_level_up(event)
        elif isinstance(event, AreaChange):
            self._current_area = event.area_name
            return None
        else:
            logger.debug("Not aggregated: %s", event.kind.value)
            return None

        if enriched.is_startup:
            return None
        return self.snapshot()

    def snapshot(self) -> StateSnapshot:
        characters = {
            name: tuple(copy.deepcopy(history))
            for name, history in self._characters.items()
        }
        return StateSnapshot(
            stats=copy.deepcopy(self._stats),
            characters=MappingProxyType(characters),
            current_area=self._current_area,
        )

    def _resolve(
        self,
        name: str,
        timestamp: str,
        char_class: str | None = None,
        level: int | None = None,
    ) -> CharacterInstance:
        active = self.active_instance(name)
        if active is not None and should_reuse_instance(active, level, self._death_policy):
            return active

        instance = CharacterInstance(
            name=name,
            char_class=char_class or UNKNOWN_CLASS,
            max_level=level or 1,
            created=timestamp,
            last_seen=timestamp,
            area=self._current_area,
            deaths=DeathStats.empty(self._recent_limit),
        )
        instance.level_times[instance.max_level] = timestamp
        self._characters.setdefault(name, []).append(instance)
        logger.info(
            "New character instance: %s (%s) level %d",
            name, instance.char_class, instance.max_level,
        )
        return instance

    def _handle_death(self, enriched: EnrichedEvent, event: Death) -> None:
        name = event.name or enriched.character.name or ""
        instance = self._resolve(name, event.timestamp)
        instance.area = self._current_area

        record = DeathRecord(
            timestamp=event.timestamp,
            name=name,
            char_class=instance.char_class,
            level=instance.max_level,
            area=instance.area,
        )
        self._stats.deaths.record(record)
        instance.deaths.record(record)
        instance.last_seen = event.timestamp

        if instance.league.convert_to_standard(event.timestamp):
            logger.info("%s is no longer hardcore (died %s)", name, event.timestamp)

        if not enriched.is_startup:
            logger.info(
                "Death: %s (%s) level %d in %s, total %d",
                name, instance.char_class, instance.max_level,
                instance.area or "?", self._stats.total_deaths,
            )

    def _handle_level_up(self, event: LevelUp) -> None:
        instance = self._resolve(event.name, event.timestamp, event.char_class, event.level)
        instance.max_level = max(instance.max_level, event.level)
        instance.level_times.setdefault(event.level, event.timestamp)
        # Class can change with ascendancy, e.g. Sorceress -> Stormweaver
        instance.char_class = event.char_class
        instance.last_seen = event.timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_area": self._current_area,
            "deaths": self._stats.deaths.to_dict(),
            "characters": {
                name: [inst.to_dict() for inst in history]
                for name, history in self._characters.items()
            },
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        recent_limit: int = DEFAULT_RECENT_DEATHS,
        death_policy: DeathPolicy = DeathPolicy.NEW_INSTANCE,
    ) -> AggregationEngine:
        """Rebuild an engine from to_dict() output without replaying the log."""
        engine = cls(recent_limit=recent_limit, death_policy=death_policy)
        engine._current_area = data.get("current_area")
        engine._stats = GlobalStats(
            deaths=DeathStats.from_dict(data.get("deaths", {}), recent_limit),
        )
        engine._characters = {
            name: [CharacterInstance.from_dict(d, recent_limit) for d in history]
            for name, history in data.get("characters", {}).items()
        }
        return engine
