"""Character context enrichment: backfill fields a log line does not carry."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from deathtracker.parser import AreaChange, Death, LevelUp, RawEvent

logger = logging.getLogger(__name__)


@dataclass
class CharacterContext:
    """Most recently seen character identity. Owned by one ContextEnricher."""

    name: str | None = None
    char_class: str | None = None
    level: int | None = None
    area: str | None = None


@dataclass(frozen=True, slots=True)
class CharacterRef:
    """Resolved character fields attached to an enriched event."""

    name: str | None
    char_class: str | None
    level: int | None
    area: str | None


@dataclass(frozen=True, slots=True)
class EnrichedEvent:
    """A RawEvent plus the character context it happened in."""

    event: RawEvent
    character: CharacterRef
    is_startup: bool = False

    @property
    def timestamp(self) -> str:
        return self.event.timestamp


class ContextEnricher:
    """Flat memo of the latest name/class/level/area seen in the log.

    Has no notion of character sessions; the aggregation engine decides
    instance boundaries.
    """

    def __init__(self) -> None:
        self._context = CharacterContext()

    @property
    def context(self) -> CharacterContext:
        c = self._context
        return CharacterContext(c.name, c.char_class, c.level, c.area)

    def process(self, event: RawEvent, is_startup: bool = False) -> EnrichedEvent:
        """Fold identity fields from the event, then build the enriched copy."""
        self._fold(event)

        name = char_class = area = None
        level: int | None = None
        if isinstance(event, (Death, LevelUp)):
            name = event.name or None
        if isinstance(event, LevelUp):
            char_class = event.char_class
            level = event.level
        elif isinstance(event, AreaChange):
            area = event.area_name

        ctx = self._context
        ref = CharacterRef(
            name=name if name is not None else ctx.name,
            char_class=char_class if char_class is not None else ctx.char_class,
            level=level if level is not None else ctx.level,
            area=area if area is not None else ctx.area,
        )
        return EnrichedEvent(event=event, character=ref, is_startup=is_startup)

    def _fold(self, event: RawEvent) -> None:
        ctx = self._context
        if isinstance(event, (Death, LevelUp)) and event.name:
            if ctx.name != event.name:
                logger.debug("Current character: %s", event.name)
            ctx.name = event.name
        if isinstance(event, LevelUp):
            ctx.char_class = event.char_class
            ctx.level = event.level
        elif isinstance(event, AreaChange):
            ctx.area = event.area_name

    def to_dict(self) -> dict[str, Any]:
        return asdict(self._context)

    def restore(self, data: dict[str, Any]) -> None:
        """Reload context saved with to_dict(), ignoring unknown keys."""
        fields = asdict(CharacterContext())
        fields.update({k: v for k, v in data.items() if k in fields})
        self._context = CharacterContext(**fields)
