"""Parser for Path of Exile 2 Client.txt log format."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


class EventType(Enum):
    DEATH = "death"
    LEVEL_UP = "level_up"
    AREA = "area"
    IDENTIFY = "identify"
    PASSIVE_ALLOCATED = "passive_allocated"
    AFK_STATUS = "afk_status"


@dataclass(frozen=True, slots=True)
class RawEvent:
    """Base of all parsed log events."""

    kind: ClassVar[EventType]

    timestamp: str


@dataclass(frozen=True, slots=True)
class Death(RawEvent):
    kind: ClassVar[EventType] = EventType.DEATH

    name: str


@dataclass(frozen=True, slots=True)
class LevelUp(RawEvent):
    kind: ClassVar[EventType] = EventType.LEVEL_UP

    name: str
    char_class: str
    level: int


@dataclass(frozen=True, slots=True)
class AreaChange(RawEvent):
    kind: ClassVar[EventType] = EventType.AREA

    area_name: str
    area_level: int
    seed: int


@dataclass(frozen=True, slots=True)
class ItemsIdentified(RawEvent):
    kind: ClassVar[EventType] = EventType.IDENTIFY

    count: int


@dataclass(frozen=True, slots=True)
class PassiveAllocated(RawEvent):
    kind: ClassVar[EventType] = EventType.PASSIVE_ALLOCATED

    skill_id: str
    skill_name: str


@dataclass(frozen=True, slots=True)
class AfkStatusChanged(RawEvent):
    kind: ClassVar[EventType] = EventType.AFK_STATUS

    afk: bool
    auto_reply: str | None


DEFAULT_AFK_REPLY = "This player is AFK."

# Client.txt format examples:
# 2025/01/02 03:04:05 12345 abcdef [INFO Client 1] : Player123 has been slain.
# 2025/01/02 03:04:05 12345 abcdef [INFO Client 1] : Player123 (Witch) is now level 2
# 2025/01/02 03:04:05 12345 abcdef [DEBUG Client 1] Generating level 5 area "G1_2" with seed 77889

_TS = r"(\d{4}/\d{2}/\d{2} \d{2}:\d{2}:\d{2})"
_INFO = r".*\[INFO Client[^\]]*\]"

_RE_DEATH = re.compile(
    _TS + _INFO + r" : (\S+) has been slain\.",
    re.ASCII,
)

_RE_LEVEL_UP = re.compile(
    _TS + _INFO + r" : (\S+) \(([^)]+)\) is now level (\S+)",
    re.ASCII,
)

_RE_IDENTIFY = re.compile(
    _TS + _INFO + r" : (\S+) Items? identified",
    re.ASCII,
)

_RE_AREA = re.compile(
    _TS + r".*\[DEBUG Client \d+\] Generating level (\S+) area \"([^\"]+)\" with seed (\S+)",
    re.ASCII,
)

_RE_PASSIVE = re.compile(
    _TS + _INFO + r" Successfully allocated passive skill id: ([^,]+), name: (.+)",
    re.ASCII,
)

# AFK mode is now ON. Autoreply "This player is AFK."
_RE_AFK = re.compile(
    _TS + _INFO + r" : AFK mode is now (ON|OFF)(?:\. Autoreply \"([^\"]*)\")?",
    re.ASCII,
)


_MAX_INT_DIGITS = 19  # longer captures are not game values


def _to_int(value: str) -> int | None:
    """Strict base-10 parse; None if the capture is not all ASCII digits."""
    if not value.isascii() or not value.isdigit() or len(value) > _MAX_INT_DIGITS:
        return None
    return int(value, 10)


def _build_death(m: re.Match[str]) -> RawEvent | None:
    return Death(timestamp=m.group(1), name=m.group(2))


def _build_level_up(m: re.Match[str]) -> RawEvent | None:
    level = _to_int(m.group(4))
    if level is None or level < 1:
        return None
    return LevelUp(
        timestamp=m.group(1),
        name=m.group(2),
        char_class=m.group(3),
        level=level,
    )


def _build_identify(m: re.Match[str]) -> RawEvent | None:
    count = _to_int(m.group(2))
    if count is None:
        return None
    return ItemsIdentified(timestamp=m.group(1), count=count)


def _build_area(m: re.Match[str]) -> RawEvent | None:
    area_level = _to_int(m.group(2))
    seed = _to_int(m.group(4))
    if area_level is None or seed is None:
        return None
    return AreaChange(
        timestamp=m.group(1),
        area_name=m.group(3),
        area_level=area_level,
        seed=seed,
    )


def _build_passive(m: re.Match[str]) -> RawEvent | None:
    return PassiveAllocated(
        timestamp=m.group(1),
        skill_id=m.group(2).strip(),
        skill_name=m.group(3).strip(),
    )


def _build_afk(m: re.Match[str]) -> RawEvent | None:
    afk = m.group(2) == "ON"
    reply = None
    if afk:
        reply = m.group(3) if m.group(3) is not None else DEFAULT_AFK_REPLY
    return AfkStatusChanged(timestamp=m.group(1), afk=afk, auto_reply=reply)


# Order matters: first rule whose pattern matches and whose builder
# accepts the captures wins.
_RULES: list[tuple[re.Pattern[str], Callable[[re.Match[str]], RawEvent | None]]] = [
    (_RE_DEATH, _build_death),
    (_RE_LEVEL_UP, _build_level_up),
    (_RE_IDENTIFY, _build_identify),
    (_RE_AREA, _build_area),
    (_RE_PASSIVE, _build_passive),
    (_RE_AFK, _build_afk),
]


def classify(line: str) -> RawEvent | None:
    """Classify a single Client.txt line into a RawEvent.

    Returns None for the (vast majority of) lines that are not tracked,
    and for lines whose captures cannot be converted.
    """
    if not line:
        return None
    for regex, build in _RULES:
        m = regex.search(line)
        if m is None:
            continue
        event = build(m)
        if event is not None:
            return event
    return None
