"""
Cut markers.

A MarkerSet holds one position (milliseconds from the start of the audio)
per marker role, or UNSET. Roles are related through an explicit pairing
table: every start role has an end role that must not precede it, and the
fade-up point must not follow the fade-down point. All positions lie inside
[CutStart, CutEnd].

MarkerDeriver computes the initial markers of a newly imported cut. Later
edits happen downstream through Catalog.read_markers() / write_markers().
"""

import logging
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union


logger = logging.getLogger(__name__)

UNSET = -1

# Marker offsets are either milliseconds (negative counts back from the end
# of the cut) or a percentage string such as "25%"
Offset = Union[int, str]


class MarkerRole(Enum):
    """Marker roles. Values are the persisted catalog field names."""
    CUT_START = "start_point"
    CUT_END = "end_point"
    TALK_START = "talk_start_point"
    TALK_END = "talk_end_point"
    SEGUE_START = "segue_start_point"
    SEGUE_END = "segue_end_point"
    HOOK_START = "hook_start_point"
    HOOK_END = "hook_end_point"
    FADE_UP = "fadeup_point"
    FADE_DOWN = "fadedown_point"


MARKER_PAIRS: Tuple[Tuple[MarkerRole, MarkerRole], ...] = (
    (MarkerRole.CUT_START, MarkerRole.CUT_END),
    (MarkerRole.TALK_START, MarkerRole.TALK_END),
    (MarkerRole.SEGUE_START, MarkerRole.SEGUE_END),
    (MarkerRole.HOOK_START, MarkerRole.HOOK_END),
)

# (earlier, later) constraints checked on every set: the pairs above plus
# the fade points. FadeUp is where a fade-in ends, FadeDown where a
# fade-out begins.
ORDERED_ROLES = MARKER_PAIRS + ((MarkerRole.FADE_UP, MarkerRole.FADE_DOWN),)

_PARTNERS: Dict[MarkerRole, MarkerRole] = {}
for _earlier, _later in ORDERED_ROLES:
    _PARTNERS[_earlier] = _later
    _PARTNERS[_later] = _earlier


def partner(role: MarkerRole) -> MarkerRole:
    """The role a marker is ordered against (TalkStart <-> TalkEnd, ...)."""
    return _PARTNERS[role]


class MarkerSet:
    """Positions for every marker role, UNSET (-1) until assigned."""

    def __init__(self, values: Optional[Mapping[MarkerRole, int]] = None):
        self._values: Dict[MarkerRole, int] = {role: UNSET for role in MarkerRole}
        if values:
            for role, value in values.items():
                self._values[MarkerRole(role)] = int(value)

    def __getitem__(self, role: MarkerRole) -> int:
        return self._values[role]

    def __setitem__(self, role: MarkerRole, value: int) -> None:
        self._values[role] = int(value)

    def __iter__(self) -> Iterator[MarkerRole]:
        return iter(MarkerRole)

    def __eq__(self, other) -> bool:
        if not isinstance(other, MarkerSet):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        assigned = {r.name: v for r, v in self._values.items() if v != UNSET}
        return f"MarkerSet({assigned})"

    def is_set(self, role: MarkerRole) -> bool:
        return self._values[role] != UNSET

    def clear(self, role: MarkerRole) -> None:
        self._values[role] = UNSET

    def violations(self) -> List[str]:
        """
        Describe every broken invariant.

        Returns:
            Empty list when all set roles lie inside [CutStart, CutEnd] and
            every ordered pair is in order.
        """
        problems = []
        if self.is_set(MarkerRole.CUT_START) and self.is_set(MarkerRole.CUT_END):
            low = self[MarkerRole.CUT_START]
            high = self[MarkerRole.CUT_END]
            for role in MarkerRole:
                if self.is_set(role) and not low <= self[role] <= high:
                    problems.append(f"{role.name}={self[role]} outside [{low}, {high}]")
        for earlier, later in ORDERED_ROLES:
            if self.is_set(earlier) and self.is_set(later) and self[earlier] > self[later]:
                problems.append(
                    f"{earlier.name}={self[earlier]} after {later.name}={self[later]}"
                )
        return problems

    def is_consistent(self) -> bool:
        return not self.violations()

    def to_fields(self) -> Dict[str, int]:
        """Persisted form: catalog field name -> value."""
        return {role.value: value for role, value in self._values.items()}

    @classmethod
    def from_fields(cls, data: Mapping[str, Optional[int]]) -> "MarkerSet":
        markers = cls()
        for role in MarkerRole:
            value = data.get(role.value)
            if value is not None:
                markers[role] = value
        return markers


def parse_offset(value: Offset) -> Offset:
    """
    Normalize a configured marker offset.

    Accepts an int (or integer string) of milliseconds, or a percentage
    string like "25%" / "12.5%".

    Raises:
        ValueError: for anything else, including negative percentages
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid marker offset: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if text.endswith("%"):
        percent = float(text[:-1])
        if not 0 <= percent <= 100:
            raise ValueError(f"Marker percentage out of range: {value!r}")
        return text
    return int(text)


def resolve_offset(offset: Offset, cut_start: int, cut_end: int) -> int:
    """Turn an offset into an absolute position clamped to the cut."""
    offset = parse_offset(offset)
    length = cut_end - cut_start
    if isinstance(offset, str):
        position = cut_start + int(round(length * float(offset[:-1]) / 100.0))
    elif offset < 0:
        position = cut_end + offset
    else:
        position = cut_start + offset
    return clamp(position, cut_start, cut_end)


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class MarkerDeriver:
    """
    Computes the default markers for a new cut.

    Args:
        settings: MarkerSettings (see cartingest.settings)
        segue_length: Length of a level-detected segue, in ms
    """

    def __init__(self, settings, segue_length: int = 0):
        self.settings = settings
        self.segue_length = segue_length

    def derive(self, duration_ms: int, segue_start: Optional[int] = None) -> MarkerSet:
        """
        Args:
            duration_ms: Final length of the stored cut
            segue_start: Position where the audio last drops below the
                configured segue level, if one was detected

        Returns:
            A consistent MarkerSet
        """
        duration_ms = max(0, int(duration_ms))
        markers = MarkerSet()
        cut_start, cut_end = 0, duration_ms
        markers[MarkerRole.CUT_START] = cut_start
        markers[MarkerRole.CUT_END] = cut_end

        pair_settings = (
            (self.settings.talk, MarkerRole.TALK_START, MarkerRole.TALK_END),
            (self.settings.hook, MarkerRole.HOOK_START, MarkerRole.HOOK_END),
            (self.settings.segue, MarkerRole.SEGUE_START, MarkerRole.SEGUE_END),
        )
        for pair, start_role, end_role in pair_settings:
            if not pair.enabled:
                continue
            start = resolve_offset(pair.start, cut_start, cut_end)
            end = max(start, resolve_offset(pair.end, cut_start, cut_end))
            markers[start_role] = start
            markers[end_role] = end

        if segue_start is not None:
            start = clamp(int(segue_start), cut_start, cut_end)
            markers[MarkerRole.SEGUE_START] = start
            markers[MarkerRole.SEGUE_END] = clamp(start + self.segue_length, start, cut_end)

        if self.settings.fadeup_enabled:
            markers[MarkerRole.FADE_UP] = resolve_offset(self.settings.fadeup, cut_start, cut_end)
        if self.settings.fadedown_enabled:
            markers[MarkerRole.FADE_DOWN] = resolve_offset(
                self.settings.fadedown, cut_start, cut_end
            )
            if markers.is_set(MarkerRole.FADE_UP):
                markers[MarkerRole.FADE_DOWN] = max(
                    markers[MarkerRole.FADE_DOWN], markers[MarkerRole.FADE_UP]
                )

        logger.debug(f"Derived markers for {duration_ms} ms cut: {markers!r}")
        return markers
