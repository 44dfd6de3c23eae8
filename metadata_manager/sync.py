"""Electrode group <-> ntrode channel map synchronization.

The ``ntrode_electrode_group_channel_map`` array is derived from
``electrode_groups``: every group with a recognized ``device_type`` owns one
channel-map row per shank. The functions here are the only code allowed to
create, replace or delete those rows.

Each operation takes a :class:`FormState` snapshot and returns an outcome.
The incoming snapshot is never mutated; a new one is built from a deep copy,
so anything still holding the old snapshot keeps seeing consistent data.
Guard failures do not raise: they come back as :class:`Rejected` carrying
the untouched input snapshot.

Ids are handled differently per operation:

- selecting a device type renumbers ``ntrode_id`` across the whole
  collection (1..N in array order);
- removing a group deletes its rows but leaves the other ids alone, so
  gaps may appear;
- duplicating a group appends its copied rows after the current maximum
  ``ntrode_id`` instead of renumbering.
"""
from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .channel_map import build_ntrode_rows
from .device_types import shank_count_for, validate_device_type

logger = logging.getLogger(__name__)

GROUPS_KEY = "electrode_groups"
MAPS_KEY = "ntrode_electrode_group_channel_map"

# Sentinel stored in a map for a logical channel with no hardware channel
UNMAPPED_CHANNEL = -1

# Default for remove_electrode_group's expected_id (group ids may be None)
_ANY_ID = object()


@dataclass(frozen=True)
class FormState:
    """The pair of collections the engine reads and writes."""

    electrode_groups: List[Dict[str, Any]] = field(default_factory=list)
    ntrode_electrode_group_channel_map: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_form(cls, form: Optional[Mapping[str, Any]]) -> "FormState":
        form = form or {}
        return cls(
            electrode_groups=list(form.get(GROUPS_KEY) or []),
            ntrode_electrode_group_channel_map=list(form.get(MAPS_KEY) or []),
        )

    def merge_into(self, form: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Return a copy of ``form`` with both arrays replaced by this snapshot."""
        merged = dict(form or {})
        merged[GROUPS_KEY] = copy.deepcopy(self.electrode_groups)
        merged[MAPS_KEY] = copy.deepcopy(self.ntrode_electrode_group_channel_map)
        return merged

    def draft(self) -> "_Draft":
        return _Draft(
            copy.deepcopy(self.electrode_groups),
            copy.deepcopy(self.ntrode_electrode_group_channel_map),
        )


@dataclass
class _Draft:
    groups: List[Dict[str, Any]]
    maps: List[Dict[str, Any]]

    def freeze(self) -> FormState:
        return FormState(self.groups, self.maps)


@dataclass(frozen=True)
class Applied:
    state: FormState

    @property
    def applied(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    reason: str
    state: FormState

    @property
    def applied(self) -> bool:
        return False


Outcome = Union[Applied, Rejected]


def _reject(state: FormState, reason: str) -> Rejected:
    logger.debug("Rejected: %s", reason)
    return Rejected(reason, state)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _max_int(values: Iterable[Any], default: int) -> int:
    ints = [v for v in values if _is_int(v)]
    return max(ints) if ints else default


def renumber_ntrodes(rows: List[Dict[str, Any]]) -> None:
    """Relabel ``ntrode_id`` as ``position + 1`` in place."""
    for position, row in enumerate(rows):
        row["ntrode_id"] = position + 1


def ntrodes_for_group(rows: Sequence[Mapping[str, Any]], electrode_group_id: Any) -> List[Mapping[str, Any]]:
    return [r for r in rows if r.get("electrode_group_id") == electrode_group_id]


# ---- Synchronization operations ----

def select_device_type(state: FormState, group_index: int, device_type: Optional[str]) -> Outcome:
    """Set a group's device type and regenerate its channel maps.

    The group's existing rows are replaced (not merged) by one fresh row per
    shank, appended after the rows of the other groups, and every row in the
    collection is then renumbered from 1. An empty or unknown device type has
    no shanks, which leaves the group with no rows at all.
    """

    if not _is_int(group_index) or not 0 <= group_index < len(state.electrode_groups):
        return _reject(state, f"no electrode group at index {group_index}")

    draft = state.draft()
    group = draft.groups[group_index]
    if not isinstance(group, dict):
        return _reject(state, f"electrode group at index {group_index} is not a record")

    device_type = device_type or ""
    group["device_type"] = device_type
    electrode_group_id = group.get("id")

    new_rows = build_ntrode_rows(electrode_group_id, device_type)
    draft.maps = [r for r in draft.maps if r.get("electrode_group_id") != electrode_group_id]
    draft.maps.extend(new_rows)
    renumber_ntrodes(draft.maps)

    if device_type and not validate_device_type(device_type):
        logger.info("Unknown device type %r for electrode group %s; channel maps cleared", device_type, electrode_group_id)
    logger.debug(
        "Device type %r selected for electrode group %s: %d ntrode(s), %d total",
        device_type, electrode_group_id, len(new_rows), len(draft.maps),
    )
    return Applied(draft.freeze())


def removal_prompt(index: int, key: str = GROUPS_KEY) -> str:
    return f"Remove index {index} from {key}?"


def remove_electrode_group(
    state: FormState,
    index: int,
    confirm: Callable[[str], bool],
    key: str = GROUPS_KEY,
    expected_id: Any = _ANY_ID,
) -> Outcome:
    """Remove a group and every channel-map row that references it.

    ``confirm`` is asked first; a declined confirmation leaves everything as
    it was. Remaining ``ntrode_id`` values are not renumbered.

    When the answer was collected against an earlier snapshot, pass the id
    the prompt was shown for as ``expected_id``; the removal is rejected if
    ``index`` now holds a different group.
    """

    if not confirm(removal_prompt(index, key)):
        return _reject(state, "removal declined")

    if not state.electrode_groups:
        return _reject(state, "no electrode groups to remove")
    if not _is_int(index) or not 0 <= index < len(state.electrode_groups):
        return _reject(state, f"no electrode group at index {index}")
    if expected_id is not _ANY_ID:
        current = state.electrode_groups[index]
        current_id = current.get("id") if isinstance(current, Mapping) else None
        if current_id != expected_id:
            return _reject(
                state, f"electrode group at index {index} is now {current_id!r}, not {expected_id!r}"
            )

    draft = state.draft()
    removed = draft.groups.pop(index)
    removed_id = removed.get("id") if isinstance(removed, dict) else None
    before = len(draft.maps)
    draft.maps = [r for r in draft.maps if r.get("electrode_group_id") != removed_id]

    logger.debug("Removed electrode group %s and %d ntrode(s)", removed_id, before - len(draft.maps))
    return Applied(draft.freeze())


def duplicate_electrode_group(state: FormState, index: int) -> Outcome:
    """Clone a group and its channel-map rows.

    The clone gets ``max(group ids) + 1`` and is inserted right after the
    original. Copied rows point at the clone and take ``ntrode_id`` values
    counting up from the current maximum; existing rows are not touched.
    """

    if not state.electrode_groups:
        return _reject(state, "no electrode groups to duplicate")
    if not _is_int(index) or not 0 <= index < len(state.electrode_groups):
        return _reject(state, f"no electrode group at index {index}")
    original = state.electrode_groups[index]
    if not isinstance(original, Mapping):
        return _reject(state, f"electrode group at index {index} is not a record")

    draft = state.draft()
    original_id = original.get("id")
    clone = copy.deepcopy(dict(original))
    clone["id"] = _max_int((g.get("id") for g in draft.groups if isinstance(g, dict)), -1) + 1

    next_ntrode_id = _max_int((r.get("ntrode_id") for r in draft.maps), 0)
    copies = copy.deepcopy([r for r in draft.maps if r.get("electrode_group_id") == original_id])
    for row in copies:
        next_ntrode_id += 1
        row["electrode_group_id"] = clone["id"]
        row["ntrode_id"] = next_ntrode_id
    draft.maps.extend(copies)

    position = next(
        (i for i, g in enumerate(draft.groups) if isinstance(g, dict) and g.get("id") == original_id),
        index,
    )
    draft.groups.insert(position + 1, clone)

    logger.debug("Duplicated electrode group %s as %s with %d ntrode(s)", original_id, clone["id"], len(copies))
    return Applied(draft.freeze())


# ---- Channel map edits (content only, rows are never added or removed) ----

def _coerce_channel(value: Any, empty_option: Optional[str] = None) -> Optional[int]:
    if value is None:
        return UNMAPPED_CHANNEL
    if isinstance(value, str):
        value = value.strip()
        if value in ("", "-1") or (empty_option is not None and value == empty_option.strip()):
            return UNMAPPED_CHANNEL
        try:
            return int(value)
        except ValueError:
            return None
    if _is_int(value):
        return value
    return None


def _target_row(draft: _Draft, electrode_group_id: Any, shank_number: int) -> Optional[Dict[str, Any]]:
    rows = [r for r in draft.maps if r.get("electrode_group_id") == electrode_group_id]
    if not _is_int(shank_number) or not 0 <= shank_number < len(rows):
        return None
    return rows[shank_number]


def set_channel_mapping(
    state: FormState,
    electrode_group_id: Any,
    shank_number: int,
    channel: int,
    value: Any,
    empty_option: Optional[str] = None,
) -> Outcome:
    """Point logical ``channel`` of one shank at hardware channel ``value``.

    Blank input (or the UI's empty option) stores ``-1``, meaning unmapped.
    """

    hardware = _coerce_channel(value, empty_option)
    if hardware is None:
        return _reject(state, f"hardware channel {value!r} is not an integer")

    draft = state.draft()
    row = _target_row(draft, electrode_group_id, shank_number)
    if row is None:
        return _reject(state, f"electrode group {electrode_group_id} has no shank {shank_number}")

    channel_map = row.get("map") or {}
    if channel not in channel_map:
        return _reject(state, f"channel {channel!r} is not on shank {shank_number} of electrode group {electrode_group_id}")

    channel_map[channel] = hardware
    row["map"] = channel_map
    return Applied(draft.freeze())


def set_bad_channels(
    state: FormState,
    electrode_group_id: Any,
    shank_number: int,
    bad_channels: Iterable[Any],
) -> Outcome:
    draft = state.draft()
    row = _target_row(draft, electrode_group_id, shank_number)
    if row is None:
        return _reject(state, f"electrode group {electrode_group_id} has no shank {shank_number}")

    try:
        channels = sorted({int(c) for c in bad_channels})
    except (TypeError, ValueError):
        return _reject(state, f"bad channels {bad_channels!r} are not integers")
    unknown = [c for c in channels if c not in row.get("map", {})]
    if unknown:
        return _reject(state, f"channels {unknown} are not on this shank")

    row["bad_channels"] = channels
    return Applied(draft.freeze())


def apply_channel_map_table(state: FormState, rows: Sequence[Mapping[str, Any]]) -> Outcome:
    """Copy ``map`` values and ``bad_channels`` from imported rows onto existing ones.

    Rows are matched on (``electrode_group_id``, ``ntrode_id``). Only logical
    channels the target row already has are updated; channels missing from
    the import keep their current value. Imported rows without a match, or
    naming a channel or bad channel the shank does not have, are skipped.
    """

    draft = state.draft()
    index: Dict[Tuple[Any, Any], Dict[str, Any]] = {
        (r.get("electrode_group_id"), r.get("ntrode_id")): r for r in draft.maps
    }
    matched = 0
    for imported in rows:
        key = (imported.get("electrode_group_id"), imported.get("ntrode_id"))
        target = index.get(key)
        if target is None:
            logger.warning("No channel map for electrode group %s / ntrode %s; row skipped", *key)
            continue
        channel_map = target.get("map") or {}
        imported_map = imported.get("map") or {}
        bad_channels = list(imported.get("bad_channels") or [])
        foreign = [c for c in list(imported_map) + bad_channels if c not in channel_map]
        if foreign:
            logger.warning(
                "Electrode group %s / ntrode %s has no channel(s) %s; row skipped", key[0], key[1], foreign
            )
            continue
        channel_map.update(imported_map)
        target["map"] = channel_map
        target["bad_channels"] = bad_channels
        matched += 1

    if not matched:
        return _reject(state, "no imported row matched an existing channel map")
    logger.info("Applied %d of %d imported channel map row(s)", matched, len(rows))
    return Applied(draft.freeze())


# ---- Invariant helpers ----

def ntrode_ids_sequential(rows: Sequence[Mapping[str, Any]]) -> bool:
    return [r.get("ntrode_id") for r in rows] == list(range(1, len(rows) + 1))


def shank_count_mismatches(state: FormState) -> List[Tuple[Any, int, int]]:
    """Return ``(group id, expected rows, actual rows)`` for inconsistent groups.

    Groups with an unset or unknown device type are expected to own no rows.
    """

    out: List[Tuple[Any, int, int]] = []
    for group in state.electrode_groups:
        if not isinstance(group, Mapping):
            continue
        expected = shank_count_for(group.get("device_type"))
        actual = len(ntrodes_for_group(state.ntrode_electrode_group_channel_map, group.get("id")))
        if actual != expected:
            out.append((group.get("id"), expected, actual))
    return out


class ElectrodeGroupSynchronizer:
    """Stateful front end over the synchronization functions.

    Holds the current snapshot, asks ``confirm`` before removals and hands
    every applied snapshot to ``commit``.
    """

    def __init__(
        self,
        state: FormState,
        commit: Callable[[FormState], None],
        confirm: Callable[[str], bool],
    ):
        self.state = state
        self._commit = commit
        self._confirm = confirm

    def _publish(self, outcome: Outcome) -> Outcome:
        if outcome.applied:
            self.state = outcome.state
            self._commit(outcome.state)
        return outcome

    def on_device_type_selected(self, group_index: int, device_type: Optional[str]) -> Outcome:
        return self._publish(select_device_type(self.state, group_index, device_type))

    def remove_electrode_group(self, index: int, key: str = GROUPS_KEY, expected_id: Any = _ANY_ID) -> Outcome:
        return self._publish(remove_electrode_group(self.state, index, self._confirm, key, expected_id))

    def duplicate_electrode_group(self, index: int) -> Outcome:
        return self._publish(duplicate_electrode_group(self.state, index))

    def on_map_input(self, electrode_group_id: Any, shank_number: int, channel: int, value: Any,
                     empty_option: Optional[str] = None) -> Outcome:
        return self._publish(
            set_channel_mapping(self.state, electrode_group_id, shank_number, channel, value, empty_option)
        )

    def on_bad_channels(self, electrode_group_id: Any, shank_number: int, bad_channels: Iterable[Any]) -> Outcome:
        return self._publish(set_bad_channels(self.state, electrode_group_id, shank_number, bad_channels))

    def import_channel_map_table(self, rows: Sequence[Mapping[str, Any]]) -> Outcome:
        return self._publish(apply_channel_map_table(self.state, rows))
