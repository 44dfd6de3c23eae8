from __future__ import annotations

from typing import Dict, List, Optional, Tuple


# Channels on the generic fallback used for unrecognized device types
FALLBACK_CHANNELS: List[int] = [0, 1, 2, 3]

# device_type -> (channels per shank, shank count)
DEVICE_TYPES: Dict[str, Tuple[int, int]] = {
    "tetrode_12.5": (4, 1),
    "A1x32-6mm-50-177-H32_21mm": (32, 1),
    "128c-4s8mm6cm-20um-40um-sl": (32, 4),
    "128c-4s6mm6cm-15um-26um-sl": (32, 4),
    "128c-4s8mm6cm-15um-26um-sl": (32, 4),
    "128c-4s6mm6cm-20um-40um-sl": (32, 4),
    "128c-4s4mm6cm-20um-40um-sl": (32, 4),
    "128c-4s4mm6cm-15um-26um-sl": (32, 4),
    "32c-2s8mm6cm-20um-40um-dl": (16, 2),
    "64c-4s6mm6cm-20um-40um-dl": (16, 4),
    "64c-3s6mm6cm-20um-40um-sl": (20, 3),
    "NET-EBL-128ch-single-shank": (128, 1),
}


def channels_for(device_type: Optional[str]) -> List[int]:
    """Return the logical channel indices of one shank of ``device_type``.

    Unknown identifiers (including ``""`` and ``None``) give the generic
    four-channel fallback. A fresh list is returned on every call so callers
    may mutate it.
    """

    entry = DEVICE_TYPES.get(device_type) if isinstance(device_type, str) else None
    if entry is None:
        return list(FALLBACK_CHANNELS)
    return list(range(entry[0]))


def shank_count_for(device_type: Optional[str]) -> int:
    """Return the number of shanks of ``device_type``; 0 when unknown.

    A zero shank count means no channel-map rows are generated for the group,
    which is how an unset device type clears its maps.
    """

    entry = DEVICE_TYPES.get(device_type) if isinstance(device_type, str) else None
    return entry[1] if entry else 0


def get_device_types() -> List[str]:
    return list(DEVICE_TYPES.keys())


def get_channel_count(device_type: Optional[str]) -> int:
    """Total channel count across all shanks (0 when unknown)."""
    entry = DEVICE_TYPES.get(device_type) if isinstance(device_type, str) else None
    if entry is None:
        return 0
    per_shank, shanks = entry
    return per_shank * shanks


def validate_device_type(device_type: object) -> bool:
    return isinstance(device_type, str) and device_type in DEVICE_TYPES
