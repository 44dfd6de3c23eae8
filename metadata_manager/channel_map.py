from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .device_types import channels_for, shank_count_for
from .schema import array_default


def generate_shank_map(channel_list: Sequence[int], shank_index: int) -> Dict[int, int]:
    """Map each logical channel of one shank to its hardware channel.

    Shank ``i`` of a device with ``N`` channels per shank occupies the hardware
    range ``[i * N, (i + 1) * N)``::

        >>> generate_shank_map([0, 1, 2, 3], 1)
        {0: 4, 1: 5, 2: 6, 3: 7}
    """

    offset = shank_index * len(channel_list)
    return {channel: channel + offset for channel in channel_list}


def build_ntrode_rows(electrode_group_id: Any, device_type: str) -> List[Dict[str, Any]]:
    """Build one default channel-map row per shank of ``device_type``.

    ``ntrode_id`` keeps the template value; the caller renumbers.
    Unknown device types have no shanks and produce an empty list.
    """

    channel_list = channels_for(device_type)
    rows: List[Dict[str, Any]] = []
    for shank_index in range(shank_count_for(device_type)):
        row = array_default("ntrode_electrode_group_channel_map")
        row["electrode_group_id"] = electrode_group_id
        row["map"] = generate_shank_map(channel_list, shank_index)
        rows.append(row)
    return rows
