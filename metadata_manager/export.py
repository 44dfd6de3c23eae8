from __future__ import annotations

import csv
import io
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

BASE_COLUMNS: List[str] = [
    "electrode_group_id",
    "device_type",
    "location",
    "ntrode_id",
    "bad_channels",
]
REQUIRED_IMPORT_COLUMNS: List[str] = ["electrode_group_id", "ntrode_id", "bad_channels"]


class ChannelMapImportError(ValueError):
    pass


def channel_map_columns(channel_maps: List[Dict[str, Any]]) -> List[str]:
    width = max((len(m.get("map") or {}) for m in channel_maps), default=0)
    return BASE_COLUMNS + [f"channel_{i}" for i in range(width)]


def channel_map_rows(
    channel_maps: List[Dict[str, Any]], electrode_groups: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Flatten channel maps into one spreadsheet row per ntrode.

    Channel columns are positional (``channel_0`` is the first logical channel
    of the shank); shorter maps leave trailing cells blank.
    """
    groups = {g.get("id"): g for g in electrode_groups}
    rows: List[Dict[str, Any]] = []
    for ntrode in channel_maps:
        group = groups.get(ntrode.get("electrode_group_id"), {})
        row: Dict[str, Any] = {
            "electrode_group_id": ntrode.get("electrode_group_id"),
            "device_type": group.get("device_type", ""),
            "location": group.get("location", ""),
            "ntrode_id": ntrode.get("ntrode_id"),
            "bad_channels": ",".join(str(c) for c in ntrode.get("bad_channels") or []),
        }
        for i, channel in enumerate(sorted((ntrode.get("map") or {}).keys())):
            row[f"channel_{i}"] = ntrode["map"][channel]
        rows.append(row)
    return rows


def build_channel_map_csv_bytes(
    channel_maps: List[Dict[str, Any]], electrode_groups: List[Dict[str, Any]]
) -> io.BytesIO:
    columns = channel_map_columns(channel_maps)
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(columns)
    for r in channel_map_rows(channel_maps, electrode_groups):
        writer.writerow([r.get(c, "") for c in columns])
    raw = buf.getvalue().encode("utf-8")
    return io.BytesIO(raw)


def build_channel_map_workbook_bytes(
    channel_maps: List[Dict[str, Any]], electrode_groups: List[Dict[str, Any]]
) -> io.BytesIO:
    """Build an XLSX workbook of the channel maps in memory with pandas/openpyxl.

    Raises if no supported writer is available so caller can fall back to CSV.
    """
    columns = channel_map_columns(channel_maps)
    try:
        import pandas as pd

        df = pd.DataFrame(channel_map_rows(channel_maps, electrode_groups))
        for c in columns:
            if c not in df.columns:
                df[c] = None
        df = df[columns]
        bio = io.BytesIO()
        df.to_excel(bio, index=False, engine="openpyxl", sheet_name="Channel maps")
    except ImportError as e:
        raise RuntimeError("No Excel writer available (pandas/openpyxl missing)") from e

    # Header styling and frozen header row
    from openpyxl import load_workbook
    from openpyxl.styles import Font, PatternFill

    bio.seek(0)
    wb = load_workbook(bio)
    ws = wb.active
    ws.freeze_panes = "A2"
    header_fill = PatternFill(fill_type="solid", fgColor="FFFFFF00")  # yellow
    header_font = Font(bold=True)
    for cell in ws[1]:
        cell.fill = header_fill
        cell.font = header_font
    out = io.BytesIO()
    wb.save(out)
    out.seek(0)
    return out


def _parse_int(value: Optional[str], what: str, line: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ChannelMapImportError(f"Invalid numeric value for {what} at row {line}: {value!r}") from None


def import_channel_maps_from_csv(text: str) -> List[Dict[str, Any]]:
    """Parse a channel-map CSV back into ``{electrode_group_id, ntrode_id, bad_channels, map}`` rows.

    Map keys are the positional indices taken from the ``channel_<i>`` headers.
    Blank channel cells are skipped so shanks narrower than the widest one
    round-trip.
    """
    reader = csv.DictReader(io.StringIO(text.strip()))
    headers = reader.fieldnames or []
    missing = [c for c in REQUIRED_IMPORT_COLUMNS if c not in headers]
    if missing:
        raise ChannelMapImportError(f"Missing required columns: {', '.join(missing)}")
    channel_columns = [h for h in headers if h.startswith("channel_")]
    if not channel_columns:
        raise ChannelMapImportError("Missing required columns: no channel_<n> columns found")

    maps: List[Dict[str, Any]] = []
    # header is line 1
    for line, record in enumerate(reader, start=2):
        if not any((v or "").strip() for v in record.values() if isinstance(v, str)):
            continue
        bad_channels = [
            _parse_int(v, "bad_channels", line)
            for v in (record.get("bad_channels") or "").split(",")
            if v.strip()
        ]
        channel_map: Dict[int, int] = {}
        for column in channel_columns:
            cell = record.get(column)
            if cell is None or not cell.strip():
                continue
            index = _parse_int(column.split("_", 1)[1], "column header", 1)
            channel_map[index] = _parse_int(cell, column, line)
        maps.append({
            "electrode_group_id": _parse_int(record.get("electrode_group_id"), "electrode_group_id", line),
            "ntrode_id": _parse_int(record.get("ntrode_id"), "ntrode_id", line),
            "bad_channels": bad_channels,
            "map": channel_map,
        })

    if not maps:
        raise ChannelMapImportError("CSV must contain header and at least one data row")
    logger.debug("Parsed %d channel map row(s) from CSV", len(maps))
    return maps
