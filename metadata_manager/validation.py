from __future__ import annotations

from collections import Counter
from typing import Annotated, Any, Dict, List, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, StrictInt, ValidationError

from .device_types import channels_for, shank_count_for, validate_device_type

# Two layers, both returning the same issue shape:
# - schema_validation: structural checks of the document (types, required keys)
# - rules_validation: cross-field rules the schema cannot express
# Each issue is a dict {path, code, severity, message}; path uses the
# "electrode_groups[0].id" notation so the UI can attach it to a widget.


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("cannot be empty or contain only whitespace")
    return value


NonBlankStr = Annotated[str, AfterValidator(_not_blank)]


class _Record(BaseModel):
    # Unknown keys are carried through; the pipeline reads more than we check
    model_config = ConfigDict(extra="allow")


class SubjectModel(_Record):
    description: str = ""
    genotype: str = ""
    sex: Literal["M", "F", "U", "O"]
    species: NonBlankStr
    subject_id: NonBlankStr
    date_of_birth: NonBlankStr
    weight: float


class ElectrodeGroupModel(_Record):
    id: StrictInt
    device_type: NonBlankStr
    location: str = ""
    description: str = ""


class NtrodeChannelMapModel(_Record):
    ntrode_id: StrictInt
    electrode_group_id: StrictInt
    bad_channels: List[StrictInt] = []
    map: Dict[int, StrictInt]


class MetadataDocument(_Record):
    experimenter_name: List[NonBlankStr]
    lab: NonBlankStr
    institution: NonBlankStr
    experiment_description: NonBlankStr
    session_description: NonBlankStr
    session_id: NonBlankStr
    subject: SubjectModel
    data_acq_device: List[Dict[str, Any]]
    times_period_multiplier: float
    raw_data_to_volts: float
    electrode_groups: List[ElectrodeGroupModel]
    ntrode_electrode_group_channel_map: List[NtrodeChannelMapModel]


def format_path(loc: tuple) -> str:
    """Render a pydantic error location as ``cameras[0].id`` style path."""
    path = ""
    for part in loc:
        if part == "[key]":
            continue
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _issue(path: str, code: str, message: str, severity: str = "error") -> Dict[str, str]:
    return {"path": path, "code": code, "severity": severity, "message": message}


def schema_validation(model: Any) -> List[Dict[str, str]]:
    if not isinstance(model, dict):
        return [_issue("", "type", "Document must be a mapping of field names to values")]
    try:
        MetadataDocument.model_validate(model)
    except ValidationError as exc:
        issues: List[Dict[str, str]] = []
        for err in exc.errors():
            path = format_path(err["loc"])
            code = "required" if err["type"] == "missing" else err["type"]
            message = err["msg"]
            if message.startswith("Value error, "):
                message = f"{path} {message[len('Value error, '):]}"
            elif code == "required":
                message = f"{path} is required"
            issues.append(_issue(path, code, message))
        return issues
    return []


def _has_camera_ids(items: Any) -> bool:
    return any(
        isinstance(item, dict) and isinstance(item.get("camera_id"), list) and item["camera_id"]
        for item in (items or [])
    )


def rules_validation(model: Any) -> List[Dict[str, str]]:
    """Cross-field rules not expressible in the document schema."""
    if not isinstance(model, dict):
        return []

    issues: List[Dict[str, str]] = []

    if not model.get("cameras"):
        if _has_camera_ids(model.get("tasks")):
            issues.append(_issue("tasks", "missing_camera", "Tasks have camera_ids, but no cameras are defined"))
        if _has_camera_ids(model.get("associated_video_files")):
            issues.append(_issue(
                "associated_video_files",
                "missing_camera",
                "Associated video files have camera_ids, but no cameras are defined",
            ))

    # Optogenetics is all or nothing
    opto = {
        "opto_excitation_source": bool(model.get("opto_excitation_source")),
        "optical_fiber": bool(model.get("optical_fiber")),
        "virus_injection": bool(model.get("virus_injection")),
    }
    if 0 < sum(opto.values()) < len(opto):
        listing = ", ".join(f"{k}{' ✓' if v else ' ✗'}" for k, v in opto.items())
        issues.append(_issue(
            "optogenetics",
            "partial_configuration",
            f"Partial optogenetics configuration detected. All fields required: {listing}",
        ))

    groups = [g for g in model.get("electrode_groups") or [] if isinstance(g, dict)]
    ntrodes = [n for n in model.get("ntrode_electrode_group_channel_map") or [] if isinstance(n, dict)]
    device_by_group = {g.get("id"): g.get("device_type") for g in groups}
    group_ids = set(device_by_group)

    seen_ntrode_ids: Counter = Counter(n.get("ntrode_id") for n in ntrodes)
    for ntrode_id, count in sorted(seen_ntrode_ids.items(), key=lambda kv: str(kv[0])):
        if count > 1:
            issues.append(_issue(
                "ntrode_electrode_group_channel_map",
                "duplicate_ntrode_id",
                f"ntrode_id {ntrode_id} is used by {count} channel maps",
            ))

    for i, ntrode in enumerate(ntrodes):
        path = f"ntrode_electrode_group_channel_map[{i}]"
        if ntrode.get("electrode_group_id") not in group_ids:
            issues.append(_issue(
                path,
                "unknown_electrode_group",
                f"Ntrode {ntrode.get('ntrode_id')} references electrode group "
                f"{ntrode.get('electrode_group_id')}, which does not exist",
            ))

        channel_map = ntrode.get("map")
        if not isinstance(channel_map, dict):
            continue
        # Each logical channel must land on its own hardware channel; -1 means unmapped
        counts = Counter(v for v in channel_map.values() if v != -1)
        duplicates = [str(v) for v, c in counts.items() if c > 1]
        if duplicates:
            issues.append(_issue(
                path,
                "duplicate_channels",
                f"Ntrode {ntrode.get('ntrode_id')} has duplicate channel mappings. "
                f"Physical channel(s) {', '.join(duplicates)} are mapped to multiple logical channels.",
            ))
        device_type = device_by_group.get(ntrode.get("electrode_group_id"))
        if validate_device_type(device_type):
            expected_channels = channels_for(device_type)
            if set(channel_map) != set(expected_channels):
                issues.append(_issue(
                    f"{path}.map",
                    "map_channel_mismatch",
                    f"Ntrode {ntrode.get('ntrode_id')} maps logical channels "
                    f"{sorted(channel_map, key=str)}; {device_type} shanks have channels "
                    f"0-{len(expected_channels) - 1}",
                ))
        stray = [c for c in ntrode.get("bad_channels") or [] if c not in channel_map]
        if stray:
            issues.append(_issue(
                f"{path}.bad_channels",
                "unknown_bad_channel",
                f"Bad channel(s) {', '.join(str(c) for c in stray)} are not in the channel map",
                severity="warning",
            ))

    for i, group in enumerate(groups):
        device_type = group.get("device_type")
        if not validate_device_type(device_type):
            continue
        expected = shank_count_for(device_type)
        actual = sum(1 for n in ntrodes if n.get("electrode_group_id") == group.get("id"))
        if actual != expected:
            issues.append(_issue(
                f"electrode_groups[{i}]",
                "shank_count_mismatch",
                f"Electrode group {group.get('id')} ({device_type}) has {actual} channel map(s); "
                f"expected {expected}. Re-select the device type to regenerate them.",
            ))

    return issues


def validate(model: Any) -> List[Dict[str, str]]:
    """Run schema and rule validation; issues sorted by path, then code."""
    issues = schema_validation(model) + rules_validation(model)
    return sorted(issues, key=lambda i: (i["path"], i["code"]))


def validate_field(model: Any, field_path: str) -> List[Dict[str, str]]:
    """Return only the issues for ``field_path`` and its children."""
    return [
        i for i in validate(model)
        if i["path"] == field_path
        or i["path"].startswith(field_path + ".")
        or i["path"].startswith(field_path + "[")
    ]


def summarize_issues(issues: List[Dict[str, str]]) -> Dict[str, Any]:
    """Condense an issue list for display.

    Returns a dict with:
    - ok: bool (no errors; warnings allowed)
    - error_count / warning_count: int
    - by_section: Dict[top-level key, count]
    - summary: str short description
    """
    by_severity = Counter(i["severity"] for i in issues)
    by_section = Counter(top_level_field(i["path"]) for i in issues)
    ok = by_severity.get("error", 0) == 0
    return {
        "ok": ok,
        "error_count": by_severity.get("error", 0),
        "warning_count": by_severity.get("warning", 0),
        "by_section": dict(by_section),
        "summary": "Document is ready to export" if ok else "Fix the errors below before exporting",
    }


def top_level_field(path: str) -> str:
    """``cameras[0].id`` -> ``cameras``."""
    return path.split("[")[0].split(".")[0]
