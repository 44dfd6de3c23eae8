from __future__ import annotations

import copy
from typing import Any, Dict, List


# Document content when empty; used to clear the form and to fill keys
# missing from an imported file (order matters, it is the export order)
EMPTY_FORM_DATA: Dict[str, Any] = {
    "experimenter_name": [],
    "lab": "",
    "institution": "",
    "experiment_description": "",
    "session_description": "",
    "session_id": "",
    "keywords": [],
    "subject": {
        "description": "",
        "genotype": "",
        "sex": "M",
        "species": "",
        "subject_id": "",
        "date_of_birth": "",
        "weight": 0,
    },
    "data_acq_device": [],
    "cameras": [],
    "tasks": [],
    "associated_files": [],
    "associated_video_files": [],
    "units": {
        "analog": "",
        "behavioral_events": "",
    },
    "times_period_multiplier": 0.0,
    "raw_data_to_volts": 0.0,
    "default_header_file_path": "",
    "behavioral_events": [],
    "device": {
        "name": [],
    },
    "electrode_groups": [],
    "ntrode_electrode_group_channel_map": [],
    "opto_excitation_source": [],
    "virus_injection": [],
    "optical_fiber": [],
    "fs_gui_yamls": [],
}

# Template row appended when a new item is added to an array section
ARRAY_DEFAULT_VALUES: Dict[str, Dict[str, Any]] = {
    "electrode_groups": {
        "id": 0,
        "location": "",
        "device_type": "",
        "description": "",
        "targeted_location": "",
        "targeted_x": "",
        "targeted_y": "",
        "targeted_z": "",
        "units": "μm",
    },
    # ntrode_id is always rewritten by the synchronization engine
    "ntrode_electrode_group_channel_map": {
        "ntrode_id": 1,
        "electrode_group_id": "",
        "bad_channels": [],
        "map": {},
    },
    "cameras": {
        "id": 0,
        "meters_per_pixel": 0,
        "manufacturer": "",
        "model": "",
        "lens": "",
        "camera_name": "",
    },
    "tasks": {
        "task_name": "",
        "task_description": "",
        "task_environment": "",
        "camera_id": [],
        "task_epochs": [],
    },
    "behavioral_events": {
        "description": "Din1",
        "name": "",
    },
}

# Top-level keys the conversion pipeline refuses to run without
REQUIRED_FIELDS: List[str] = [
    "experimenter_name",
    "lab",
    "institution",
    "experiment_description",
    "session_description",
    "session_id",
    "subject",
    "data_acq_device",
    "times_period_multiplier",
    "raw_data_to_volts",
    "electrode_groups",
    "ntrode_electrode_group_channel_map",
]

GENDER_ACRONYMS: List[str] = ["M", "F", "U", "O"]

# Mapping of document keys to semantic categories for UI grouping
FIELD_CATEGORIES: Dict[str, str] = {
    "experimenter_name": "Lab",
    "lab": "Lab",
    "institution": "Lab",
    "experiment_description": "Session",
    "session_description": "Session",
    "session_id": "Session",
    "keywords": "Session",
    "subject": "Subject",
    "data_acq_device": "Hardware",
    "device": "Hardware",
    "cameras": "Hardware",
    "electrode_groups": "Electrodes",
    "ntrode_electrode_group_channel_map": "Electrodes",
    "tasks": "Behavior",
    "behavioral_events": "Behavior",
    "associated_files": "Files",
    "associated_video_files": "Files",
    "fs_gui_yamls": "Optogenetics",
    "opto_excitation_source": "Optogenetics",
    "optical_fiber": "Optogenetics",
    "virus_injection": "Optogenetics",
}


def empty_form() -> Dict[str, Any]:
    return copy.deepcopy(EMPTY_FORM_DATA)


def array_default(key: str) -> Dict[str, Any]:
    """Return a fresh copy of the template row for array section ``key``.

    Raises ``KeyError`` for sections without a template.
    """

    return copy.deepcopy(ARRAY_DEFAULT_VALUES[key])


def new_electrode_group(electrode_groups: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Build a default electrode group whose id follows the current maximum."""
    group = array_default("electrode_groups")
    ids = [g.get("id") for g in electrode_groups if isinstance(g, dict)]
    ids = [i for i in ids if isinstance(i, int) and not isinstance(i, bool)]
    group["id"] = max(ids) + 1 if ids else 0
    return group


def get_field_category(field: str) -> str:
    """Return the semantic category for a document key.

    Falls back to heuristics based on common prefixes if the key is not in
    :data:`FIELD_CATEGORIES`.
    """

    if field in FIELD_CATEGORIES:
        return FIELD_CATEGORIES[field]
    if field.startswith("subject"):
        return "Subject"
    if field.startswith("session_"):
        return "Session"
    if field.startswith("opto") or field.startswith("optical"):
        return "Optogenetics"
    return "Other"


def get_field_descriptions() -> Dict[str, str]:
    """Return descriptions for document keys to help users understand what they mean.

    Returns:
        Dictionary mapping field names to their descriptions
    """
    return {
        "experimenter_name": "People who ran the session (Last, First).",
        "lab": "Laboratory where the experiment was conducted.",
        "institution": "Institution where the experiment was conducted.",
        "experiment_description": "Short description of the experiment.",
        "session_description": "Short description of this recording session.",
        "session_id": "Session identifier, typically the day number.",
        "subject": "Subject information (species, sex, date of birth, ...).",
        "times_period_multiplier": "Multiplier applied to the Trodes clock period.",
        "raw_data_to_volts": "Scalar converting raw samples to volts.",
        "electrode_groups": (
            "One entry per physical probe or tetrode placement. "
            "Selecting a device type regenerates that group's channel maps."
        ),
        "ntrode_electrode_group_channel_map": (
            "One entry per recording shank, mapping logical Trodes channels to "
            "hardware channels. Managed from the electrode groups; do not add "
            "rows by hand."
        ),
        "device_type": "Probe or array model; determines channel and shank counts.",
        "bad_channels": "Logical channels flagged as non-functional on this shank.",
    }
