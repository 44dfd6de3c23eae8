import copy

import pytest

from metadata_manager.schema import empty_form
from metadata_manager.sync import FormState


def make_group(group_id, device_type="", location="CA1"):
    return {
        "id": group_id,
        "location": location,
        "device_type": device_type,
        "description": "",
        "targeted_location": location,
        "targeted_x": "1.0",
        "targeted_y": "2.0",
        "targeted_z": "3.0",
        "units": "mm",
    }


@pytest.fixture()
def empty_state():
    return FormState()


@pytest.fixture()
def valid_form():
    """A complete document with one tetrode group that passes validation."""
    form = empty_form()
    form.update({
        "experimenter_name": ["Guidera, Jennifer"],
        "lab": "Loren Frank Lab",
        "institution": "University of California, San Francisco",
        "experiment_description": "Spatial alternation",
        "session_description": "W-track run sessions",
        "session_id": "day01",
        "EXPERIMENT_DATE_in_format_mmddYYYY": "06222023",
        "times_period_multiplier": 1.0,
        "raw_data_to_volts": 0.195,
        "data_acq_device": [{"name": "SpikeGadgets", "system": "SpikeGadgets"}],
    })
    form["subject"] = {
        "description": "Long-Evans Rat",
        "genotype": "Wild Type",
        "sex": "M",
        "species": "Rattus norvegicus",
        "subject_id": "Rat01",
        "date_of_birth": "2023-01-01T00:00:00.000Z",
        "weight": 450,
    }
    form["electrode_groups"] = [make_group(0, "tetrode_12.5")]
    form["ntrode_electrode_group_channel_map"] = [{
        "ntrode_id": 1,
        "electrode_group_id": 0,
        "bad_channels": [],
        "map": {0: 0, 1: 1, 2: 2, 3: 3},
    }]
    return copy.deepcopy(form)


@pytest.fixture()
def group():
    """Factory for electrode group records."""
    return make_group
