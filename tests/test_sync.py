import copy

import pytest

from metadata_manager.device_types import channels_for, shank_count_for
from metadata_manager.export import build_channel_map_csv_bytes, import_channel_maps_from_csv
from metadata_manager.sync import (
    Applied,
    ElectrodeGroupSynchronizer,
    FormState,
    Rejected,
    apply_channel_map_table,
    duplicate_electrode_group,
    ntrode_ids_sequential,
    ntrodes_for_group,
    remove_electrode_group,
    select_device_type,
    set_bad_channels,
    set_channel_mapping,
    shank_count_mismatches,
)

TETRODE = "tetrode_12.5"
TWO_SHANK = "32c-2s8mm6cm-20um-40um-dl"
FOUR_SHANK = "128c-4s8mm6cm-20um-40um-sl"


def always(answer):
    prompts = []

    def confirm(message):
        prompts.append(message)
        return answer

    confirm.prompts = prompts
    return confirm


def build(group, *device_types):
    """State with one group per device type, ids 0..n-1, maps generated in order."""
    state = FormState([group(i) for i in range(len(device_types))], [])
    for i, device_type in enumerate(device_types):
        state = select_device_type(state, i, device_type).state
    return state


# ---- select_device_type ----

def test_select_tetrode_creates_single_ntrode(group):
    state = FormState([group(0)], [])
    outcome = select_device_type(state, 0, TETRODE)
    assert isinstance(outcome, Applied)
    assert outcome.state.electrode_groups[0]["device_type"] == TETRODE
    assert outcome.state.ntrode_electrode_group_channel_map == [
        {"ntrode_id": 1, "electrode_group_id": 0, "bad_channels": [], "map": {0: 0, 1: 1, 2: 2, 3: 3}}
    ]


def test_select_two_shank_device_offsets_second_shank(group):
    state = select_device_type(FormState([group(0)], []), 0, TWO_SHANK).state
    rows = state.ntrode_electrode_group_channel_map
    assert [r["ntrode_id"] for r in rows] == [1, 2]
    assert sorted(rows[0]["map"].values()) == list(range(0, 16))
    assert sorted(rows[1]["map"].values()) == list(range(16, 32))


def test_ids_are_global_across_groups(group):
    state = build(group, TETRODE, TWO_SHANK)
    rows = state.ntrode_electrode_group_channel_map
    assert [r["ntrode_id"] for r in rows] == [1, 2, 3]
    assert [r["electrode_group_id"] for r in rows] == [0, 1, 1]


def test_reselect_replaces_rows_and_renumbers_other_groups(group):
    state = build(group, TWO_SHANK, TETRODE)
    state = select_device_type(state, 0, TETRODE).state
    rows = state.ntrode_electrode_group_channel_map
    # group 1's row keeps its place, group 0's new row is appended
    assert [r["electrode_group_id"] for r in rows] == [1, 0]
    assert [r["ntrode_id"] for r in rows] == [1, 2]
    assert ntrode_ids_sequential(rows)


def test_select_does_not_mutate_input_snapshot(group):
    state = build(group, TETRODE)
    before = copy.deepcopy(state)
    select_device_type(state, 0, FOUR_SHANK)
    assert state == before


@pytest.mark.parametrize("device_type", ["", None, "unknown-probe"])
def test_unset_or_unknown_device_type_clears_rows(group, device_type):
    state = build(group, TETRODE, TWO_SHANK)
    outcome = select_device_type(state, 1, device_type)
    assert outcome.applied
    rows = outcome.state.ntrode_electrode_group_channel_map
    assert ntrodes_for_group(rows, 1) == []
    assert [r["ntrode_id"] for r in rows] == [1]
    assert outcome.state.electrode_groups[1]["device_type"] == (device_type or "")


def test_select_is_idempotent_in_content(group):
    once = select_device_type(FormState([group(0)], []), 0, FOUR_SHANK).state
    twice = select_device_type(once, 0, FOUR_SHANK).state
    assert once.ntrode_electrode_group_channel_map == twice.ntrode_electrode_group_channel_map


def test_select_keeps_bad_channels_of_other_groups(group):
    state = build(group, TETRODE, TETRODE)
    state = set_bad_channels(state, 0, 0, [2]).state
    state = select_device_type(state, 1, TWO_SHANK).state
    assert ntrodes_for_group(state.ntrode_electrode_group_channel_map, 0)[0]["bad_channels"] == [2]


@pytest.mark.parametrize("index", [-1, 1, 5, None])
def test_select_out_of_range_is_rejected(group, index):
    state = FormState([group(0)], [])
    outcome = select_device_type(state, index, TETRODE)
    assert isinstance(outcome, Rejected)
    assert outcome.state is state


def test_select_on_empty_collection_is_rejected(empty_state):
    assert not select_device_type(empty_state, 0, TETRODE).applied


def test_shank_counts_consistent_after_every_selection(group):
    state = build(group, TETRODE, FOUR_SHANK, "64c-3s6mm6cm-20um-40um-sl", "")
    assert shank_count_mismatches(state) == []
    for g in state.electrode_groups:
        rows = ntrodes_for_group(state.ntrode_electrode_group_channel_map, g["id"])
        assert len(rows) == shank_count_for(g["device_type"])
        n = len(channels_for(g["device_type"]))
        for shank, row in enumerate(rows):
            assert all(shank * n <= v < (shank + 1) * n for v in row["map"].values())


# ---- remove_electrode_group ----

def test_remove_declined_leaves_state_unchanged(group):
    state = build(group, TETRODE, TWO_SHANK)
    confirm = always(False)
    outcome = remove_electrode_group(state, 1, confirm)
    assert isinstance(outcome, Rejected)
    assert outcome.state is state
    assert confirm.prompts == ["Remove index 1 from electrode_groups?"]


def test_remove_confirmed_drops_group_and_its_rows(group):
    state = build(group, TETRODE, TWO_SHANK, TETRODE)
    outcome = remove_electrode_group(state, 1, always(True))
    assert outcome.applied
    new = outcome.state
    assert [g["id"] for g in new.electrode_groups] == [0, 2]
    assert ntrodes_for_group(new.ntrode_electrode_group_channel_map, 1) == []
    # surviving rows keep their ids: removal does not renumber
    assert [r["ntrode_id"] for r in new.ntrode_electrode_group_channel_map] == [1, 4]


def test_removal_leaves_gap_but_selection_closes_it(group):
    state = build(group, TETRODE, TWO_SHANK, TETRODE)
    state = remove_electrode_group(state, 1, always(True)).state
    assert not ntrode_ids_sequential(state.ntrode_electrode_group_channel_map)
    state = select_device_type(state, 0, TETRODE).state
    assert ntrode_ids_sequential(state.ntrode_electrode_group_channel_map)


def test_remove_uses_collection_name_in_prompt(group):
    confirm = always(False)
    remove_electrode_group(build(group, TETRODE), 0, confirm, key="electrode_groups")
    assert confirm.prompts == ["Remove index 0 from electrode_groups?"]


def test_remove_guards(group, empty_state):
    assert not remove_electrode_group(empty_state, 0, always(True)).applied
    state = build(group, TETRODE)
    outcome = remove_electrode_group(state, 3, always(True))
    assert not outcome.applied
    assert outcome.state is state


def test_remove_does_not_mutate_input(group):
    state = build(group, TETRODE, TWO_SHANK)
    before = copy.deepcopy(state)
    remove_electrode_group(state, 0, always(True))
    assert state == before


# ---- duplicate_electrode_group ----

def test_duplicate_assigns_next_ids_and_inserts_after_original(group):
    groups = [group(0, TETRODE), group(5), group(3)]
    maps = [{"ntrode_id": 1, "electrode_group_id": 0, "bad_channels": [], "map": {0: 0, 1: 1, 2: 2, 3: 3}}]
    outcome = duplicate_electrode_group(FormState(groups, maps), 0)
    assert outcome.applied
    new = outcome.state
    assert [g["id"] for g in new.electrode_groups] == [0, 6, 5, 3]
    clone_row = new.ntrode_electrode_group_channel_map[-1]
    assert clone_row["electrode_group_id"] == 6
    assert clone_row["ntrode_id"] == 2
    assert clone_row["map"] == maps[0]["map"]


def test_duplicate_copies_opaque_fields(group):
    state = build(group, TETRODE)
    new = duplicate_electrode_group(state, 0).state
    original, clone = new.electrode_groups
    assert {k: v for k, v in clone.items() if k != "id"} == {k: v for k, v in original.items() if k != "id"}


def test_duplicate_multi_shank_appends_past_max(group):
    state = build(group, TWO_SHANK, TETRODE)
    new = duplicate_electrode_group(state, 0).state
    rows = new.ntrode_electrode_group_channel_map
    assert [(r["electrode_group_id"], r["ntrode_id"]) for r in rows] == [(0, 1), (0, 2), (1, 3), (2, 4), (2, 5)]
    assert [g["id"] for g in new.electrode_groups] == [0, 2, 1]


def test_duplicate_never_touches_original_rows(group):
    state = build(group, TWO_SHANK, TETRODE)
    original_rows = copy.deepcopy(state.ntrode_electrode_group_channel_map)
    new = duplicate_electrode_group(state, 0).state
    assert new.ntrode_electrode_group_channel_map[: len(original_rows)] == original_rows
    assert new.electrode_groups[0]["id"] == 0


def test_duplicate_copies_are_independent(group):
    state = build(group, TETRODE)
    new = duplicate_electrode_group(state, 0).state
    new.ntrode_electrode_group_channel_map[1]["map"][0] = 99
    assert new.ntrode_electrode_group_channel_map[0]["map"][0] == 0
    assert state.ntrode_electrode_group_channel_map[0]["map"][0] == 0


def test_duplicate_group_without_maps(group):
    new = duplicate_electrode_group(FormState([group(0)], []), 0).state
    assert [g["id"] for g in new.electrode_groups] == [0, 1]
    assert new.ntrode_electrode_group_channel_map == []


def test_duplicate_guards(group, empty_state):
    assert not duplicate_electrode_group(empty_state, 0).applied
    state = FormState([group(0)], [])
    assert duplicate_electrode_group(state, 4).state is state
    broken = FormState([None], [])
    assert not duplicate_electrode_group(broken, 0).applied


# ---- channel map edits ----

def test_set_channel_mapping_edits_one_shank(group):
    state = build(group, TWO_SHANK)
    outcome = set_channel_mapping(state, 0, 1, 3, "7")
    assert outcome.applied
    rows = outcome.state.ntrode_electrode_group_channel_map
    assert rows[1]["map"][3] == 7
    assert rows[0]["map"][3] == 3
    assert state.ntrode_electrode_group_channel_map[1]["map"][3] == 19


@pytest.mark.parametrize("value", ["", "  ", None, "-1", "-- none --"])
def test_blank_mapping_becomes_unmapped(group, value):
    state = build(group, TETRODE)
    outcome = set_channel_mapping(state, 0, 0, 2, value, empty_option="-- none --")
    assert outcome.state.ntrode_electrode_group_channel_map[0]["map"][2] == -1


def test_set_channel_mapping_guards(group):
    state = build(group, TETRODE)
    assert not set_channel_mapping(state, 0, 0, 1, "abc").applied
    assert not set_channel_mapping(state, 0, 2, 1, 3).applied
    assert not set_channel_mapping(state, 42, 0, 1, 3).applied


def test_set_bad_channels(group):
    state = build(group, TETRODE)
    outcome = set_bad_channels(state, 0, 0, ["3", 1, 1])
    assert outcome.state.ntrode_electrode_group_channel_map[0]["bad_channels"] == [1, 3]
    assert not set_bad_channels(state, 0, 0, [8]).applied
    assert not set_bad_channels(state, 0, 0, ["x"]).applied


def test_apply_channel_map_table(group):
    state = build(group, TETRODE, TETRODE)
    rows = [
        {"electrode_group_id": 1, "ntrode_id": 2, "bad_channels": [0], "map": {0: 3, 1: 2, 2: 1, 3: 0}},
        {"electrode_group_id": 9, "ntrode_id": 9, "bad_channels": [], "map": {}},
    ]
    outcome = apply_channel_map_table(state, rows)
    assert outcome.applied
    updated = outcome.state.ntrode_electrode_group_channel_map
    assert updated[1]["map"] == {0: 3, 1: 2, 2: 1, 3: 0}
    assert updated[1]["bad_channels"] == [0]
    assert len(updated) == 2
    assert not apply_channel_map_table(state, rows[1:]).applied


def test_set_channel_mapping_rejects_channel_not_on_shank(group):
    state = build(group, TETRODE)
    outcome = set_channel_mapping(state, 0, 0, 99, 5)
    assert not outcome.applied
    assert outcome.state is state
    assert sorted(state.ntrode_electrode_group_channel_map[0]["map"]) == [0, 1, 2, 3]


def test_apply_channel_map_table_updates_values_key_by_key(group):
    state = build(group, TETRODE)
    outcome = apply_channel_map_table(state, [
        {"electrode_group_id": 0, "ntrode_id": 1, "bad_channels": [], "map": {1: 7}},
    ])
    assert outcome.applied
    assert outcome.state.ntrode_electrode_group_channel_map[0]["map"] == {0: 0, 1: 7, 2: 2, 3: 3}


def test_apply_channel_map_table_skips_rows_with_foreign_channels(group):
    state = build(group, TETRODE, TWO_SHANK)
    groups = state.electrode_groups
    maps = state.ntrode_electrode_group_channel_map
    text = build_channel_map_csv_bytes(maps, groups).getvalue().decode("utf-8")
    lines = text.strip().split("\n")
    # fill the tetrode row's padding cells up to the two-shank width
    cells = lines[1].split(",")
    assert len(cells) == 21
    lines[1] = ",".join(cells[:9] + ["40"] * 12)
    rows = import_channel_maps_from_csv("\n".join(lines))
    assert sorted(rows[0]["map"]) == list(range(16))

    outcome = apply_channel_map_table(state, rows)
    assert outcome.applied
    updated = outcome.state.ntrode_electrode_group_channel_map
    assert sorted(updated[0]["map"]) == [0, 1, 2, 3]
    assert updated[1:] == maps[1:]


def test_apply_channel_map_table_rejects_bad_channel_not_on_shank(group):
    state = build(group, TETRODE)
    rows = [{"electrode_group_id": 0, "ntrode_id": 1, "bad_channels": [12], "map": {0: 0}}]
    assert not apply_channel_map_table(state, rows).applied


@pytest.mark.parametrize(
    "device_type, n_rows",
    [
        ("128c-4s6mm6cm-15um-26um-sl", 4),
        ("128c-4s8mm6cm-15um-26um-sl", 4),
        ("128c-4s4mm6cm-20um-40um-sl", 4),
        ("128c-4s4mm6cm-15um-26um-sl", 4),
        ("NET-EBL-128ch-single-shank", 1),
    ],
)
def test_extended_device_types_generate_rows(group, device_type, n_rows):
    rows = build(group, device_type).ntrode_electrode_group_channel_map
    assert len(rows) == n_rows
    assert all(sorted(r["map"]) == channels_for(device_type) for r in rows)
    assert shank_count_mismatches(build(group, device_type)) == []


def test_remove_rejects_when_index_now_holds_another_group(group):
    state = build(group, TETRODE, TWO_SHANK)
    # prompt shown for index 1 (group 1), then group 0 is duplicated into index 1
    state = duplicate_electrode_group(state, 0).state
    assert [g["id"] for g in state.electrode_groups] == [0, 2, 1]

    outcome = remove_electrode_group(state, 1, always(True), expected_id=1)
    assert not outcome.applied
    assert outcome.state is state

    outcome = remove_electrode_group(state, 2, always(True), expected_id=1)
    assert [g["id"] for g in outcome.state.electrode_groups] == [0, 2]


def test_synchronizer_passes_expected_id(group):
    committed = []
    sync = ElectrodeGroupSynchronizer(build(group, TETRODE, TETRODE), committed.append, always(True))
    assert not sync.remove_electrode_group(0, expected_id=1).applied
    assert sync.remove_electrode_group(1, expected_id=1).applied
    assert len(committed) == 1


# ---- synchronizer ----

def test_synchronizer_commits_only_applied_outcomes(group):
    committed = []
    sync = ElectrodeGroupSynchronizer(FormState([group(0), group(1)], []), committed.append, always(False))
    sync.on_device_type_selected(0, TETRODE)
    sync.remove_electrode_group(0)
    sync.duplicate_electrode_group(7)
    assert len(committed) == 1
    assert sync.state is committed[0]
    sync.duplicate_electrode_group(0)
    assert [g["id"] for g in sync.state.electrode_groups] == [0, 2, 1]
    assert len(committed) == 2


def test_synchronizer_removal_confirmed(group):
    committed = []
    sync = ElectrodeGroupSynchronizer(build(group, TETRODE, TWO_SHANK), committed.append, always(True))
    outcome = sync.remove_electrode_group(0)
    assert outcome.applied
    assert [r["ntrode_id"] for r in sync.state.ntrode_electrode_group_channel_map] == [2, 3]


def test_form_state_round_trip(valid_form):
    state = FormState.from_form(valid_form)
    merged = select_device_type(state, 0, TWO_SHANK).state.merge_into(valid_form)
    assert merged["lab"] == valid_form["lab"]
    assert len(merged["ntrode_electrode_group_channel_map"]) == 2
    assert len(valid_form["ntrode_electrode_group_channel_map"]) == 1
