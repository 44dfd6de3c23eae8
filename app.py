import logging
import os
from typing import Any, Dict, List

import pandas as pd
import streamlit as st

from metadata_manager.config import load_settings
from metadata_manager.device_types import channels_for, get_device_types, shank_count_for
from metadata_manager.export import (
    ChannelMapImportError,
    build_channel_map_csv_bytes,
    build_channel_map_workbook_bytes,
    import_channel_maps_from_csv,
)
from metadata_manager.logging_utils import setup_run_logger
from metadata_manager.schema import (
    GENDER_ACRONYMS,
    REQUIRED_FIELDS,
    empty_form,
    get_field_category,
    get_field_descriptions,
    new_electrode_group,
)
from metadata_manager.sync import (
    ElectrodeGroupSynchronizer,
    FormState,
    ntrodes_for_group,
    removal_prompt,
)
from metadata_manager.validation import summarize_issues, top_level_field, validate
from metadata_manager.yaml_io import export_metadata, import_metadata


st.set_page_config(page_title="Recording Metadata Manager", page_icon="📄", layout="wide")

SETTINGS = load_settings()
setup_run_logger(SETTINGS.log_path)
logger = logging.getLogger("metadata_manager.app")

DESCRIPTIONS = get_field_descriptions()


def _set_mode(new_mode: str):
    st.session_state["mode"] = new_mode


def _label(key: str) -> str:
    text = key.replace("_", " ").capitalize()
    return f"{text} *" if key in REQUIRED_FIELDS else text


# ------------------------------
# Form state plumbing
# ------------------------------

def _form() -> Dict[str, Any]:
    if "form" not in st.session_state:
        st.session_state["form"] = empty_form()
        st.session_state["form_version"] = 0
    return st.session_state["form"]


def _replace_form(form: Dict[str, Any]) -> None:
    st.session_state["form"] = form
    # Widget keys embed the version so editors rebuild from the new snapshot
    st.session_state["form_version"] = st.session_state.get("form_version", 0) + 1


def _commit(state: FormState) -> None:
    _replace_form(state.merge_into(_form()))


def _synchronizer(confirmed: bool = False) -> ElectrodeGroupSynchronizer:
    # Removal is confirmed in the UI before the engine is called
    return ElectrodeGroupSynchronizer(
        FormState.from_form(_form()),
        commit=_commit,
        confirm=lambda _message: confirmed,
    )


def _version() -> int:
    return st.session_state.get("form_version", 0)


def _report(outcome) -> None:
    if not outcome.applied:
        st.session_state["flash"] = f"Nothing changed: {outcome.reason}"


# ------------------------------
# Callbacks (run before the rerun that redraws the page)
# ------------------------------

def _update_field(key: str, widget_key: str) -> None:
    form = dict(_form())
    form[key] = st.session_state[widget_key]
    _replace_form(form)


def _update_subject(key: str, widget_key: str) -> None:
    form = dict(_form())
    subject = dict(form.get("subject") or {})
    subject[key] = st.session_state[widget_key]
    form["subject"] = subject
    _replace_form(form)


def _update_group_field(index: int, key: str, widget_key: str) -> None:
    form = dict(_form())
    groups = [dict(g) for g in form.get("electrode_groups", [])]
    groups[index][key] = st.session_state[widget_key]
    form["electrode_groups"] = groups
    _replace_form(form)


def _add_group() -> None:
    form = dict(_form())
    groups = list(form.get("electrode_groups", []))
    groups.append(new_electrode_group(groups))
    form["electrode_groups"] = groups
    _replace_form(form)
    if SETTINGS.default_device_type:
        _report(_synchronizer().on_device_type_selected(len(groups) - 1, SETTINGS.default_device_type))


def _device_type_selected(index: int, widget_key: str) -> None:
    _report(_synchronizer().on_device_type_selected(index, st.session_state[widget_key]))


def _duplicate_group(index: int) -> None:
    _report(_synchronizer().duplicate_electrode_group(index))


def _request_removal(index: int) -> None:
    if SETTINGS.confirm_removals:
        group = _form().get("electrode_groups", [])[index]
        st.session_state["pending_removal"] = (index, group.get("id"))
    else:
        _report(_synchronizer(confirmed=True).remove_electrode_group(index))


def _resolve_removal(confirmed: bool) -> None:
    pending = st.session_state.pop("pending_removal", None)
    if pending is None:
        return
    index, group_id = pending
    # The form may have changed since the prompt was shown
    _report(_synchronizer(confirmed=confirmed).remove_electrode_group(index, expected_id=group_id))


def _map_edited(electrode_group_id: int, shank: int, channels: List[int], widget_key: str) -> None:
    edits = (st.session_state.get(widget_key) or {}).get("edited_rows", {})
    sync = _synchronizer()
    for row, changes in edits.items():
        if "hardware_channel" not in changes:
            continue
        _report(sync.on_map_input(electrode_group_id, shank, channels[int(row)], changes["hardware_channel"]))


def _bad_channels_edited(electrode_group_id: int, shank: int, widget_key: str) -> None:
    _report(_synchronizer().on_bad_channels(electrode_group_id, shank, st.session_state[widget_key]))


# ------------------------------
# Pages
# ------------------------------

def _session_page() -> None:
    st.header("Session")
    form = _form()
    v = _version()
    for key in ("lab", "institution", "experiment_description", "session_description", "session_id"):
        wkey = f"{key}_{v}"
        st.text_input(_label(key), value=str(form.get(key, "")), key=wkey,
                      help=DESCRIPTIONS.get(key), on_change=_update_field, args=(key, wkey))

    wkey = f"experimenters_{v}"
    st.text_input(
        f"{_label('experimenter_name')} (semicolon-separated, Last, First)",
        value="; ".join(form.get("experimenter_name", [])),
        key=wkey,
    )
    names = [n.strip() for n in st.session_state[wkey].split(";") if n.strip()]
    if names != form.get("experimenter_name", []):
        updated = dict(form)
        updated["experimenter_name"] = names
        _replace_form(updated)

    wkey = f"date_{v}"
    st.text_input("Experiment date (mmddYYYY)", value=str(form.get("EXPERIMENT_DATE_in_format_mmddYYYY", "")),
                  key=wkey, on_change=_update_field, args=("EXPERIMENT_DATE_in_format_mmddYYYY", wkey))

    st.subheader("Subject")
    subject = form.get("subject") or {}
    c1, c2 = st.columns(2)
    with c1:
        for key in ("subject_id", "species", "genotype"):
            wkey = f"subject_{key}_{v}"
            st.text_input(key.replace("_", " ").capitalize(), value=str(subject.get(key, "")), key=wkey,
                          on_change=_update_subject, args=(key, wkey))
    with c2:
        wkey = f"subject_sex_{v}"
        sex = subject.get("sex")
        st.selectbox("Sex", GENDER_ACRONYMS,
                     index=GENDER_ACRONYMS.index(sex if sex in GENDER_ACRONYMS else "U"),
                     key=wkey, on_change=_update_subject, args=("sex", wkey))
        wkey = f"subject_dob_{v}"
        st.text_input("Date of birth (ISO 8601)", value=str(subject.get("date_of_birth", "")), key=wkey,
                      on_change=_update_subject, args=("date_of_birth", wkey))
        wkey = f"subject_weight_{v}"
        st.number_input("Weight (g)", value=float(subject.get("weight") or 0), key=wkey,
                        on_change=_update_subject, args=("weight", wkey))


def _electrode_groups_page() -> None:
    st.header("Electrode groups")
    st.caption(DESCRIPTIONS["electrode_groups"])
    form = _form()
    v = _version()
    groups = form.get("electrode_groups", [])
    maps = form.get("ntrode_electrode_group_channel_map", [])
    device_options = [""] + get_device_types()

    pending = st.session_state.get("pending_removal")
    locked = pending is not None
    if locked:
        st.warning(removal_prompt(pending[0]))
        c1, c2, _ = st.columns([1, 1, 6])
        c1.button("Yes, remove", on_click=_resolve_removal, args=(True,), key=f"confirm_yes_{v}")
        c2.button("Cancel", on_click=_resolve_removal, args=(False,), key=f"confirm_no_{v}")

    for i, group in enumerate(groups):
        gid = group.get("id")
        n_maps = len(ntrodes_for_group(maps, gid))
        with st.expander(f"Electrode group {gid} · {group.get('device_type') or 'no device'} · {n_maps} ntrode(s)",
                         expanded=not group.get("device_type")):
            current = group.get("device_type", "")
            wkey = f"device_type_{gid}_{i}_{v}"
            st.selectbox(
                "Device type",
                options=device_options if current in device_options else device_options + [current],
                index=(device_options + [current]).index(current),
                key=wkey,
                help=DESCRIPTIONS["device_type"],
                disabled=locked,
                on_change=_device_type_selected,
                args=(i, wkey),
            )
            c1, c2 = st.columns(2)
            for col, key in ((c1, "location"), (c2, "targeted_location"), (c1, "description"), (c2, "units")):
                fkey = f"group_{key}_{gid}_{i}_{v}"
                col.text_input(key.replace("_", " ").capitalize(), value=str(group.get(key, "")), key=fkey,
                               on_change=_update_group_field, args=(i, key, fkey))
            x, y, z = st.columns(3)
            for col, key in ((x, "targeted_x"), (y, "targeted_y"), (z, "targeted_z")):
                fkey = f"group_{key}_{gid}_{i}_{v}"
                col.text_input(key, value=str(group.get(key, "")), key=fkey,
                               on_change=_update_group_field, args=(i, key, fkey))
            b1, b2, _ = st.columns([1, 1, 6])
            b1.button("Duplicate", key=f"dup_{gid}_{i}_{v}", on_click=_duplicate_group, args=(i,), disabled=locked)
            b2.button("Remove", key=f"rm_{gid}_{i}_{v}", on_click=_request_removal, args=(i,), disabled=locked)

    st.button("Add electrode group", on_click=_add_group, disabled=locked)


def _channel_maps_page() -> None:
    st.header("Channel maps")
    st.caption(DESCRIPTIONS["ntrode_electrode_group_channel_map"])
    form = _form()
    v = _version()
    maps = form.get("ntrode_electrode_group_channel_map", [])

    for group in form.get("electrode_groups", []):
        gid = group.get("id")
        device_type = group.get("device_type")
        rows = ntrodes_for_group(maps, gid)
        st.subheader(f"Electrode group {gid}")
        if not rows:
            st.info("Select a device type to generate channel maps.")
            continue
        st.caption(f"{device_type}: {len(channels_for(device_type))} channels × {shank_count_for(device_type)} shank(s)")
        for shank, ntrode in enumerate(rows):
            channel_map = ntrode.get("map") or {}
            channels = sorted(channel_map.keys())
            with st.expander(f"Ntrode {ntrode.get('ntrode_id')} · shank {shank}"):
                df = pd.DataFrame({
                    "logical_channel": channels,
                    "hardware_channel": [channel_map[c] for c in channels],
                })
                wkey = f"map_{gid}_{shank}_{v}"
                st.data_editor(
                    df,
                    hide_index=True,
                    disabled=["logical_channel"],
                    key=wkey,
                    on_change=_map_edited,
                    args=(gid, shank, channels, wkey),
                )
                bkey = f"bad_{gid}_{shank}_{v}"
                st.multiselect(
                    "Bad channels",
                    options=channels,
                    default=[c for c in ntrode.get("bad_channels", []) if c in channels],
                    key=bkey,
                    help=DESCRIPTIONS["bad_channels"],
                    on_change=_bad_channels_edited,
                    args=(gid, shank, bkey),
                )


def _import_export_page() -> None:
    st.header("Import / export")
    form = _form()

    uploaded = st.file_uploader("Load metadata YAML", type=["yml", "yaml"], key=f"yaml_upload_{_version()}")
    if uploaded is not None:
        result = import_metadata(uploaded.getvalue().decode("utf-8"))
        if not result["success"]:
            st.error(result["error"])
        else:
            _replace_form(result["form_data"])
            summary = result["import_summary"]
            st.success(f"Imported {len(summary['imported_fields'])} of {summary['total_fields']} sections")
            for excluded in summary["excluded_fields"]:
                st.warning(f"{excluded['field']} was not imported: {excluded['reason']}")
            logger.info("Imported %s", uploaded.name)
            form = _form()

    st.subheader("Export metadata")
    result = export_metadata(form)
    if result["success"]:
        st.download_button("Download YAML", data=result["yaml"], file_name=result["filename"], mime="text/yaml")
        if st.button("Save to export folder"):
            os.makedirs(SETTINGS.export_dir, exist_ok=True)
            target = SETTINGS.export_dir / result["filename"]
            with open(target, "w", encoding="utf-8", newline="\n") as f:
                f.write(result["yaml"])
            st.success(f"Saved to {target}")
            logger.info("Exported metadata to %s", target)
    else:
        st.error(f"{result['error']}: see the Validation page")

    st.subheader("Channel maps spreadsheet")
    maps = form.get("ntrode_electrode_group_channel_map", [])
    groups = form.get("electrode_groups", [])
    if maps:
        c1, c2 = st.columns(2)
        c1.download_button("Download CSV", data=build_channel_map_csv_bytes(maps, groups),
                           file_name="channel_maps.csv", mime="text/csv")
        try:
            c2.download_button("Download XLSX", data=build_channel_map_workbook_bytes(maps, groups),
                               file_name="channel_maps.xlsx")
        except RuntimeError as e:
            c2.info(str(e))

    csv_upload = st.file_uploader("Apply edited channel map CSV", type=["csv"], key=f"csv_upload_{_version()}")
    if csv_upload is not None:
        try:
            rows = import_channel_maps_from_csv(csv_upload.getvalue().decode("utf-8"))
        except ChannelMapImportError as e:
            st.error(str(e))
        else:
            outcome = _synchronizer().import_channel_map_table(rows)
            if outcome.applied:
                st.success(f"Applied {len(rows)} channel map row(s)")
            else:
                st.error(outcome.reason)


def _validation_page() -> None:
    st.header("Validation")
    issues = validate(_form())
    summary = summarize_issues(issues)
    (st.success if summary["ok"] else st.error)(summary["summary"])
    if issues:
        df = pd.DataFrame(issues)
        df.insert(0, "section", [get_field_category(top_level_field(p)) for p in df["path"]])
        st.dataframe(df, hide_index=True, width="stretch")


def main() -> None:
    st.title("Recording Metadata Manager")

    with st.sidebar:
        st.header("Sections")
        st.button("Session", width="stretch", on_click=_set_mode, args=("session",))
        st.button("Electrode groups", width="stretch", on_click=_set_mode, args=("groups",))
        st.button("Channel maps", width="stretch", on_click=_set_mode, args=("maps",))
        st.button("Import / export", width="stretch", on_click=_set_mode, args=("io",))
        st.button("Validation", width="stretch", on_click=_set_mode, args=("validate",))
        st.divider()
        if st.button("Clear form", type="secondary", width="stretch"):
            _replace_form(empty_form())

    flash = st.session_state.pop("flash", None)
    if flash:
        st.info(flash)

    mode = st.session_state.get("mode", "groups")
    pages = {
        "session": _session_page,
        "groups": _electrode_groups_page,
        "maps": _channel_maps_page,
        "io": _import_export_page,
        "validate": _validation_page,
    }
    pages.get(mode, _electrode_groups_page)()


if __name__ == "__main__":
    main()
