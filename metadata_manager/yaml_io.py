"""YAML encoding/decoding of the metadata document.

Output is deterministic for a given input: block style, keys in insertion
order, UTF-8 text with ``\\n`` line endings. The file name follows the
``{date}_{subject}_metadata.yml`` pattern the conversion pipeline scans for.
"""
from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

import yaml

from .schema import EMPTY_FORM_DATA, GENDER_ACRONYMS, empty_form
from .validation import top_level_field, validate

logger = logging.getLogger(__name__)

DATE_PLACEHOLDER = "{EXPERIMENT_DATE_in_format_mmddYYYY}"


def encode_yaml(model: Dict[str, Any] | None) -> str:
    return yaml.safe_dump(
        model or {},
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def decode_yaml(text: str) -> Any:
    """Parse YAML text; ``yaml.YAMLError`` propagates on malformed input."""
    return yaml.safe_load(text)


def format_deterministic_filename(model: Dict[str, Any]) -> str:
    experiment_date = model.get("EXPERIMENT_DATE_in_format_mmddYYYY") or DATE_PLACEHOLDER
    subject = model.get("subject") if isinstance(model.get("subject"), dict) else {}
    subject_id = str(subject.get("subject_id") or "").lower()
    return f"{experiment_date}_{subject_id}_metadata.yml"


def _failed_import(error: str) -> Dict[str, Any]:
    return {"success": False, "error": error, "form_data": empty_form(), "import_summary": None}


def import_metadata(text: str) -> Dict[str, Any]:
    """Load a metadata document, keeping what validates.

    Returns a dict with keys:
    - success: bool
    - error: str | None
    - form_data: the document to load into the form
    - import_summary: {total_fields, imported_fields, excluded_fields, has_exclusions}

    A fully valid file is loaded as-is (missing sections filled from the
    empty form). Otherwise every top-level section with an issue is reset to
    its empty value and reported in ``excluded_fields``.
    """
    try:
        content = decode_yaml(text)
    except yaml.YAMLError as exc:
        logger.warning("Could not parse imported YAML: %s", exc)
        return _failed_import(f"Invalid YAML file: {exc}")
    if not isinstance(content, dict):
        return _failed_import("Invalid YAML file: expected a mapping at the top level")

    keys = list(EMPTY_FORM_DATA.keys())
    total_fields = sum(1 for k in keys if k in content)
    issues = [i for i in validate(content) if i["severity"] == "error"]

    if not issues:
        form = copy.deepcopy(content)
        for key in keys:
            form.setdefault(key, copy.deepcopy(EMPTY_FORM_DATA[key]))
        return {
            "success": True,
            "error": None,
            "form_data": form,
            "import_summary": {
                "total_fields": total_fields,
                "imported_fields": [k for k in keys if k in content and content[k] != EMPTY_FORM_DATA[k]],
                "excluded_fields": [],
                "has_exclusions": False,
            },
        }

    error_fields: List[str] = []
    for issue in issues:
        name = top_level_field(issue["path"])
        if name not in error_fields:
            error_fields.append(name)

    form = empty_form()
    for key in keys:
        if key in error_fields or key not in content:
            continue
        # Only take values of the same kind as the empty form's
        if type(content[key]) is type(form[key]) or (
            isinstance(form[key], float) and isinstance(content[key], (int, float))
            and not isinstance(content[key], bool)
        ):
            form[key] = copy.deepcopy(content[key])

    if form["subject"].get("sex") not in GENDER_ACRONYMS:
        form["subject"]["sex"] = "U"

    excluded = [
        {
            "field": name,
            "reason": next((i["message"] for i in issues if top_level_field(i["path"]) == name), "Validation error"),
        }
        for name in error_fields
    ]
    logger.info("Partial import: %d section(s) excluded", len(excluded))
    return {
        "success": True,
        "error": None,
        "form_data": form,
        "import_summary": {
            "total_fields": total_fields,
            "imported_fields": [k for k in keys if k not in error_fields and k in content],
            "excluded_fields": excluded,
            "has_exclusions": bool(excluded),
        },
    }


def export_metadata(model: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and encode the document.

    Returns {success, error, validation_issues, yaml, filename}; ``yaml`` and
    ``filename`` are None when any error-level issue remains.
    """
    form = copy.deepcopy(model)
    issues = validate(form)
    errors = [i for i in issues if i["severity"] == "error"]
    if errors:
        return {
            "success": False,
            "error": "Validation failed",
            "validation_issues": issues,
            "yaml": None,
            "filename": None,
        }
    return {
        "success": True,
        "error": None,
        "validation_issues": issues,
        "yaml": encode_yaml(form),
        "filename": format_deterministic_filename(form),
    }
