"""Settings for the metadata manager.

Read from ``metadata_manager.yaml`` in the project root when present, then
overridden by ``MM_*`` environment variables (the launcher sets
``MM_PROJECT_ROOT``).
"""
from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_FILENAME = "metadata_manager.yaml"

_ENV_OVERRIDES = {
    "MM_EXPORT_DIR": "export_dir",
    "MM_LOG_PATH": "log_path",
    "MM_CONFIRM_REMOVALS": "confirm_removals",
    "MM_DEFAULT_DEVICE_TYPE": "default_device_type",
}


@dataclass
class Settings:
    project_root: Path
    export_dir: Path
    log_path: Path
    confirm_removals: bool = True
    default_device_type: str = ""


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_config_file(project_root: str | Path) -> Dict[str, Any]:
    """Load metadata_manager.yaml if it exists, else return {}."""
    path = Path(project_root) / CONFIG_FILENAME
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


def load_settings(project_root: Optional[str | Path] = None) -> Settings:
    root = Path(project_root or os.environ.get("MM_PROJECT_ROOT") or os.getcwd())
    raw: Dict[str, Any] = load_config_file(root)
    for env_name, key in _ENV_OVERRIDES.items():
        if env_name in os.environ:
            raw[key] = os.environ[env_name]

    known = {f.name for f in fields(Settings)}
    raw = {k: v for k, v in raw.items() if k in known and k != "project_root"}

    # Relative paths are relative to the project root
    export_dir = Path(raw.get("export_dir") or "exports")
    log_path = Path(raw.get("log_path") or "logs/metadata_manager.log")
    return Settings(
        project_root=root,
        export_dir=export_dir if export_dir.is_absolute() else root / export_dir,
        log_path=log_path if log_path.is_absolute() else root / log_path,
        confirm_removals=_as_bool(raw.get("confirm_removals", True)),
        default_device_type=str(raw.get("default_device_type") or ""),
    )
