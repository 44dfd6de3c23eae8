from importlib import metadata as _metadata

try:  # pragma: no cover - simple dynamic version helper
    __version__ = _metadata.version("rec-metadata-manager")
except Exception:  # noqa: BLE001
    __version__ = "0.0.0"

__all__ = [
    "channel_map",
    "config",
    "device_types",
    "export",
    "logging_utils",
    "schema",
    "sync",
    "validation",
    "yaml_io",
    "__version__",
]
