import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Streamlit reruns app.py on every interaction; one handler per log file
_handlers: Dict[Path, RotatingFileHandler] = {}


def setup_run_logger(log_path: Path, *, level: int = logging.INFO,
                     max_bytes: int = 10 * 1024 * 1024, backup_count: int = 3) -> Path:
    """Send records at ``level`` and above to a rotating file at ``log_path``.

    Calling again with the same path is a no-op.
    """
    log_path = Path(log_path)
    if log_path in _handlers:
        return log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.setLevel(level)

    root = logging.getLogger()
    # handler levels cannot go below the root logger's
    if root.level > level:
        root.setLevel(level)
    root.addHandler(handler)
    _handlers[log_path] = handler
    return log_path


def detach_run_logger(log_path: Path) -> bool:
    handler = _handlers.pop(Path(log_path), None)
    if handler is None:
        return False
    logging.getLogger().removeHandler(handler)
    handler.close()
    return True
