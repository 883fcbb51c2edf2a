import json
import os
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Dict, Optional
from procura.time_utils import now_local

# Initialize system logger
_logger = logging.getLogger("procura")
_logger.setLevel(logging.INFO)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def default_workspace() -> Path:
    return Path(os.getenv("PROCURA_WORKSPACE", "workspace/default"))


def setup_logging(workspace: Path):
    """Configures rotating file handlers for the workspace."""
    log_file = workspace / "procura.log"
    workspace.mkdir(parents=True, exist_ok=True)

    if any(isinstance(h, logging.handlers.RotatingFileHandler) and h.baseFilename == str(log_file.resolve()) for h in _logger.handlers):
        return

    # Rotating handler: 10MB per file, keep 5 backups
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=10*1024*1024, backupCount=5, encoding="utf-8"
    )
    # Structured JSON format for machine parsing
    formatter = logging.Formatter('%(message)s')
    handler.setFormatter(formatter)
    _logger.addHandler(handler)


def log_event(event: str, data: Dict[str, Any] = None, workspace: Optional[Path] = None, role: str = None, **kwargs) -> None:
    """
    Unified log router.
    Supports:
    - log_event("event_name", data_dict, workspace, role="X")
    - log_event("event_name", data_dict, run_id="...", level="warning")
    """
    if data is None: data = {}
    if workspace is None:
        workspace = default_workspace()

    # Merge extra kwargs into data for observability
    full_data = {**data, **kwargs}
    role_name = role or full_data.get("role") or "system"
    level = _LEVELS.get(str(full_data.get("level") or "info").lower(), logging.INFO)

    record = {
        "timestamp": now_local().isoformat(),
        "role": role_name,
        "event": event,
        "data": full_data,
    }

    # 1. Ensure logging is set up for this workspace
    setup_logging(workspace)

    # 2. Emit JSON record
    _logger.log(level, json.dumps(record, ensure_ascii=False, default=str))


def log_crash(exception: Exception, traceback_str: str, workspace: Optional[Path] = None):
    """
    Safely logs a crash to a rotating file.
    """
    if workspace is None:
        workspace = default_workspace()

    workspace.mkdir(parents=True, exist_ok=True)
    crash_log = workspace / "procura_crash.log"

    # Dedicated logger so crash records never mix with the JSON stream
    crash_logger = logging.getLogger("procura_crash")
    crash_logger.setLevel(logging.ERROR)

    if not crash_logger.handlers:
        handler = logging.handlers.RotatingFileHandler(
            crash_log, maxBytes=5*1024*1024, backupCount=5, encoding="utf-8"
        )
        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        handler.setFormatter(formatter)
        crash_logger.addHandler(handler)

    crash_logger.error(f"CRITICAL CRASH: {type(exception).__name__}\n{traceback_str}")
