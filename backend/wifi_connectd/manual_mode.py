import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from wifi_connectd.config import load_config

log = logging.getLogger("wifi_connectd.manual_mode")

FLAG_NAME = "manualMode"


def flag_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    cfg = cfg or load_config()
    return Path(str(cfg.get("state_dir") or "/var/lib/wifi-connect")) / FLAG_NAME


def is_manual_mode(cfg: Optional[Dict[str, Any]] = None) -> bool:
    return flag_path(cfg).exists()


def enter_manual_mode(cfg: Optional[Dict[str, Any]] = None) -> Path:
    path = flag_path(cfg)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch()
    log.info("manual_mode_entered", extra={"path": str(path)})
    return path


def leave_manual_mode(cfg: Optional[Dict[str, Any]] = None) -> bool:
    """
    Returns True if a flag was removed. A missing flag is not an error.
    """
    path = flag_path(cfg)
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    log.info("manual_mode_left", extra={"path": str(path)})
    return True
