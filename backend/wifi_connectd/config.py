import json
import os
from pathlib import Path
from typing import Any, Dict

CONFIG_PATH = Path(os.environ.get("WIFI_CONNECT_CONFIG") or "/var/lib/wifi-connect/config.json")
CONFIG_SCHEMA_VERSION = 1


def _default_state_dir() -> str:
    # Snap confinement only allows writes below SNAP_COMMON.
    return (os.environ.get("SNAP_COMMON") or "").strip() or "/var/lib/wifi-connect"


DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_SCHEMA_VERSION,

    # Captive portal (management mode)
    "portal_host": "0.0.0.0",
    "portal_port": 8080,

    # Status page (operational mode)
    "operational_host": "0.0.0.0",
    "operational_port": 8081,

    # Graceful stop budget for either HTTP service
    "shutdown_grace_s": 5.0,

    # Local AP daemon
    "ap_socket_path": "/var/snap/wifi-ap/current/sockets/control",
    "ap_poll_attempts": 10,
    "ap_poll_interval_s": 0.5,

    # NetworkManager
    "nmcli_timeout_s": 10.0,
    "connect_timeout_s": 45,

    # Minimum AP / network passphrase length accepted from users
    "min_passphrase_len": 13,

    # Flag files (manual mode)
    "state_dir": _default_state_dir(),

    "watchdog_interval_s": 10.0,
}

_INT_KEYS = {"portal_port", "operational_port", "ap_poll_attempts", "connect_timeout_s", "min_passphrase_len"}
_FLOAT_KEYS = {"shutdown_grace_s", "ap_poll_interval_s", "nmcli_timeout_s", "watchdog_interval_s"}


def _config_tmp() -> Path:
    return CONFIG_PATH.with_name(CONFIG_PATH.name + ".tmp")


def read_config_file() -> Dict[str, Any]:
    """
    Returns the raw JSON content on disk (or {} if missing/invalid).
    """
    if not CONFIG_PATH.exists():
        return {}
    try:
        data = json.loads(CONFIG_PATH.read_text())
        return data if isinstance(data, dict) else {}
    except Exception:
        return {}


def _write_atomic(path: Path, tmp: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except Exception:
            pass
    os.replace(tmp, path)


def _coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Hand-edited files sometimes carry "8080" instead of 8080; fall back to the
    default for anything that does not parse.
    """
    out = dict(cfg)
    for k in _INT_KEYS:
        try:
            out[k] = int(out[k])
        except (KeyError, TypeError, ValueError):
            out[k] = DEFAULT_CONFIG[k]
    for k in _FLOAT_KEYS:
        try:
            out[k] = float(out[k])
        except (KeyError, TypeError, ValueError):
            out[k] = DEFAULT_CONFIG[k]
    return out


def load_config() -> Dict[str, Any]:
    """
    Returns DEFAULT_CONFIG merged with on-disk config.
    """
    cfg = DEFAULT_CONFIG.copy()
    cfg.update(read_config_file())
    cfg["version"] = CONFIG_SCHEMA_VERSION
    return _coerce(cfg)


def write_config_file(partial_updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist a partial update to disk. Returns the merged config after write.
    """
    if not isinstance(partial_updates, dict):
        partial_updates = {}

    merged: Dict[str, Any] = DEFAULT_CONFIG.copy()
    merged.update(read_config_file())
    merged.update(partial_updates)
    merged["version"] = CONFIG_SCHEMA_VERSION

    _write_atomic(CONFIG_PATH, _config_tmp(), json.dumps(merged, indent=2))
    CONFIG_PATH.chmod(0o600)
    return merged


def ensure_config_file():
    if CONFIG_PATH.exists():
        return
    write_config_file({})
