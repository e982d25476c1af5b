"""
Client for the local AP daemon (wifi-ap) REST API on its unix control socket.

Responses are wrapped as ``{"result": ..., "status": "OK", "status-code": 200,
"type": "sync"}``. Writes send only the changed keys, with string values.
"""
from __future__ import annotations

import http.client
import json
import logging
import socket
import time
from typing import Any, Dict, Optional, Tuple

from wifi_connectd.config import load_config
from wifi_connectd.errors import TransportError

log = logging.getLogger("wifi_connectd.wifiap")

API_PREFIX = "/v1"
CONFIGURATION_PATH = API_PREFIX + "/configuration"
STATUS_PATH = API_PREFIX + "/status"

SECURITY_MODE = "wpa2"


class _UnixHTTPConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, timeout: float):
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self._socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


class UnixSocketTransport:
    """Sends one HTTP request per call over the daemon's unix socket."""

    def __init__(self, socket_path: str, timeout_s: float = 5.0):
        self.socket_path = socket_path
        self.timeout_s = timeout_s

    def request(self, method: str, path: str, body: Optional[bytes] = None) -> Tuple[int, bytes]:
        conn = _UnixHTTPConnection(self.socket_path, self.timeout_s)
        headers = {"Content-Type": "application/json"} if body is not None else {}
        try:
            conn.request(method, path, body=body, headers=headers)
            resp = conn.getresponse()
            return resp.status, resp.read()
        except (OSError, http.client.HTTPException) as exc:
            raise TransportError(f"ap daemon unreachable: {exc}", context={"socket": self.socket_path}) from exc
        finally:
            conn.close()


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _encode_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


class AccessPointClient:
    def __init__(self, transport, *, poll_attempts: int = 10, poll_interval_s: float = 0.5):
        self._transport = transport
        self.poll_attempts = max(1, int(poll_attempts))
        self.poll_interval_s = poll_interval_s

    def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        code, raw = self._transport.request(method, path, body)

        try:
            env = json.loads(raw.decode("utf-8", "replace")) if raw else {}
        except ValueError as exc:
            raise TransportError(f"invalid response from ap daemon ({code})") from exc
        if not isinstance(env, dict):
            raise TransportError(f"invalid response from ap daemon ({code})")

        status = env.get("status")
        status_code = env.get("status-code", code)
        try:
            envelope_ok = 200 <= int(status_code) < 300
        except (TypeError, ValueError):
            envelope_ok = False
        if not (200 <= int(code) < 300) or not envelope_ok or status != "OK":
            raise TransportError(
                f"ap daemon returned {status_code} {status or ''}".strip(),
                context={"path": path, "result": env.get("result")},
            )
        return env.get("result")

    def show(self) -> Dict[str, Any]:
        result = self._call("GET", CONFIGURATION_PATH)
        if not isinstance(result, dict):
            raise TransportError("ap configuration is not an object")
        return result

    def set(self, values: Dict[str, Any]) -> None:
        self._call("POST", CONFIGURATION_PATH, {k: _encode_value(v) for k, v in values.items()})

    def active(self) -> bool:
        result = self._call("GET", STATUS_PATH)
        if not isinstance(result, dict):
            raise TransportError("ap status is not an object")
        return _as_bool(result.get("ap.active"))

    def _set_disabled(self, disabled: bool) -> None:
        self.set({"disabled": disabled})

        want_active = not disabled
        last_err: Optional[TransportError] = None
        for attempt in range(self.poll_attempts):
            if attempt:
                time.sleep(self.poll_interval_s)
            try:
                if self.active() == want_active:
                    log.info("ap_toggled", extra={"op": "enable" if want_active else "disable"})
                    return
                last_err = None
            except TransportError as exc:
                last_err = exc

        op = "enable" if want_active else "disable"
        msg = f"ap did not become {'active' if want_active else 'inactive'} after {self.poll_attempts} checks"
        if last_err is not None:
            msg += f": {last_err}"
        raise TransportError(msg, context={"op": op})

    def enable(self) -> None:
        self._set_disabled(False)

    def disable(self) -> None:
        self._set_disabled(True)

    def enabled(self) -> bool:
        return not _as_bool(self.show().get("disabled"))

    def set_ssid(self, ssid: str) -> None:
        self.set({"wifi.ssid": ssid})

    def set_passphrase(self, passphrase: str) -> None:
        # The daemon only accepts a passphrase together with a security mode.
        self.set({"wifi.security": SECURITY_MODE, "wifi.security-passphrase": passphrase})


def default_client(cfg: Optional[Dict[str, Any]] = None) -> AccessPointClient:
    cfg = cfg or load_config()
    return AccessPointClient(
        UnixSocketTransport(str(cfg.get("ap_socket_path"))),
        poll_attempts=int(cfg.get("ap_poll_attempts", 10)),
        poll_interval_s=float(cfg.get("ap_poll_interval_s", 0.5)),
    )
