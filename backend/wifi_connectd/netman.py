"""
NetworkManager client.

Everything goes through ``nmcli`` in terse mode. Nothing is cached between
calls: other tools may change device state or managed flags at any time, so
each query reflects what NetworkManager reports right now.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from wifi_connectd.config import load_config
from wifi_connectd.errors import ConnectFailed, NotFound, TransportError

log = logging.getLogger("wifi_connectd.netman")

# (cmd, timeout_s) -> (returncode, stdout, stderr)
Runner = Callable[[List[str], float], Tuple[int, str, str]]

WIFI_KIND = "wifi"
PROFILE_PREFIX = "wifi-connect-"

# nmcli exit status when NetworkManager itself is not running
_NMCLI_RC_NM_NOT_RUNNING = 8


@dataclass(frozen=True)
class Device:
    ifname: str
    kind: str
    state: str
    managed: bool
    connection: Optional[str] = None

    @property
    def is_wifi(self) -> bool:
        return self.kind == WIFI_KIND

    @property
    def connected(self) -> bool:
        return self.state.startswith("connected")

    def __str__(self) -> str:
        return f"{self.ifname} ({self.kind}, {self.state})"


@dataclass(frozen=True)
class SSID:
    ssid: str
    signal: int
    security: str

    @property
    def secured(self) -> bool:
        return bool(self.security) and self.security != "--"


def _default_runner(cmd: List[str], timeout_s: float) -> Tuple[int, str, str]:
    p = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
    return p.returncode, p.stdout or "", p.stderr or ""


def split_terse(line: str) -> List[str]:
    """
    Split one line of ``nmcli -t`` output. nmcli escapes ``:`` and ``\\`` inside
    values with a backslash (BSSIDs always contain escaped colons).
    """
    fields: List[str] = []
    cur: List[str] = []
    escaped = False
    for ch in line:
        if escaped:
            cur.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ":":
            fields.append("".join(cur))
            cur = []
        else:
            cur.append(ch)
    fields.append("".join(cur))
    return fields


def _parse_signal(raw: str) -> int:
    try:
        return int(float(raw.strip()))
    except ValueError:
        return 0


class NetworkManagerClient:
    def __init__(
        self,
        *,
        runner: Optional[Runner] = None,
        nmcli: Optional[str] = None,
        timeout_s: float = 10.0,
        connect_timeout_s: int = 45,
    ):
        self._runner = runner or _default_runner
        self._nmcli = nmcli or shutil.which("nmcli") or "nmcli"
        self.timeout_s = timeout_s
        self.connect_timeout_s = connect_timeout_s

    # ------------------------------------------------------------------ transport

    def _exec(self, args: List[str], timeout_s: Optional[float] = None) -> Tuple[int, str, str]:
        cmd = [self._nmcli] + args
        try:
            return self._runner(cmd, timeout_s if timeout_s is not None else self.timeout_s)
        except FileNotFoundError as exc:
            raise TransportError("nmcli not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransportError(f"nmcli timed out: {' '.join(args[:3])}") from exc

    def _run(self, args: List[str]) -> str:
        rc, out, err = self._exec(args)
        if rc != 0:
            msg = (err or out).strip() or f"nmcli exited with {rc}"
            raise TransportError(msg, context={"rc": rc, "args": args[:4]})
        return out

    # ------------------------------------------------------------------ devices

    def get_devices(self) -> Iterator[Device]:
        """
        Lazily yields every device NetworkManager knows about. Each call queries
        NetworkManager again.
        """
        out = self._run(["-t", "-f", "DEVICE,TYPE,STATE,CONNECTION", "device", "status"])
        for line in out.splitlines():
            if not line.strip():
                continue
            parts = split_terse(line)
            while len(parts) < 4:
                parts.append("")
            ifname, kind, state, connection = (p.strip() for p in parts[:4])
            if not ifname:
                continue
            yield Device(
                ifname=ifname,
                kind=kind,
                state=state,
                managed=state != "unmanaged",
                connection=connection if connection and connection != "--" else None,
            )

    @staticmethod
    def get_wifi_devices(devices: Iterable[Device]) -> List[Device]:
        return [d for d in devices if d.is_wifi]

    # ------------------------------------------------------------------ scanning

    def _access_points(self, ifname: str, rescan: str) -> List[Tuple[str, str, int, str]]:
        out = self._run(
            [
                "-t",
                "-f",
                "BSSID,SSID,SIGNAL,SECURITY",
                "device",
                "wifi",
                "list",
                "ifname",
                ifname,
                "--rescan",
                rescan,
            ]
        )
        aps = []
        for line in out.splitlines():
            if not line.strip():
                continue
            parts = split_terse(line)
            while len(parts) < 4:
                parts.append("")
            bssid, ssid, signal_raw, security = parts[:4]
            aps.append((bssid.strip().upper(), ssid, _parse_signal(signal_raw), security.strip()))
        return aps

    def ssids(self, rescan: str = "auto") -> Tuple[List[SSID], Dict[str, str], Dict[str, str]]:
        """
        Scan every managed wifi device and collapse access points that broadcast
        the same name.

        Returns ``(ssids, ap2device, ssid2ap)``:
          - ssids: one record per network name, strongest first
          - ap2device: BSSID -> interface that saw it
          - ssid2ap: name -> BSSID of the strongest access point for that name

        On equal signal the first access point seen keeps the name. Hidden
        networks (empty name) are skipped.
        """
        best: Dict[str, SSID] = {}
        ap2device: Dict[str, str] = {}
        ssid2ap: Dict[str, str] = {}

        for dev in self.get_wifi_devices(self.get_devices()):
            if not dev.managed:
                # NetworkManager cannot scan on an interface it does not manage.
                continue
            for bssid, name, signal, security in self._access_points(dev.ifname, rescan):
                if not bssid:
                    continue
                ap2device.setdefault(bssid, dev.ifname)
                if not name.strip():
                    continue
                cur = best.get(name)
                if cur is None or signal > cur.signal:
                    best[name] = SSID(ssid=name, signal=signal, security=security)
                    ssid2ap[name] = bssid

        ssids = sorted(best.values(), key=lambda s: (-s.signal, s.ssid))
        return ssids, ap2device, ssid2ap

    # ------------------------------------------------------------------ connections

    def _delete_profile(self, profile: str) -> None:
        try:
            rc, out, err = self._exec(["connection", "delete", "id", profile])
        except Exception:
            log.warning("connect_profile_cleanup_failed", extra={"op": "connect"}, exc_info=True)
            return
        if rc != 0:
            # nmcli may not have created the profile at all; nothing left behind then.
            log.debug("connect_profile_cleanup_rc=%s %s", rc, (err or out).strip())

    def _drop_stale_profiles(self, ssid: str, keep: str) -> None:
        """
        Remove profiles from earlier joins to the same network so repeated
        portal joins do not pile up autoconnect profiles. Best effort.
        """
        try:
            out = self._run(["-t", "-f", "NAME", "connection", "show"])
            for line in out.splitlines():
                name = split_terse(line)[0].strip()
                if not name.startswith(PROFILE_PREFIX) or name == keep:
                    continue
                raw = self._run(["-g", "802-11-wireless.ssid", "connection", "show", "id", name])
                if split_terse(raw.strip())[0] != ssid:
                    continue
                self._delete_profile(name)
                log.info("stale_profile_removed", extra={"op": "connect", "ssid": ssid})
        except TransportError:
            log.warning("stale_profile_cleanup_failed", extra={"op": "connect", "ssid": ssid}, exc_info=True)

    def connect_ap(
        self,
        ssid: str,
        passphrase: str,
        ap2device: Dict[str, str],
        ssid2ap: Dict[str, str],
    ) -> Device:
        """
        Join ``ssid`` through the access point / device chosen by the last scan.

        Blocks until NetworkManager reports the outcome or ``connect_timeout_s``
        elapses. A failed attempt leaves no connection profile behind.
        """
        bssid = ssid2ap.get(ssid)
        if bssid is None:
            raise NotFound(f"network '{ssid}' not found", context={"ssid": ssid})
        ifname = ap2device.get(bssid)
        if ifname is None:
            raise NotFound(f"no device for network '{ssid}'", context={"ssid": ssid, "bssid": bssid})

        profile = PROFILE_PREFIX + uuid.uuid4().hex[:8]
        args = ["--wait", str(int(self.connect_timeout_s)), "device", "wifi", "connect", bssid]
        if passphrase:
            args += ["password", passphrase]
        args += ["ifname", ifname, "name", profile]

        log.info("connect_start", extra={"op": "connect", "ssid": ssid, "ifname": ifname})
        try:
            rc, out, err = self._exec(args, timeout_s=self.connect_timeout_s + self.timeout_s)
        except TransportError as exc:
            self._delete_profile(profile)
            if isinstance(exc.__cause__, subprocess.TimeoutExpired):
                raise ConnectFailed(f"timed out joining '{ssid}'", context={"ssid": ssid}) from exc
            raise

        if rc == _NMCLI_RC_NM_NOT_RUNNING:
            raise TransportError((err or out).strip() or "NetworkManager is not running")
        if rc != 0:
            self._delete_profile(profile)
            msg = (err or out).strip() or f"nmcli exited with {rc}"
            log.warning("connect_failed", extra={"op": "connect", "ssid": ssid, "ifname": ifname})
            raise ConnectFailed(msg, context={"ssid": ssid, "ifname": ifname, "rc": rc})

        log.info("connect_ok", extra={"op": "connect", "ssid": ssid, "ifname": ifname})
        self._drop_stale_profiles(ssid, keep=profile)
        for dev in self.get_devices():
            if dev.ifname == ifname:
                return dev
        return Device(ifname=ifname, kind=WIFI_KIND, state="connected", managed=True, connection=profile)

    def connected_wifi(self, wifi_devices: Iterable[Device]) -> bool:
        return any(d.connected for d in wifi_devices)

    def disconnect_wifi(self, wifi_devices: Iterable[Device]) -> Dict[str, str]:
        """
        Best effort: returns ``{ifname: error}`` for the devices that failed.
        """
        errors: Dict[str, str] = {}
        for dev in wifi_devices:
            if dev.connection is None and not dev.connected:
                continue
            try:
                self._run(["device", "disconnect", dev.ifname])
                log.info("wifi_disconnected", extra={"op": "disconnect", "ifname": dev.ifname})
            except TransportError as exc:
                errors[dev.ifname] = str(exc)
                log.warning("wifi_disconnect_failed", extra={"op": "disconnect", "ifname": dev.ifname})
        return errors

    # ------------------------------------------------------------------ managed flag

    def wifis_managed(self, wifi_devices: Iterable[Device]) -> Dict[str, bool]:
        managed = {d.ifname: d.managed for d in wifi_devices}
        if not managed:
            raise NotFound("no wifi devices found")
        return managed

    def set_iface_managed(self, ifname: str, managed: bool, wifi_devices: Iterable[Device]) -> None:
        if not any(d.ifname == ifname for d in wifi_devices):
            raise NotFound(f"wifi interface '{ifname}' not found", context={"ifname": ifname})
        self._run(["device", "set", ifname, "managed", "yes" if managed else "no"])
        log.info("iface_managed_set", extra={"op": "set_managed", "ifname": ifname, "result_code": managed})


def default_client(cfg: Optional[Dict[str, Any]] = None) -> NetworkManagerClient:
    cfg = cfg or load_config()
    return NetworkManagerClient(
        timeout_s=float(cfg.get("nmcli_timeout_s", 10.0)),
        connect_timeout_s=int(cfg.get("connect_timeout_s", 45)),
    )
