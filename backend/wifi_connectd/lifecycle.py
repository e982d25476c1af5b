import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from wifi_connectd.errors import ValidationError, WifiConnectError
from wifi_connectd.manual_mode import is_manual_mode
from wifi_connectd.netman import SSID, Device, NetworkManagerClient
from wifi_connectd.server import ServerModeManager, ServiceMode
from wifi_connectd.wifiap import AccessPointClient

log = logging.getLogger("wifi_connectd.lifecycle")

_WATCHDOG_BACKOFF_MAX_S = 60.0

# IEEE 802.11i bounds for a WPA/WPA2 passphrase
WPA_PASSPHRASE_MIN = 8
WPA_PASSPHRASE_MAX = 63

_MANAGEMENT_MODES = (ServiceMode.STARTING_MANAGEMENT, ServiceMode.MANAGEMENT)
_OPERATIONAL_MODES = (ServiceMode.STARTING_OPERATIONAL, ServiceMode.OPERATIONAL)

Scan = Tuple[List[SSID], Dict[str, str], Dict[str, str]]


def validate_network_passphrase(passphrase: str) -> None:
    """Empty means an open network."""
    if not passphrase:
        return
    if not (WPA_PASSPHRASE_MIN <= len(passphrase) <= WPA_PASSPHRASE_MAX):
        raise ValidationError(
            f"passphrase must be {WPA_PASSPHRASE_MIN} to {WPA_PASSPHRASE_MAX} characters long"
        )


def validate_ap_passphrase(passphrase: str, min_len: int) -> None:
    if len(passphrase or "") < min_len:
        raise ValidationError(f"passphrase must be at least {min_len} chars long")


class Orchestrator:
    """
    Keeps the device in exactly one of two situations:

      - joined to an upstream network, AP off, status page up (operational)
      - AP on, interface handed to the AP daemon, captive portal up (management)

    Does nothing while the manual-mode flag file exists.
    """

    def __init__(
        self,
        netman: NetworkManagerClient,
        ap: AccessPointClient,
        servers: ServerModeManager,
        cfg: Dict[str, Any],
    ):
        self.netman = netman
        self.ap = ap
        self.servers = servers
        self.cfg = cfg
        self.last_connect_error: Optional[Dict[str, Any]] = None

        self._op_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._last_scan: Scan = ([], {}, {})
        self._watchdog_stop = threading.Event()
        self._watchdog_kick = threading.Event()
        self._watchdog_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ scanning

    def _wifi_devices(self) -> List[Device]:
        return self.netman.get_wifi_devices(self.netman.get_devices())

    def scan(self, rescan: str = "auto") -> Scan:
        result = self.netman.ssids(rescan=rescan)
        if result[0]:
            with self._scan_lock:
                self._last_scan = result
        return result

    def available_networks(self) -> List[SSID]:
        """
        Live scan when NetworkManager can still scan; while the AP owns the
        only interface, the networks seen before it was handed over.
        """
        ssids, _, _ = self.scan()
        if ssids:
            return ssids
        with self._scan_lock:
            return list(self._last_scan[0])

    # ------------------------------------------------------------------ modes

    def _ap_interface(self, devices: List[Device]) -> List[Device]:
        try:
            iface = self.ap.show().get("wifi.interface")
        except WifiConnectError:
            log.warning("ap_interface_unknown", exc_info=True)
            iface = None
        chosen = [d for d in devices if d.ifname == iface]
        return chosen or devices

    def _ensure_operational(self) -> None:
        if self.servers.running() in _MANAGEMENT_MODES:
            self.servers.shutdown_management_server()
        if self.ap.enabled():
            self.ap.disable()
        if self.servers.running() is ServiceMode.NONE:
            self.servers.start_operational_server()

    def _ensure_management(self, devices: List[Device]) -> None:
        if self.servers.running() in _OPERATIONAL_MODES:
            self.servers.shutdown_operational_server()

        # Remember what is around before NetworkManager loses the interface.
        if any(d.managed for d in devices):
            try:
                self.scan()
            except WifiConnectError:
                log.warning("pre_ap_scan_failed", exc_info=True)

        for dev in self._ap_interface(devices):
            if dev.managed:
                self.netman.set_iface_managed(dev.ifname, False, devices)
        if not self.ap.enabled():
            self.ap.enable()
        if self.servers.running() is ServiceMode.NONE:
            self.servers.start_management_server()

    def reconcile(self) -> str:
        with self._op_lock:
            return self._reconcile_impl()

    def _reconcile_impl(self) -> str:
        if is_manual_mode(self.cfg):
            return "manual"
        devices = self._wifi_devices()
        if self.netman.connected_wifi(devices):
            self._ensure_operational()
            return "operational"
        if any(d.state.startswith("connecting") for d in devices):
            # NetworkManager is mid-association; look again next round.
            return "connecting"
        self._ensure_management(devices)
        return "management"

    # ------------------------------------------------------------------ connect

    def connect(self, ssid: str, passphrase: str) -> Device:
        validate_network_passphrase(passphrase)
        with self._op_lock:
            return self._connect_impl(ssid, passphrase)

    def _connect_impl(self, ssid: str, passphrase: str) -> Device:
        log.info("connect_requested", extra={"op": "connect", "ssid": ssid})
        if self.servers.running() in _MANAGEMENT_MODES:
            self.servers.shutdown_management_server()

        try:
            if self.ap.enabled():
                self.ap.disable()
            devices = self._wifi_devices()
            for dev in devices:
                if not dev.managed:
                    self.netman.set_iface_managed(dev.ifname, True, devices)

            try:
                _, ap2device, ssid2ap = self.scan(rescan="yes")
            except WifiConnectError:
                # The interface was only just handed back; NetworkManager may
                # refuse to scan it yet.
                log.warning("pre_join_scan_failed", extra={"op": "connect", "ssid": ssid}, exc_info=True)
                ssid2ap = {}
            if ssid not in ssid2ap:
                with self._scan_lock:
                    _, ap2device, ssid2ap = self._last_scan
            dev = self.netman.connect_ap(ssid, passphrase, ap2device, ssid2ap)
        except Exception as exc:
            self.last_connect_error = (
                exc.detail() if isinstance(exc, WifiConnectError) else {"code": "error", "message": str(exc)}
            )
            log.warning("connect_failed_falling_back", extra={"op": "connect", "ssid": ssid})
            try:
                self._ensure_management(self._wifi_devices())
            except Exception:
                log.exception("management_restore_failed")
            raise

        self.last_connect_error = None
        self.servers.start_operational_server()
        return dev

    def connect_async(self, ssid: str, passphrase: str) -> threading.Thread:
        """
        Used by the portal: the request that asked for the connection is served
        by the management server this call is about to stop.
        """
        validate_network_passphrase(passphrase)

        def _worker():
            try:
                self.connect(ssid, passphrase)
            except WifiConnectError as exc:
                log.warning("connect_async_failed:%s", exc.code, extra={"ssid": ssid})
            except Exception:
                log.exception("connect_async_crashed")

        t = threading.Thread(target=_worker, name="wifi-connect-join", daemon=True)
        t.start()
        return t

    # ------------------------------------------------------------------ watchdog

    def _watchdog_loop(self) -> None:
        interval = float(self.cfg.get("watchdog_interval_s", 10.0))
        backoff_s = interval
        while not self._watchdog_stop.is_set():
            try:
                mode = self.reconcile()
                log.debug("reconciled:%s", mode)
                backoff_s = interval
            except Exception:
                log.exception("reconcile_failed")
                backoff_s = min(_WATCHDOG_BACKOFF_MAX_S, backoff_s * 2)
            self._watchdog_kick.wait(backoff_s)
            self._watchdog_kick.clear()

    def kick(self) -> None:
        self._watchdog_kick.set()

    def start_watchdog(self) -> None:
        if self._watchdog_thread and self._watchdog_thread.is_alive():
            return
        self._watchdog_stop.clear()
        self._watchdog_thread = threading.Thread(
            target=self._watchdog_loop, name="wifi-connect-watchdog", daemon=True
        )
        self._watchdog_thread.start()

    def stop_watchdog(self, timeout_s: float = 5.0) -> None:
        self._watchdog_stop.set()
        self._watchdog_kick.set()
        t = self._watchdog_thread
        if t is not None:
            t.join(timeout=timeout_s)
        self._watchdog_thread = None
