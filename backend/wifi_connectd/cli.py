"""wifi-connect command line tool."""
import argparse
import getpass
import os
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

from wifi_connectd import manual_mode, netman, wifiap
from wifi_connectd.config import load_config
from wifi_connectd.errors import WifiConnectError
from wifi_connectd.lifecycle import validate_ap_passphrase, validate_network_passphrase


class _NeedsRoot(Exception):
    pass


def _require_root() -> None:
    if os.geteuid() != 0:
        raise _NeedsRoot()


def _wifi_devices(c: netman.NetworkManagerClient):
    return c.get_wifi_devices(c.get_devices())


def cmd_stop(args, cfg) -> int:
    _require_root()
    manual_mode.enter_manual_mode(cfg)
    print("Entering MANUAL Mode. Wifi-connect has stopped managing state. Use 'start' to restore normal operations")
    return 0


def cmd_start(args, cfg) -> int:
    _require_root()
    manual_mode.leave_manual_mode(cfg)
    print("Entering NORMAL Mode.")
    return 0


def cmd_show_ap(args, cfg) -> int:
    _require_root()
    result = wifiap.default_client(cfg).show()
    for k in sorted(result):
        print(f"{k}: {result[k]}")
    return 0


def cmd_enable_ap(args, cfg) -> int:
    _require_root()
    wifiap.default_client(cfg).enable()
    print("AP enabled")
    return 0


def cmd_disable_ap(args, cfg) -> int:
    _require_root()
    wifiap.default_client(cfg).disable()
    print("AP disabled")
    return 0


def cmd_ssid(args, cfg) -> int:
    _require_root()
    wifiap.default_client(cfg).set_ssid(args.value)
    return 0


def cmd_passphrase(args, cfg) -> int:
    _require_root()
    validate_ap_passphrase(args.value, int(cfg["min_passphrase_len"]))
    wifiap.default_client(cfg).set_passphrase(args.value)
    return 0


def cmd_get_devices(args, cfg) -> int:
    for d in netman.default_client(cfg).get_devices():
        print(d)
    return 0


def cmd_get_wifi_devices(args, cfg) -> int:
    for d in _wifi_devices(netman.default_client(cfg)):
        print(d)
    return 0


def cmd_get_ssids(args, cfg) -> int:
    ssids, _, _ = netman.default_client(cfg).ssids()
    if ssids:
        print(",".join(s.ssid.strip() for s in ssids))
    return 0


def cmd_check_connected(args, cfg) -> int:
    c = netman.default_client(cfg)
    if c.connected_wifi(_wifi_devices(c)):
        print("Device is connected")
    else:
        print("Device is not connected")
    return 0


def cmd_check_connected_wifi(args, cfg) -> int:
    c = netman.default_client(cfg)
    if c.connected_wifi(_wifi_devices(c)):
        print("Device is connected to external wifi AP")
    else:
        print("Device is not connected to external wifi AP")
    return 0


def cmd_disconnect_wifi(args, cfg) -> int:
    c = netman.default_client(cfg)
    errors = c.disconnect_wifi(_wifi_devices(c))
    for ifname in sorted(errors):
        print(f"Error: {ifname}: {errors[ifname]}")
    return 1 if errors else 0


def cmd_wifis_managed(args, cfg) -> int:
    c = netman.default_client(cfg)
    for ifname, managed in sorted(c.wifis_managed(_wifi_devices(c)).items()):
        print(f"{ifname} : {'managed' if managed else 'unmanaged'}")
    return 0


def _set_managed(args, cfg, managed: bool) -> int:
    c = netman.default_client(cfg)
    c.set_iface_managed(args.iface, managed, _wifi_devices(c))
    return 0


def cmd_manage_iface(args, cfg) -> int:
    return _set_managed(args, cfg, True)


def cmd_unmanage_iface(args, cfg) -> int:
    return _set_managed(args, cfg, False)


def cmd_connect(args, cfg) -> int:
    c = netman.default_client(cfg)
    ssids, ap2device, ssid2ap = c.ssids()
    for s in ssids:
        print(f"    {s.ssid}")
    ssid = input("Connect to AP. Enter SSID: ").strip()
    pw = getpass.getpass("Enter passphrase: ").strip()
    validate_network_passphrase(pw)
    dev = c.connect_ap(ssid, pw, ap2device, ssid2ap)
    print(f"Connected {dev.ifname} to {ssid}")
    return 0


def cmd_server(args, cfg) -> int:
    from wifi_connectd.main import _install_signal_handlers, build_orchestrator
    from wifi_connectd.logging import setup_logging

    setup_logging()
    orch = build_orchestrator(cfg)
    servers = orch.servers
    if args.mode == "management":
        fut = servers.start_management_server()
    else:
        fut = servers.start_operational_server()
    try:
        fut.result(timeout=30)
    except Exception as exc:
        print(f"Could not start {args.mode} server: {exc}")
        return 1

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    try:
        while not stop_event.wait(0.5):
            pass
    finally:
        servers.shutdown()
    return 0


_COMMANDS: Dict[str, Callable[[argparse.Namespace, Dict[str, Any]], int]] = {
    "stop": cmd_stop,
    "start": cmd_start,
    "show-ap": cmd_show_ap,
    "enable-ap": cmd_enable_ap,
    "disable-ap": cmd_disable_ap,
    "ssid": cmd_ssid,
    "passphrase": cmd_passphrase,
    "get-devices": cmd_get_devices,
    "get-wifi-devices": cmd_get_wifi_devices,
    "get-ssids": cmd_get_ssids,
    "check-connected": cmd_check_connected,
    "check-connected-wifi": cmd_check_connected_wifi,
    "disconnect-wifi": cmd_disconnect_wifi,
    "wifis-managed": cmd_wifis_managed,
    "manage-iface": cmd_manage_iface,
    "unmanage-iface": cmd_unmanage_iface,
    "connect": cmd_connect,
    "server": cmd_server,
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="wifi-connect")
    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("stop", help="stop automatic control, leaving the system in its current state")
    sub.add_parser("start", help="resume automatic control from a clean state")
    sub.add_parser("show-ap", help="show AP configuration")
    sub.add_parser("enable-ap", help="enable the AP")
    sub.add_parser("disable-ap", help="disable the AP")
    sub.add_parser("ssid", help="set the AP ssid (restarts the AP if it is up)").add_argument("value")
    sub.add_parser("passphrase", help="set the AP passphrase (restarts the AP if it is up)").add_argument("value")
    sub.add_parser("get-devices")
    sub.add_parser("get-wifi-devices")
    sub.add_parser("get-ssids")
    sub.add_parser("check-connected")
    sub.add_parser("check-connected-wifi")
    sub.add_parser("disconnect-wifi")
    sub.add_parser("wifis-managed")
    sub.add_parser("manage-iface").add_argument("iface")
    sub.add_parser("unmanage-iface").add_argument("iface")
    sub.add_parser("connect", help="interactively join a network")
    sub.add_parser("server", help="run one HTTP service until Ctrl-C").add_argument(
        "mode", choices=("management", "operational")
    )
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_config()
    try:
        return _COMMANDS[args.command](args, cfg)
    except _NeedsRoot:
        print("Error: This command requires sudo")
    except WifiConnectError as exc:
        print(f"Error: {exc}")
    except (EOFError, KeyboardInterrupt):
        print()
    except OSError as exc:
        print(f"Error: {exc}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
