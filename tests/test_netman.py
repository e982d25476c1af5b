import os
import subprocess
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))

import wifi_connectd.netman as netman  # noqa: E402
from wifi_connectd.errors import ConnectFailed, NotFound, TransportError  # noqa: E402

DEVICE_STATUS = """\
wlan0:wifi:disconnected:--
wlan1:wifi:unmanaged:--
eth0:ethernet:connected:Wired connection 1
lo:loopback:unmanaged:--
p2p-dev-wlan0:wifi-p2p:disconnected:--
"""

WLAN0_APS = """\
AA\\:BB\\:CC\\:00\\:00\\:01:HomeNet:40:WPA2
AA\\:BB\\:CC\\:00\\:00\\:02:HomeNet:82:WPA2
AA\\:BB\\:CC\\:00\\:00\\:03:Cafe\\:Guest:60:
AA\\:BB\\:CC\\:00\\:00\\:04::70:WPA2
AA\\:BB\\:CC\\:00\\:00\\:05:Office:82:WPA1 WPA2
"""


class FakeNmcli:
    def __init__(self, device_status=DEVICE_STATUS, aps=None, connect_rc=0, connect_err="", profiles=None):
        self.profiles = dict(profiles or {})
        self.device_status = device_status
        self.aps = aps if aps is not None else {"wlan0": WLAN0_APS}
        self.connect_rc = connect_rc
        self.connect_err = connect_err
        self.calls = []

    def __call__(self, cmd, timeout_s):
        assert cmd[0] == "nmcli"
        args = cmd[1:]
        self.calls.append(args)
        if args[-2:] == ["device", "status"]:
            return 0, self.device_status, ""
        if args[:3] == ["-t", "-f", "BSSID,SSID,SIGNAL,SECURITY"]:
            ifname = args[args.index("ifname") + 1]
            return 0, self.aps.get(ifname, ""), ""
        if "connect" in args and "wifi" in args:
            return self.connect_rc, "", self.connect_err
        if args[:2] == ["connection", "delete"]:
            self.profiles.pop(args[-1], None)
            return 0, "", ""
        if args == ["-t", "-f", "NAME", "connection", "show"]:
            return 0, "".join(n.replace(":", "\\:") + "\n" for n in self.profiles), ""
        if args[:2] == ["-g", "802-11-wireless.ssid"]:
            return 0, self.profiles.get(args[-1], "").replace(":", "\\:") + "\n", ""
        if args[:2] == ["device", "disconnect"]:
            if args[2] == "wlan9":
                return 10, "", "Error: Device 'wlan9' not found."
            return 0, "", ""
        if args[:2] == ["device", "set"]:
            return 0, "", ""
        raise AssertionError(f"unexpected nmcli call: {args}")

    def calls_matching(self, word):
        return [c for c in self.calls if word in c]


def _client(fake):
    return netman.NetworkManagerClient(runner=fake, nmcli="nmcli", timeout_s=1.0, connect_timeout_s=30)


def test_split_terse_honours_escapes():
    assert netman.split_terse("AA\\:BB:My\\\\Net:50") == ["AA:BB", "My\\Net", "50"]
    assert netman.split_terse("a::b") == ["a", "", "b"]


def test_get_devices_is_lazy_and_live():
    fake = FakeNmcli()
    c = _client(fake)

    gen = c.get_devices()
    assert fake.calls == []

    devices = list(gen)
    assert [d.ifname for d in devices] == ["wlan0", "wlan1", "eth0", "lo", "p2p-dev-wlan0"]
    eth = devices[2]
    assert eth.connected and eth.connection == "Wired connection 1"
    assert devices[1].managed is False
    assert devices[0].managed is True and devices[0].connection is None

    list(c.get_devices())
    assert len(fake.calls) == 2


def test_get_wifi_devices_filters_kind():
    c = _client(FakeNmcli())
    wifi = c.get_wifi_devices(c.get_devices())
    assert [d.ifname for d in wifi] == ["wlan0", "wlan1"]


def test_ssids_dedupes_by_name_keeping_strongest():
    fake = FakeNmcli()
    ssids, ap2device, ssid2ap = _client(fake).ssids()

    names = [s.ssid for s in ssids]
    assert names == ["HomeNet", "Office", "Cafe:Guest"]
    assert len(names) == len(set(names))

    home = ssids[0]
    assert home.signal == 82
    assert ssid2ap["HomeNet"] == "AA:BB:CC:00:00:02"
    assert ap2device["AA:BB:CC:00:00:01"] == "wlan0"
    assert ap2device["AA:BB:CC:00:00:02"] == "wlan0"
    # hidden network: known AP, no name
    assert "AA:BB:CC:00:00:04" in ap2device
    assert "" not in ssid2ap

    cafe = ssids[2]
    assert cafe.secured is False
    assert home.secured is True

    # Unmanaged wlan1 is never scanned.
    scanned = [c[c.index("ifname") + 1] for c in fake.calls if "list" in c]
    assert scanned == ["wlan0"]


def test_ssids_tie_keeps_first_seen():
    aps = {"wlan0": "11\\:11:Same:50:WPA2\n22\\:22:Same:50:WPA2\n"}
    _, _, ssid2ap = _client(FakeNmcli(aps=aps)).ssids()
    assert ssid2ap["Same"] == "11:11"


def test_ssids_across_devices_maps_ap_to_owning_device():
    status = "wlan0:wifi:disconnected:--\nwlan1:wifi:disconnected:--\n"
    aps = {
        "wlan0": "11\\:11:Net:30:WPA2\n",
        "wlan1": "22\\:22:Net:90:WPA2\n",
    }
    ssids, ap2device, ssid2ap = _client(FakeNmcli(device_status=status, aps=aps)).ssids()
    assert len(ssids) == 1
    assert ssid2ap["Net"] == "22:22"
    assert ap2device["22:22"] == "wlan1"
    assert ap2device["11:11"] == "wlan0"


def test_connect_ap_unknown_name_issues_no_connection_request():
    fake = FakeNmcli()
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()
    fake.calls.clear()

    with pytest.raises(NotFound):
        c.connect_ap("Nowhere", "secretpass", ap2device, ssid2ap)
    assert fake.calls == []


def test_connect_ap_uses_strongest_ap_and_device():
    fake = FakeNmcli()
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()
    fake.calls.clear()

    dev = c.connect_ap("HomeNet", "secretpass", ap2device, ssid2ap)

    connect = fake.calls_matching("connect")[0]
    assert connect[:2] == ["--wait", "30"]
    assert connect[connect.index("connect") + 1] == "AA:BB:CC:00:00:02"
    assert connect[connect.index("password") + 1] == "secretpass"
    assert connect[connect.index("ifname") + 1] == "wlan0"
    assert connect[connect.index("name") + 1].startswith(netman.PROFILE_PREFIX)
    assert fake.calls_matching("delete") == []
    assert dev.ifname == "wlan0"


def test_connect_ap_replaces_earlier_profiles_for_same_network():
    fake = FakeNmcli(
        profiles={
            "wifi-connect-0ld00001": "HomeNet",
            "wifi-connect-0ld00002": "Office",
            "Wired connection 1": "",
        }
    )
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()

    c.connect_ap("HomeNet", "secretpass", ap2device, ssid2ap)

    assert fake.calls_matching("delete") == [["connection", "delete", "id", "wifi-connect-0ld00001"]]
    assert set(fake.profiles) == {"wifi-connect-0ld00002", "Wired connection 1"}


def test_connect_ap_open_network_sends_no_password():
    fake = FakeNmcli()
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()
    c.connect_ap("Cafe:Guest", "", ap2device, ssid2ap)
    assert "password" not in fake.calls_matching("connect")[0]


def test_connect_ap_failure_removes_profile():
    fake = FakeNmcli(connect_rc=4, connect_err="Error: Connection activation failed: Secrets were required")
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()

    with pytest.raises(ConnectFailed) as ei:
        c.connect_ap("HomeNet", "wrongpass1", ap2device, ssid2ap)
    assert "Secrets were required" in str(ei.value)

    connect = fake.calls_matching("connect")[0]
    profile = connect[connect.index("name") + 1]
    deletes = fake.calls_matching("delete")
    assert deletes == [["connection", "delete", "id", profile]]
    # No retry.
    assert len(fake.calls_matching("connect")) == 1


def test_connect_ap_timeout_is_connect_failure_and_cleans_up():
    fake = FakeNmcli()
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()

    def runner(cmd, timeout_s):
        if "connect" in cmd and "wifi" in cmd:
            raise subprocess.TimeoutExpired(cmd, timeout_s)
        return fake(cmd, timeout_s)

    c._runner = runner
    with pytest.raises(ConnectFailed):
        c.connect_ap("HomeNet", "secretpass", ap2device, ssid2ap)
    assert len(fake.calls_matching("delete")) == 1


def test_connect_ap_network_manager_down_is_transport_error():
    fake = FakeNmcli(connect_rc=8, connect_err="Error: NetworkManager is not running.")
    c = _client(fake)
    _, ap2device, ssid2ap = c.ssids()
    with pytest.raises(TransportError):
        c.connect_ap("HomeNet", "secretpass", ap2device, ssid2ap)


def test_connected_wifi():
    c = _client(FakeNmcli())
    assert c.connected_wifi(c.get_wifi_devices(c.get_devices())) is False

    c = _client(FakeNmcli(device_status="wlan0:wifi:connected:HomeNet\n"))
    assert c.connected_wifi(c.get_wifi_devices(c.get_devices())) is True


def test_disconnect_wifi_collects_errors_and_continues():
    status = "wlan9:wifi:connected:A\nwlan0:wifi:connected:B\nwlan1:wifi:disconnected:--\n"
    fake = FakeNmcli(device_status=status)
    c = _client(fake)

    errors = c.disconnect_wifi(c.get_wifi_devices(c.get_devices()))

    assert list(errors) == ["wlan9"]
    assert "not found" in errors["wlan9"]
    disconnected = [call[2] for call in fake.calls if call[:2] == ["device", "disconnect"]]
    assert disconnected == ["wlan9", "wlan0"]


def test_wifis_managed_and_set_iface_managed():
    fake = FakeNmcli()
    c = _client(fake)
    wifi = c.get_wifi_devices(c.get_devices())

    assert c.wifis_managed(wifi) == {"wlan0": True, "wlan1": False}

    c.set_iface_managed("wlan1", True, wifi)
    c.set_iface_managed("wlan0", False, wifi)
    sets = [call for call in fake.calls if call[:2] == ["device", "set"]]
    assert sets == [["device", "set", "wlan1", "managed", "yes"], ["device", "set", "wlan0", "managed", "no"]]


def test_managed_flag_errors():
    c = _client(FakeNmcli(device_status="eth0:ethernet:connected:Wired\n"))
    with pytest.raises(NotFound):
        c.wifis_managed(c.get_wifi_devices(c.get_devices()))

    c = _client(FakeNmcli())
    with pytest.raises(NotFound):
        c.set_iface_managed("eth0", False, c.get_wifi_devices(c.get_devices()))


def test_transport_failures():
    def missing(cmd, timeout_s):
        raise FileNotFoundError(cmd[0])

    with pytest.raises(TransportError):
        list(_client(missing).get_devices())

    def not_running(cmd, timeout_s):
        return 8, "", "Error: NetworkManager is not running."

    with pytest.raises(TransportError) as ei:
        _client(not_running).ssids()
    assert "not running" in str(ei.value)

    def slow(cmd, timeout_s):
        raise subprocess.TimeoutExpired(cmd, timeout_s)

    with pytest.raises(TransportError):
        list(_client(slow).get_devices())
