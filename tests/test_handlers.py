import http.client
import os
import sys
from urllib.parse import urlencode

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../backend")))

from wifi_connectd.errors import TransportError  # noqa: E402
from wifi_connectd.handlers import ManagementHandler, OperationalHandler  # noqa: E402
from wifi_connectd.lifecycle import validate_network_passphrase  # noqa: E402
from wifi_connectd.netman import SSID, Device  # noqa: E402
from wifi_connectd.server import HttpService  # noqa: E402


class StubNetman:
    def __init__(self):
        self.disconnect_errors = {}
        self.disconnected = 0

    def get_devices(self):
        yield Device("wlan0", "wifi", "connected", True, "HomeNet")

    @staticmethod
    def get_wifi_devices(devices):
        return [d for d in devices if d.is_wifi]

    def disconnect_wifi(self, devices):
        self.disconnected += 1
        return dict(self.disconnect_errors)


class StubOrchestrator:
    def __init__(self):
        self.netman = StubNetman()
        self.networks = [SSID("HomeNet", 80, "WPA2"), SSID("<Cafe>", 40, "")]
        self.scan_error = None
        self.connects = []
        self.kicks = 0

    def available_networks(self):
        if self.scan_error:
            raise self.scan_error
        return self.networks

    def connect_async(self, ssid, passphrase):
        validate_network_passphrase(passphrase)
        self.connects.append((ssid, passphrase))

    def kick(self):
        self.kicks += 1


@pytest.fixture
def orch():
    return StubOrchestrator()


def _serve(handler_class, orch):
    svc = HttpService("test", "127.0.0.1", 0, handler_class, {"orchestrator": orch})
    svc.start()
    return svc


def _request(svc, method, path, form=None):
    conn = http.client.HTTPConnection("127.0.0.1", svc.address[1], timeout=5)
    try:
        body = urlencode(form).encode() if form is not None else None
        headers = {"Content-Type": "application/x-www-form-urlencoded"} if form is not None else {}
        conn.request(method, path, body=body, headers=headers)
        resp = conn.getresponse()
        return resp.status, dict(resp.getheaders()), resp.read().decode()
    finally:
        conn.close()


@pytest.fixture
def portal(orch):
    svc = _serve(ManagementHandler, orch)
    yield svc
    svc.stop(1.0)


@pytest.fixture
def status_page(orch):
    svc = _serve(OperationalHandler, orch)
    yield svc
    svc.stop(1.0)


def test_portal_lists_networks_escaped(portal):
    code, _headers, body = _request(portal, "GET", "/")
    assert code == 200
    assert 'value="HomeNet"' in body
    assert "&lt;Cafe&gt;" in body
    assert "<Cafe>" not in body


def test_portal_redirects_probes(portal):
    code, headers, _ = _request(portal, "GET", "/generate_204")
    assert code == 302
    assert headers["Location"] == "/"


def test_portal_healthz(portal):
    code, _, body = _request(portal, "GET", "/healthz")
    assert code == 200 and body == "ok\n"


def test_portal_connect_schedules_join(portal, orch):
    code, _, body = _request(portal, "POST", "/connect", {"ssid": "HomeNet", "pwd": "secretpass"})
    assert code == 200
    assert "Connecting to <b>HomeNet</b>" in body
    assert orch.connects == [("HomeNet", "secretpass")]


def test_portal_connect_rejects_bad_input(portal, orch):
    code, _, body = _request(portal, "POST", "/connect", {"pwd": "secretpass"})
    assert code == 400
    assert "no network selected" in body

    code, _, body = _request(portal, "POST", "/connect", {"ssid": "HomeNet", "pwd": "short"})
    assert code == 400
    assert "passphrase must be" in body
    assert orch.connects == []


def test_portal_scan_failure_is_shown(portal, orch):
    orch.scan_error = TransportError("NetworkManager is not running")
    code, _, body = _request(portal, "GET", "/")
    assert code == 200
    assert "Could not list networks" in body


def test_status_page_shows_devices(status_page):
    code, _, body = _request(status_page, "GET", "/")
    assert code == 200
    assert "wlan0" in body and "HomeNet" in body

    code, _, _ = _request(status_page, "GET", "/nope")
    assert code == 404


def test_status_page_disconnect(status_page, orch):
    code, _, _ = _request(status_page, "POST", "/disconnect")
    assert code == 200
    assert orch.netman.disconnected == 1
    assert orch.kicks == 1


def test_status_page_disconnect_errors(status_page, orch):
    orch.netman.disconnect_errors = {"wlan0": "boom"}
    code, _, body = _request(status_page, "POST", "/disconnect")
    assert code == 502
    assert "wlan0" in body
    assert orch.kicks == 0

