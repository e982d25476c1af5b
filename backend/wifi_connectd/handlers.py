import html
import logging
import uuid
from http.server import BaseHTTPRequestHandler
from typing import Dict, List, Tuple
from urllib.parse import parse_qs, urlsplit

from wifi_connectd.errors import ValidationError, WifiConnectError

log = logging.getLogger("wifi_connectd.handlers")

SERVER_VERSION = "wifi-connectd/0.1"

_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<style>
body{{font-family:sans-serif;margin:2em auto;max-width:32em;padding:0 1em;color:#222}}
label{{display:block;padding:.3em 0}} .err{{color:#b00}} .muted{{color:#777}}
input[type=password],input[type=text]{{width:100%;padding:.4em}} button{{margin-top:1em;padding:.5em 1.2em}}
</style></head>
<body><h1>{title}</h1>
{body}
</body></html>
"""

_MAX_FORM_BYTES = 16_384


def render_page(title: str, body: str) -> bytes:
    return _PAGE.format(title=html.escape(title), body=body).encode("utf-8")


def render_ssids(ssids, error: str = "") -> bytes:
    parts: List[str] = []
    if error:
        parts.append(f'<p class="err">{html.escape(error)}</p>')
    if not ssids:
        parts.append('<p class="muted">No networks found. Reload the page to scan again.</p>')
    parts.append('<form method="post" action="/connect">')
    for i, s in enumerate(ssids):
        checked = " checked" if i == 0 else ""
        lock = " &#128274;" if s.secured else ""
        parts.append(
            f'<label><input type="radio" name="ssid" value="{html.escape(s.ssid, quote=True)}"{checked}> '
            f"{html.escape(s.ssid)}{lock} <span class=\"muted\">{int(s.signal)}%</span></label>"
        )
    parts.append('<label>Passphrase <input type="password" name="pwd" autocomplete="off"></label>')
    parts.append("<button type=\"submit\">Connect</button></form>")
    return render_page("Select a Wi-Fi network", "\n".join(parts))


def render_connecting(ssid: str) -> bytes:
    body = (
        f"<p>Connecting to <b>{html.escape(ssid)}</b>.</p>"
        '<p class="muted">This access point will go away now. If the connection fails it comes '
        "back within a minute so you can try again.</p>"
    )
    return render_page("Connecting", body)


class _BaseHandler(BaseHTTPRequestHandler):
    server_version = SERVER_VERSION

    def log_message(self, format, *args):
        return

    @property
    def orchestrator(self):
        return self.server.context["orchestrator"]

    def _parse_url(self) -> Tuple[str, Dict[str, str]]:
        s = urlsplit(self.path)
        qs_raw = parse_qs(s.query or "", keep_blank_values=True)
        return s.path or "/", {k: v[0] for k, v in qs_raw.items() if v}

    def _cid(self) -> str:
        cid = self.headers.get("X-Correlation-Id")
        return cid.strip() if cid and cid.strip() else str(uuid.uuid4())

    def _send_common_headers(self, content_type: str, length: int):
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(length))
        self.send_header("Cache-Control", "no-store")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Referrer-Policy", "no-referrer")

    def _respond_raw(self, code: int, raw: bytes, content_type: str = "text/html; charset=utf-8"):
        self.send_response(code)
        self._send_common_headers(content_type, len(raw))
        self.end_headers()
        try:
            self.wfile.write(raw)
        except (BrokenPipeError, ConnectionResetError):
            return

    def _redirect(self, location: str):
        self.send_response(302)
        self.send_header("Location", location)
        self.send_header("Cache-Control", "no-store")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _read_form(self) -> Dict[str, str]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = 0
        if length <= 0:
            return {}
        if length > _MAX_FORM_BYTES:
            raise ValidationError("form too large")
        raw = self.rfile.read(length).decode("utf-8", "replace")
        return {k: v[0] for k, v in parse_qs(raw, keep_blank_values=True).items() if v}


class ManagementHandler(_BaseHandler):
    """Captive portal: pick a network, enter the passphrase."""

    def _ssids_page(self, code: int = 200, error: str = ""):
        try:
            ssids = self.orchestrator.available_networks()
        except WifiConnectError as exc:
            log.warning("portal_scan_failed:%s", exc.code)
            ssids = []
            error = error or f"Could not list networks: {exc}"
        self._respond_raw(code, render_ssids(ssids, error))

    def do_GET(self):
        cid = self._cid()
        path, _qs = self._parse_url()

        if path == "/healthz":
            self._respond_raw(200, b"ok\n", "text/plain; charset=utf-8")
            return

        if path == "/favicon.ico":
            self._respond_raw(204, b"", "text/plain; charset=utf-8")
            return

        log.info("request", extra={"correlation_id": cid, "method": "GET", "path": path})
        if path != "/":
            # Captive portal probes (generate_204, hotspot-detect.html, ...) land here.
            self._redirect("/")
            return
        self._ssids_page()

    def do_POST(self):
        cid = self._cid()
        path, _qs = self._parse_url()
        log.info("request", extra={"correlation_id": cid, "method": "POST", "path": path})

        if path != "/connect":
            self._redirect("/")
            return

        try:
            form = self._read_form()
            ssid = (form.get("ssid") or "").strip()
            if not ssid:
                raise ValidationError("no network selected")
            self.orchestrator.connect_async(ssid, form.get("pwd") or "")
        except ValidationError as exc:
            self._ssids_page(400, str(exc))
            return

        log.info("connect_scheduled", extra={"correlation_id": cid, "ssid": ssid})
        self._respond_raw(200, render_connecting(ssid))


class OperationalHandler(_BaseHandler):
    """Status page while the device is joined to an upstream network."""

    def _status_body(self, note: str = "") -> bytes:
        orch = self.orchestrator
        parts: List[str] = []
        if note:
            parts.append(f"<p>{html.escape(note)}</p>")
        try:
            devices = orch.netman.get_wifi_devices(orch.netman.get_devices())
        except WifiConnectError as exc:
            parts.append(f'<p class="err">Could not read device state: {html.escape(str(exc))}</p>')
            devices = []
        for d in devices:
            conn = html.escape(d.connection or "-")
            parts.append(f"<p><b>{html.escape(d.ifname)}</b>: {html.escape(d.state)} ({conn})</p>")
        parts.append(
            '<form method="post" action="/disconnect">'
            '<button type="submit">Disconnect and choose another network</button></form>'
        )
        return render_page("Wi-Fi status", "\n".join(parts))

    def do_GET(self):
        path, _qs = self._parse_url()
        if path == "/healthz":
            self._respond_raw(200, b"ok\n", "text/plain; charset=utf-8")
            return
        if path != "/":
            self._respond_raw(404, render_page("Not found", "<p>Nothing here.</p>"))
            return
        self._respond_raw(200, self._status_body())

    def do_POST(self):
        cid = self._cid()
        path, _qs = self._parse_url()
        log.info("request", extra={"correlation_id": cid, "method": "POST", "path": path})
        if path != "/disconnect":
            self._respond_raw(404, render_page("Not found", "<p>Nothing here.</p>"))
            return

        orch = self.orchestrator
        try:
            errors = orch.netman.disconnect_wifi(orch.netman.get_wifi_devices(orch.netman.get_devices()))
        except WifiConnectError as exc:
            self._respond_raw(502, self._status_body(f"Disconnect failed: {exc}"))
            return
        if errors:
            note = "Some interfaces could not be disconnected: " + ", ".join(sorted(errors))
            self._respond_raw(502, self._status_body(note))
            return
        orch.kick()
        self._respond_raw(
            200,
            render_page("Disconnected", "<p>The setup access point will come up shortly.</p>"),
        )
