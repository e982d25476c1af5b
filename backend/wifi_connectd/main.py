import logging
import signal
import sys
import threading
from typing import Any, Dict, Optional

from wifi_connectd import netman, wifiap
from wifi_connectd.config import ensure_config_file, load_config
from wifi_connectd.handlers import ManagementHandler, OperationalHandler
from wifi_connectd.lifecycle import Orchestrator
from wifi_connectd.logging import setup_logging
from wifi_connectd.server import HttpService, ServerModeManager, ServiceMode

log = logging.getLogger("wifi_connectd.main")


def build_orchestrator(cfg: Optional[Dict[str, Any]] = None) -> Orchestrator:
    cfg = cfg or load_config()
    context: Dict[str, Any] = {"cfg": cfg}
    management = HttpService(
        "management", str(cfg["portal_host"]), int(cfg["portal_port"]), ManagementHandler, context
    )
    operational = HttpService(
        "operational", str(cfg["operational_host"]), int(cfg["operational_port"]), OperationalHandler, context
    )

    def _on_failure(mode: ServiceMode, exc: BaseException) -> None:
        log.error("service_failed:%s %s", mode.value, exc)

    servers = ServerModeManager(
        management,
        operational,
        on_failure=_on_failure,
        grace_s=float(cfg["shutdown_grace_s"]),
    )
    orch = Orchestrator(netman.default_client(cfg), wifiap.default_client(cfg), servers, cfg)
    context["orchestrator"] = orch
    return orch


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum, _frame):
        if stop_event.is_set():
            return
        try:
            sig_name = signal.Signals(signum).name
        except Exception:
            sig_name = str(signum)
        log.info("shutdown_signal:%s", sig_name)
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handler)


def main():
    setup_logging()
    ensure_config_file()
    cfg = load_config()

    orch = build_orchestrator(cfg)
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    orch.start_watchdog()
    log.info("daemon_started")
    try:
        while not stop_event.wait(0.5):
            pass
    finally:
        orch.stop_watchdog()
        try:
            orch.servers.shutdown()
        except Exception:
            log.exception("server_shutdown_failed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
