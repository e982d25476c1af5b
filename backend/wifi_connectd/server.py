"""
Server mode manager.

Exactly one of two HTTP services may be up at a time: the captive portal
(management mode) or the status page (operational mode). Claiming the slot is
a quick check-and-set under the lock; binding and serving happen on a worker
thread so a slow or failing bind never holds the lock.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future
from http.server import ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Type

from wifi_connectd.errors import StateConflict

log = logging.getLogger("wifi_connectd.server")


class ServiceMode(enum.Enum):
    NONE = "none"
    STARTING_MANAGEMENT = "starting_management"
    MANAGEMENT = "management"
    STARTING_OPERATIONAL = "starting_operational"
    OPERATIONAL = "operational"


class _ServiceHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, handler_class, context: Dict[str, Any]):
        self.context = context
        self._inflight = 0
        self._idle = threading.Condition()
        super().__init__(server_address, handler_class)

    def process_request(self, request, client_address):
        # Counted on the accept thread so a request accepted right before
        # shutdown is already visible to wait_idle().
        with self._idle:
            self._inflight += 1
        super().process_request(request, client_address)

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            with self._idle:
                self._inflight -= 1
                self._idle.notify_all()

    def wait_idle(self, timeout_s: float) -> bool:
        deadline = time.monotonic() + max(0.0, timeout_s)
        with self._idle:
            while self._inflight > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True


class HttpService:
    """A startable/stoppable HTTP service bound to ``host:port``."""

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        handler_class: Type,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.host = host
        self.port = port
        self.handler_class = handler_class
        self.context: Dict[str, Any] = context if context is not None else {}
        self._lock = threading.Lock()
        self._server: Optional[_ServiceHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self):
        srv = self._server
        return srv.server_address if srv is not None else None

    def is_serving(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def start(self) -> None:
        """Bind and start serving. Raises OSError when the bind fails."""
        with self._lock:
            if self._server is not None:
                raise RuntimeError(f"{self.name} already running")
            server = _ServiceHTTPServer((self.host, self.port), self.handler_class, self.context)
            thread = threading.Thread(
                target=server.serve_forever,
                name=f"wifi-connect-{self.name}-http",
                daemon=True,
            )
            thread.start()
            self._server, self._thread = server, thread
        log.info("listening", extra={"mode": self.name, "bind": f"http://{self.host}:{server.server_address[1]}"})

    def stop(self, grace_s: float = 5.0) -> bool:
        """
        Stop accepting, give in-flight requests up to ``grace_s`` to finish, then
        release the socket. Returns False if requests were still running when the
        grace period ran out. Stopping a stopped service is a no-op.
        """
        with self._lock:
            server, thread = self._server, self._thread
            self._server, self._thread = None, None
        if server is None:
            return True

        server.shutdown()
        drained = server.wait_idle(grace_s)
        if not drained:
            log.warning("shutdown_grace_expired", extra={"mode": self.name})
        server.server_close()
        if thread is not None:
            thread.join(timeout=max(1.0, grace_s))
        log.info("stopped", extra={"mode": self.name})
        return drained


FailureCallback = Callable[[ServiceMode, BaseException], None]


class ServerModeManager:
    def __init__(
        self,
        management: HttpService,
        operational: HttpService,
        *,
        on_failure: Optional[FailureCallback] = None,
        grace_s: float = 5.0,
    ):
        self.management = management
        self.operational = operational
        self.on_failure = on_failure
        self.grace_s = grace_s
        self.last_error: Optional[BaseException] = None

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._mode = ServiceMode.NONE
        # Bumped on every claim and release so a start task can tell that its
        # slot was taken back while it was binding.
        self._claim = 0

    # ------------------------------------------------------------------ queries

    def running(self) -> ServiceMode:
        with self._lock:
            return self._mode

    def wait_for(self, mode: ServiceMode, timeout_s: float) -> bool:
        deadline = time.monotonic() + timeout_s
        with self._changed:
            while self._mode is not mode:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._changed.wait(remaining)
            return True

    def _set(self, mode: ServiceMode) -> None:
        # caller holds the lock
        self._mode = mode
        self._changed.notify_all()

    # ------------------------------------------------------------------ start

    def start_management_server(self) -> "Future[bool]":
        return self._start(ServiceMode.STARTING_MANAGEMENT, ServiceMode.MANAGEMENT, self.management)

    def start_operational_server(self) -> "Future[bool]":
        return self._start(ServiceMode.STARTING_OPERATIONAL, ServiceMode.OPERATIONAL, self.operational)

    def _start(self, starting: ServiceMode, steady: ServiceMode, service: HttpService) -> "Future[bool]":
        with self._lock:
            if self._mode is not ServiceMode.NONE:
                raise StateConflict(
                    f"cannot start {steady.value} server while {self._mode.value}",
                    context={"mode": self._mode.value, "requested": steady.value},
                )
            self._claim += 1
            claim = self._claim
            self._set(starting)

        log.info("server_starting", extra={"mode": steady.value})
        fut: "Future[bool]" = Future()
        threading.Thread(
            target=self._bring_up,
            args=(service, starting, steady, claim, fut),
            name=f"wifi-connect-start-{service.name}",
            daemon=True,
        ).start()
        return fut

    def _bring_up(
        self,
        service: HttpService,
        starting: ServiceMode,
        steady: ServiceMode,
        claim: int,
        fut: "Future[bool]",
    ) -> None:
        try:
            service.start()
        except Exception as exc:
            with self._lock:
                current = self._claim == claim
                if current:
                    if self._mode is starting:
                        self._set(ServiceMode.NONE)
                    self.last_error = exc
            if not current:
                # Released by a shutdown while binding.
                log.info("server_start_abandoned", extra={"mode": steady.value})
                fut.set_result(False)
                return
            log.error("server_start_failed", extra={"mode": steady.value}, exc_info=True)
            self._report_failure(steady, exc)
            fut.set_exception(exc)
            return

        with self._lock:
            published = self._claim == claim and self._mode is starting
            if published:
                self._set(steady)
                self.last_error = None

        if not published:
            # Shut down while we were binding: give the listener back.
            service.stop(0)
            log.info("server_start_abandoned", extra={"mode": steady.value})
        else:
            log.info("server_started", extra={"mode": steady.value})
        fut.set_result(published)

    def _report_failure(self, mode: ServiceMode, exc: BaseException) -> None:
        if self.on_failure is None:
            return
        try:
            self.on_failure(mode, exc)
        except Exception:
            log.exception("server_failure_callback_failed")

    # ------------------------------------------------------------------ shutdown

    def shutdown_management_server(self) -> None:
        self._shutdown(ServiceMode.STARTING_MANAGEMENT, ServiceMode.MANAGEMENT, self.management)

    def shutdown_operational_server(self) -> None:
        self._shutdown(ServiceMode.STARTING_OPERATIONAL, ServiceMode.OPERATIONAL, self.operational)

    def _shutdown(self, starting: ServiceMode, steady: ServiceMode, service: HttpService) -> None:
        with self._lock:
            if self._mode is ServiceMode.NONE:
                return
            if self._mode not in (starting, steady):
                raise StateConflict(
                    f"cannot stop {steady.value} server while {self._mode.value}",
                    context={"mode": self._mode.value, "requested": steady.value},
                )
            self._claim += 1
            claim = self._claim

        service.stop(self.grace_s)

        with self._lock:
            # A newer claim means someone else already moved the state on.
            if self._claim == claim:
                self._set(ServiceMode.NONE)
        log.info("server_shutdown", extra={"mode": steady.value})

    def shutdown(self) -> None:
        """Stop whichever server is up."""
        mode = self.running()
        if mode in (ServiceMode.STARTING_MANAGEMENT, ServiceMode.MANAGEMENT):
            self.shutdown_management_server()
        elif mode in (ServiceMode.STARTING_OPERATIONAL, ServiceMode.OPERATIONAL):
            self.shutdown_operational_server()
