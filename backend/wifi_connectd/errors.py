from typing import Any, Dict, Optional


class WifiConnectError(Exception):
    """Base error. ``code`` is a short stable token for logs and HTTP payloads."""

    code = "error"

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    def detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "context": self.context}


class StateConflict(WifiConnectError):
    """Requested server transition is not valid from the current mode."""

    code = "state_conflict"


class TransportError(WifiConnectError):
    """NetworkManager or the AP daemon is unreachable or answered with a failure."""

    code = "transport_error"


class NotFound(WifiConnectError):
    code = "not_found"


class ValidationError(WifiConnectError):
    code = "validation_error"


class ConnectFailed(WifiConnectError):
    """NetworkManager could not join the requested network."""

    code = "connect_failed"
