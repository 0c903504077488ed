# xui/errors.py


class XUIError(Exception):
    """Base error of the panel. ``kind`` is the stable name shown to API callers."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NotFound(XUIError):
    kind = "not-found"
    status_code = 404


class Conflict(XUIError):
    kind = "conflict"
    status_code = 409


class InvalidSettings(XUIError):
    kind = "invalid-settings"
    status_code = 400


class InvalidInbound(XUIError):
    kind = "invalid-inbound"
    status_code = 400


class InvalidDB(XUIError):
    kind = "invalid-db"
    status_code = 400


class XrayUnavailable(XUIError):
    kind = "unavailable"
    status_code = 503


class Timeout(XrayUnavailable):
    kind = "timeout"
    status_code = 504


class Unsupported(XrayUnavailable):
    kind = "unsupported"
    status_code = 501


class SpawnFailed(XUIError):
    kind = "spawn-failed"


class AlreadyRunning(XUIError):
    kind = "already-running"
    status_code = 409


class NotRunning(XUIError):
    kind = "not-running"
    status_code = 409


class IOFailed(XUIError):
    kind = "io-failed"
