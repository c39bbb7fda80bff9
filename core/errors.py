"""
Error taxonomy for the arrival poller.

- ConfigurationError: fatal, raised by ArrivalPoller.start()
- FetchError (UpstreamError / NetworkError): per stop, recoverable
- DispatchError: per notification, recoverable
"""


class ConfigurationError(RuntimeError):
    """Poller cannot start: missing schedule credential or messaging client."""


class FetchError(Exception):
    """Schedule query for a single stop failed."""

    def __init__(self, stop_id: str, message: str):
        super().__init__(f"{stop_id}: {message}")
        self.stop_id = stop_id


class UpstreamError(FetchError):
    """Feed answered, but not with a usable 200 response."""

    def __init__(self, stop_id: str, status_code: int | None, message: str = "upstream error"):
        super().__init__(stop_id, f"{message} (status={status_code})")
        self.status_code = status_code


class NetworkError(FetchError):
    """Timeout or connection failure talking to the feed."""


class DispatchError(Exception):
    """Messaging provider rejected or failed a send."""
