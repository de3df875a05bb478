"""Domain errors raised by linkpulse services.

Routes translate these into HTTP responses; background consumers log them.
"""


class LinkpulseError(Exception):
    """Base exception for linkpulse."""


class AddressTakenError(LinkpulseError):
    """Raised when a custom short address is already in use."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Short address '{address}' is already taken")


class StatsUnavailableError(LinkpulseError):
    """Raised when aggregate rows cannot be read to build a stats report."""

    def __init__(self, link_id: object, original_error: Exception | None = None):
        self.link_id = link_id
        self.original_error = original_error
        super().__init__(f"Stats for link '{link_id}' are unavailable")


class QueueUnavailableError(LinkpulseError):
    """Raised at start-up when the configured durable queue cannot be reached."""

    def __init__(self, backend: str):
        self.backend = backend
        super().__init__(f"Visit queue backend '{backend}' is unavailable")
