"""
Exception types shared across the relay.
"""


class WebhookRelayError(Exception):
    """Base class for relay errors."""


class StoreUnavailableError(WebhookRelayError):
    """The job store could not be reached while accepting a submission."""


class DeliveryError(WebhookRelayError):
    """A delivery attempt was not accepted by the receiver."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
