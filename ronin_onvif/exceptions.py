"""Exception hierarchy for ONVIF device sessions and event subscriptions."""

from typing import Optional, Sequence


class ONVIFError(Exception):
    """Base class for all errors raised by this library."""


class TransportError(ONVIFError):
    """A single request/response exchange with a device failed."""

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class TransientError(TransportError):
    """Timeout or connection problem; the same call may succeed later."""


class TransportTimeout(TransientError):
    """The device did not answer within the configured timeout."""


class ConnectionRefused(TransientError):
    """The device could not be connected to."""


class ProtocolFault(TransportError):
    """The device answered with a SOAP fault."""

    def __init__(
        self,
        code: Optional[str],
        detail: Optional[str] = None,
        subcodes: Sequence[str] = (),
        address: Optional[str] = None,
    ):
        message = f"SOAP fault {code}: {detail}" if detail else f"SOAP fault {code}"
        super().__init__(message, address=address)
        self.code = code
        self.detail = detail
        self.subcodes = tuple(subcodes)


class Unreachable(ONVIFError):
    """The device did not respond to capability discovery."""


class CapabilitiesMissing(ONVIFError):
    """The device responded but advertised no capabilities."""


class ServiceUnavailable(ONVIFError):
    """The requested capability was never advertised by the device."""

    def __init__(self, kind):
        super().__init__(f"Service not advertised by device: {kind}")
        self.kind = kind


class SubscriptionRejected(ONVIFError):
    """The device refused the subscription filter or lifetime."""


class SubscriptionError(ONVIFError):
    """A subscription worker was used incorrectly."""
