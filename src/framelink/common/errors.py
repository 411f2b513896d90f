"""Error taxonomy for FrameLink."""

from __future__ import annotations


class FrameLinkError(Exception):
    """Base error for FrameLink."""

    retryable: bool = False


# Transport


class TransportError(FrameLinkError):
    """Base transport error."""


class ConnectTimeout(TransportError):
    """Raised when the peripheral did not accept a connection in time."""

    retryable = True


class ConnectRejected(TransportError):
    """Raised when the platform stack refused the connection."""

    retryable = True


class WriteFailed(TransportError):
    """Raised when a characteristic write fails."""

    retryable = True


# Session


class PermissionDenied(FrameLinkError):
    """Raised when Bluetooth access is not permitted on this host."""


class DeviceNotFound(FrameLinkError):
    """Raised when scanning yields no usable peripheral."""

    retryable = True


class BondingFailed(FrameLinkError):
    """Raised when pairing fails. The session continues without a bond."""


class MtuNegotiationFailed(FrameLinkError):
    """Raised when the MTU exchange fails. The session falls back to the default MTU."""


class ServiceDiscoveryFailed(FrameLinkError):
    """Raised when the expected GATT service or characteristics are missing."""

    retryable = True


class ConnectionLost(FrameLinkError):
    """Raised when the link drops while the session is in use."""


class NotConnected(FrameLinkError):
    """Raised when sending is attempted while the session is not ready."""

    retryable = True


class ConnectionFailed(FrameLinkError):
    """Terminal connect failure after the retry policy is exhausted."""

    def __init__(self, message: str, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error


# Protocol


class ProtocolDecodeError(FrameLinkError):
    """Raised for malformed or short inbound packets."""


class PayloadTooLarge(FrameLinkError):
    """Raised when a payload does not fit the 16-bit length prefix."""


# Operations


class OperationTimeout(FrameLinkError):
    """Raised when an in-flight operation exceeds its time bound."""

    retryable = True


class OperationConflict(FrameLinkError):
    """Raised when an operation is submitted while another is active."""


class OperationFailed(FrameLinkError):
    """Raised when an operation still fails after all retries."""

    def __init__(
        self,
        message: str,
        operation: str,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


# Vision


class VisionApiError(FrameLinkError):
    """Raised when the vision endpoint rejects a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QueueFull(FrameLinkError):
    """Raised when the frame queue rejects a new frame."""
