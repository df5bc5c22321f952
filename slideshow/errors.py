"""
Error types.

Capture errors are per host and never stop a scan. Everything else
derived from SlideshowError is fatal to the run.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Why a single capture failed."""
    CONNECT_ERROR = "connect_error"
    HANDSHAKE_ERROR = "handshake_error"
    REQUEST_ERROR = "request_error"
    TIMEOUT = "timeout"
    DECODE_ERROR = "decode_error"
    WRITE_ERROR = "write_error"


class SlideshowError(Exception):
    """Base class for all errors raised by this package."""


class CaptureError(SlideshowError):
    """A capture of one host failed."""

    kind: ErrorKind = ErrorKind.HANDSHAKE_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConnectError(CaptureError):
    kind = ErrorKind.CONNECT_ERROR


class HandshakeError(CaptureError):
    kind = ErrorKind.HANDSHAKE_ERROR


class RequestError(CaptureError):
    kind = ErrorKind.REQUEST_ERROR


class CaptureTimeout(CaptureError):
    kind = ErrorKind.TIMEOUT


class DecodeError(CaptureError):
    kind = ErrorKind.DECODE_ERROR


class ProtocolError(SlideshowError):
    """The peer sent something that is not valid RFB for this client."""


class DiscoveryError(SlideshowError):
    """The host discovery service failed; the scan cannot go on."""


class OutputDirectoryError(SlideshowError):
    """The dump directory could not be created."""


class ConfigError(SlideshowError):
    """The configuration file could not be loaded."""
