"""
Data types shared by the capture engine and the scan orchestrator.
"""

import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Union

from PIL import Image

from slideshow.errors import ErrorKind

DEFAULT_VNC_PORT = 5900

_UNSAFE_FILENAME_CHARS = re.compile(r'[^A-Za-z0-9._-]')


@dataclass(frozen=True)
class HostAddress:
    """A VNC endpoint to capture."""
    host: str
    port: int = DEFAULT_VNC_PORT

    def __str__(self) -> str:
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def identity(self) -> str:
        """Host part, safe to use inside a filename."""
        return _UNSAFE_FILENAME_CHARS.sub('_', self.host)

    @classmethod
    def parse(cls, text: str, default_port: int = DEFAULT_VNC_PORT) -> "HostAddress":
        """
        Parse ``host``, ``host:port`` or ``[v6addr]:port``.

        A bare IPv6 address (more than one colon, no brackets) keeps the
        default port.
        """
        text = text.strip()
        if not text:
            raise ValueError("empty host address")

        if text.startswith('['):
            host, sep, rest = text[1:].partition(']')
            if not sep:
                raise ValueError(f"unterminated IPv6 address: {text}")
            if not rest:
                return cls(host, default_port)
            if not rest.startswith(':'):
                raise ValueError(f"invalid host address: {text}")
            return cls(host, int(rest[1:]))

        if text.count(':') == 1:
            host, port = text.split(':')
            return cls(host, int(port))

        return cls(text, default_port)


@dataclass(frozen=True)
class CaptureSuccess:
    """One frame grabbed from a host."""
    host: HostAddress
    image: Image.Image
    output_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return True

    def with_output_path(self, path: Path) -> "CaptureSuccess":
        return replace(self, output_path=path)


@dataclass(frozen=True)
class CaptureFailure:
    """A capture that produced no frame."""
    host: HostAddress
    error_kind: ErrorKind
    detail: str

    @property
    def ok(self) -> bool:
        return False


CaptureResult = Union[CaptureSuccess, CaptureFailure]


@dataclass(frozen=True)
class ScanEvent:
    """One outcome line of a scan: ``info`` for a dump, ``error`` otherwise."""
    level: str
    host: HostAddress
    message: str
    kind: Optional[ErrorKind] = None


@dataclass
class ScanSummary:
    """Counters for a finished scan."""
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    files: List[Path] = field(default_factory=list)
