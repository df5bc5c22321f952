"""
VNC Screen Capturer

Grabs a single frame from a VNC server over a fresh connection.

Every step (connect, handshake, update request, waiting for the update)
is raced against its own timer, so a silent or slow server costs at most
a few step budgets and never stalls the caller.
"""

import asyncio
import time
from typing import Optional

from slideshow.capture import rfb
from slideshow.capture.frame_buffer import FrameBuffer, decode_update
from slideshow.errors import (
    CaptureError,
    CaptureTimeout,
    ConnectError,
    DecodeError,
    HandshakeError,
    ProtocolError,
    RequestError,
)
from slideshow.models import (
    DEFAULT_VNC_PORT,
    CaptureFailure,
    CaptureResult,
    CaptureSuccess,
    HostAddress,
)
from slideshow.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_STEP_TIMEOUT = 10.0
CLOSE_TIMEOUT = 2.0


class CaptureSession:
    """
    Per-capture connection state.

    Holds the stream pair, what the server announced in ServerInit, and a
    single slot for the framebuffer update. Owned by one capture; closed
    when that capture ends.
    """

    def __init__(
        self,
        host: HostAddress,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        pixel_format: Optional[rfb.PixelFormat] = None
    ):
        self.host = host
        self.reader = reader
        self.writer = writer
        self.pixel_format = pixel_format or rfb.PixelFormat()

        self.version: Optional[rfb.Version] = None
        self.server_init: Optional[rfb.ServerInit] = None
        self.update: Optional[rfb.FramebufferUpdate] = None
        self.closed = False

    @property
    def width(self) -> int:
        return self.server_init.width if self.server_init else 0

    @property
    def height(self) -> int:
        return self.server_init.height if self.server_init else 0

    async def handshake(self, shared: bool = True) -> rfb.ServerInit:
        """Negotiate version and security, exchange inits, set format and encodings."""
        banner = await self.reader.readexactly(12)
        self.version = rfb.negotiate_version(rfb.parse_version(banner))
        self.writer.write(rfb.version_banner(self.version))
        await self.writer.drain()

        await rfb.negotiate_security(self.reader, self.writer, self.version)

        self.writer.write(rfb.client_init(shared))
        await self.writer.drain()
        self.server_init = await rfb.read_server_init(self.reader)

        # Ask for the one layout and encoding the decoder handles
        self.writer.write(rfb.set_pixel_format(self.pixel_format))
        self.writer.write(rfb.set_encodings([rfb.ENCODING_RAW]))
        await self.writer.drain()

        return self.server_init

    async def request_update(self) -> None:
        """Request a full, non-incremental frame."""
        self.writer.write(rfb.framebuffer_update_request(False, 0, 0, self.width, self.height))
        await self.writer.drain()

    async def await_update(self) -> rfb.FramebufferUpdate:
        """Read server messages until the framebuffer update shows up."""
        while self.update is None:
            message = await rfb.read_server_message(
                self.reader, self.pixel_format, (self.width, self.height)
            )
            if isinstance(message, rfb.FramebufferUpdate):
                self.update = message
            else:
                logger.debug(f"{self.host}: skipping {type(message).__name__}")
        return self.update

    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True

        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            self.writer.transport.abort()
        except OSError as e:
            logger.debug(f"{self.host}: error while closing connection: {e}")


class VNCCapturer:
    """
    One-shot VNC frame grabber.

    Each capture opens its own connection and session; nothing is shared
    between concurrent captures.
    """

    def __init__(
        self,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        total_timeout: Optional[float] = None,
        shared: bool = True,
    ):
        """
        Initialize capturer.

        Args:
            step_timeout: Budget in seconds for each protocol step
            total_timeout: Optional deadline for the whole capture; each
                step gets whatever is left of it if that is less than
                step_timeout
            shared: Ask the server to keep other clients connected
        """
        self.step_timeout = step_timeout
        self.total_timeout = total_timeout
        self.shared = shared

    async def capture(self, host: HostAddress) -> CaptureResult:
        """
        Grab one frame from ``host``.

        Never raises for per-host problems; they come back as a
        CaptureFailure.
        """
        started = time.monotonic()
        try:
            frame = await self._grab(host, started)
        except CaptureError as e:
            logger.debug(f"{host}: capture failed ({e.kind.value}): {e}")
            return CaptureFailure(host, e.kind, str(e))

        logger.debug(f"{host}: captured {frame.width}x{frame.height} frame "
                     f"in {time.monotonic() - started:.2f}s")
        return CaptureSuccess(host, frame.to_image())

    async def _grab(self, host: HostAddress, started: float) -> FrameBuffer:
        reader, writer = await self._step(
            'connect', asyncio.open_connection(host.host, host.port), started, ConnectError
        )
        session = CaptureSession(host, reader, writer)
        try:
            server_init = await self._step(
                'handshake', session.handshake(self.shared), started, HandshakeError
            )
            logger.debug(f"{host}: RFB {session.version[0]}.{session.version[1]}, "
                         f"{server_init.width}x{server_init.height} '{server_init.name}'")

            await self._step('update request', session.request_update(), started, RequestError)
            update = await self._step('framebuffer update', session.await_update(), started, DecodeError)
        finally:
            await session.close()

        return decode_update(update, session.pixel_format)

    def _budget(self, started: float) -> float:
        if self.total_timeout is None:
            return self.step_timeout
        remaining = self.total_timeout - (time.monotonic() - started)
        return max(0.0, min(self.step_timeout, remaining))

    async def _step(self, name: str, coro, started: float, error_cls):
        """Await ``coro`` under the step budget, mapping failures to ``error_cls``."""
        budget = self._budget(started)
        try:
            return await asyncio.wait_for(coro, budget)
        except asyncio.TimeoutError:
            raise CaptureTimeout(f"{name} timed out after {budget:g}s") from None
        except asyncio.IncompleteReadError as e:
            raise error_cls(
                f"{name} failed: connection closed after {len(e.partial)} "
                f"of {e.expected} expected bytes"
            ) from e
        except (ProtocolError, OSError) as e:
            raise error_cls(f"{name} failed: {e}") from e


async def capture(
    host: str,
    port: int = DEFAULT_VNC_PORT,
    timeout: float = DEFAULT_STEP_TIMEOUT
) -> CaptureResult:
    """Grab one frame from ``host:port`` with ``timeout`` seconds per step."""
    return await VNCCapturer(step_timeout=timeout).capture(HostAddress(host, port))
