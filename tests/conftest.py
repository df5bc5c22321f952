"""
Shared test fixtures: a scripted VNC server on localhost.
"""

import asyncio
import struct
from typing import List, Optional, Sequence, Tuple

import pytest

# What the fake server announces in ServerInit; the client overrides it
# with SetPixelFormat right away.
SERVER_PIXEL_FORMAT = struct.pack('!BBBBHHHBBB3x', 32, 24, 0, 1, 255, 255, 255, 16, 8, 0)


class FakeVNCServer:
    """
    Minimal scripted RFB server.

    Speaks 3.3, 3.7 or 3.8 depending on ``version``, answers the first
    update request with one rectangle built from ``pixels`` and records
    what the client sent. ``stall`` makes it go silent at a given point:
    ``'banner'`` (before anything), ``'handshake'`` (after the version
    exchange) or ``'update'`` (never answers the update request).
    """

    def __init__(
        self,
        width: int = 4,
        height: int = 2,
        pixels: Optional[Sequence[Tuple[int, int, int]]] = None,
        version: bytes = b'RFB 003.008\n',
        security: Sequence[int] = (1,),
        stall: Optional[str] = None,
        encoding: int = 0,
        truncate: bool = False,
        rectangles: int = 1,
        before_update: bytes = b'',
        name: bytes = b'fake desktop',
        rect_size: Optional[Tuple[int, int]] = None,
    ):
        self.width = width
        self.height = height
        self.pixels = list(pixels) if pixels is not None else [(0, 0, 0)] * (width * height)
        self.version = version
        self.security = list(security)
        self.stall = stall
        self.encoding = encoding
        self.truncate = truncate
        self.rectangles = rectangles
        self.before_update = before_update
        self.name = name
        self.rect_size = rect_size

        self.client_closed = asyncio.Event()
        self.connections = 0
        self.shared_flag: Optional[int] = None
        self.client_pixel_format: Optional[bytes] = None
        self.client_encodings: List[int] = []
        self.requests: List[Tuple[int, ...]] = []

        self._server: Optional[asyncio.AbstractServer] = None
        self._writers = set()

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def __aenter__(self) -> 'FakeVNCServer':
        self._server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        return self

    async def __aexit__(self, *exc):
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        try:
            await asyncio.wait_for(self._server.wait_closed(), 2)
        except asyncio.TimeoutError:
            pass

    def raw_payload(self) -> bytes:
        """Pixels in the 32bpp little-endian layout the client asks for."""
        return b''.join(bytes((b, g, r, 0)) for r, g, b in self.pixels)

    def update_message(self) -> bytes:
        header = struct.pack('!BxH', 0, self.rectangles)
        if self.rect_size is not None:
            # Rectangle that disagrees with the size announced in ServerInit
            width, height = self.rect_size
            rect = struct.pack('!HHHHi', 0, 0, width, height, self.encoding)
            return header + rect + b'\x00' * (width * height * 4)
        rect = struct.pack('!HHHHi', 0, 0, self.width, self.height, self.encoding)
        payload = self.raw_payload() if self.encoding == 0 else b'\x00' * 16
        if self.truncate:
            payload = payload[:len(payload) // 2]
        return header + rect + payload

    async def _wait_for_close(self, reader: asyncio.StreamReader):
        while await reader.read(1024):
            pass

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.connections += 1
        self._writers.add(writer)
        try:
            if self.stall == 'banner':
                await self._wait_for_close(reader)
                return

            writer.write(self.version)
            await writer.drain()
            client_version = await reader.readexactly(12)

            if self.stall == 'handshake':
                await self._wait_for_close(reader)
                return

            if self.version == b'RFB 003.003\n':
                writer.write(struct.pack('!I', self.security[0]))
                await writer.drain()
                if self.security[0] != 1:
                    await self._wait_for_close(reader)
                    return
            else:
                writer.write(bytes([len(self.security)]) + bytes(self.security))
                await writer.drain()
                if 1 not in self.security:
                    await self._wait_for_close(reader)
                    return
                await reader.readexactly(1)
                if client_version == b'RFB 003.008\n':
                    writer.write(struct.pack('!I', 0))

            self.shared_flag = (await reader.readexactly(1))[0]

            writer.write(
                struct.pack('!HH', self.width, self.height)
                + SERVER_PIXEL_FORMAT
                + struct.pack('!I', len(self.name)) + self.name
            )
            await writer.drain()

            set_pixel_format = await reader.readexactly(20)
            self.client_pixel_format = set_pixel_format[4:]
            header = await reader.readexactly(4)
            (count,) = struct.unpack('!H', header[2:])
            self.client_encodings = [
                code for (code,) in struct.iter_unpack('!i', await reader.readexactly(4 * count))
            ]

            self.requests.append(struct.unpack('!BBHHHH', await reader.readexactly(10)))

            if self.stall != 'update':
                writer.write(self.before_update + self.update_message())
                await writer.drain()
                if self.truncate:
                    return

            await self._wait_for_close(reader)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self.client_closed.set()
            self._writers.discard(writer)
            writer.close()


@pytest.fixture
def fake_vnc():
    """The FakeVNCServer class, for use as ``async with fake_vnc(...) as server``."""
    return FakeVNCServer
