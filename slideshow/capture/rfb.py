"""
RFB Wire Protocol

Client side of the remote framebuffer protocol (RFC 6143) as far as a
one-shot screenshot needs it: version and security negotiation, the init
messages, the update request, and parsing of server messages.

Server messages are modelled as a closed set of dataclasses. Rectangle
encodings other than Raw come back as UnsupportedEncoding instead of
raising, so the caller decides what to do with them.
"""

import asyncio
import struct
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple, Union

from slideshow.errors import ProtocolError

Version = Tuple[int, int]

RFB_3_3: Version = (3, 3)
RFB_3_7: Version = (3, 7)
RFB_3_8: Version = (3, 8)

SECURITY_INVALID = 0
SECURITY_NONE = 1
SECURITY_VNC_AUTH = 2

ENCODING_RAW = 0

# Client to server message types
SET_PIXEL_FORMAT = 0
SET_ENCODINGS = 2
FRAMEBUFFER_UPDATE_REQUEST = 3

# Server to client message types
FRAMEBUFFER_UPDATE = 0
SET_COLOUR_MAP_ENTRIES = 1
BELL = 2
SERVER_CUT_TEXT = 3

# Upper bound for reason strings, desktop names and cut text.
MAX_STRING_LENGTH = 1 << 20

_PIXEL_FORMAT = struct.Struct('!BBBBHHHBBB3x')
_RECTANGLE = struct.Struct('!HHHHi')


@dataclass(frozen=True)
class PixelFormat:
    """The 16-byte PIXEL_FORMAT structure."""
    bits_per_pixel: int = 32
    depth: int = 24
    big_endian: bool = False
    true_colour: bool = True
    red_max: int = 255
    green_max: int = 255
    blue_max: int = 255
    red_shift: int = 16
    green_shift: int = 8
    blue_shift: int = 0

    @property
    def bytes_per_pixel(self) -> int:
        return self.bits_per_pixel // 8

    def pack(self) -> bytes:
        return _PIXEL_FORMAT.pack(
            self.bits_per_pixel, self.depth,
            int(self.big_endian), int(self.true_colour),
            self.red_max, self.green_max, self.blue_max,
            self.red_shift, self.green_shift, self.blue_shift,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "PixelFormat":
        (bpp, depth, big_endian, true_colour,
         red_max, green_max, blue_max,
         red_shift, green_shift, blue_shift) = _PIXEL_FORMAT.unpack(data)
        return cls(
            bits_per_pixel=bpp,
            depth=depth,
            big_endian=bool(big_endian),
            true_colour=bool(true_colour),
            red_max=red_max,
            green_max=green_max,
            blue_max=blue_max,
            red_shift=red_shift,
            green_shift=green_shift,
            blue_shift=blue_shift,
        )


@dataclass(frozen=True)
class ServerInit:
    width: int
    height: int
    pixel_format: PixelFormat
    name: str


@dataclass(frozen=True)
class RawEncoding:
    """Uncompressed pixels, row-major, in the session's pixel format."""
    data: bytes


@dataclass(frozen=True)
class UnsupportedEncoding:
    """A rectangle in an encoding this client does not decode."""
    code: int


RectEncoding = Union[RawEncoding, UnsupportedEncoding]


@dataclass(frozen=True)
class Rectangle:
    x: int
    y: int
    width: int
    height: int
    encoding: RectEncoding


@dataclass(frozen=True)
class FramebufferUpdate:
    """
    A framebuffer update.

    Only the first rectangle is read off the wire; ``announced`` is the
    number of rectangles the server said the message carries.
    """
    rectangles: Tuple[Rectangle, ...]
    announced: int


@dataclass(frozen=True)
class SetColourMapEntries:
    first_colour: int
    colours: Tuple[Tuple[int, int, int], ...]


@dataclass(frozen=True)
class Bell:
    pass


@dataclass(frozen=True)
class ServerCutText:
    text: str


ServerMessage = Union[FramebufferUpdate, SetColourMapEntries, Bell, ServerCutText]


# ---------------------------------------------------------------------------
# Handshake

def parse_version(banner: bytes) -> Version:
    """Parse a ``RFB xxx.yyy\\n`` ProtocolVersion banner."""
    if (len(banner) != 12 or not banner.startswith(b'RFB ')
            or banner[7:8] != b'.' or not banner.endswith(b'\n')):
        raise ProtocolError(f"not an RFB server (banner {banner!r})")
    try:
        return int(banner[4:7]), int(banner[8:11])
    except ValueError:
        raise ProtocolError(f"malformed RFB version {banner!r}") from None


def negotiate_version(server: Version) -> Version:
    """
    Pick the version to speak with a server.

    Vendor minors above 8 (Apple's 3.889) and newer majors get 3.8, the
    unofficial 3.4-3.6 get 3.3.
    """
    major, minor = server
    if major < 3:
        raise ProtocolError(f"unsupported RFB version {major}.{minor}")
    if major > 3 or minor >= 8:
        return RFB_3_8
    if minor == 7:
        return RFB_3_7
    return RFB_3_3


def version_banner(version: Version) -> bytes:
    return b'RFB %03d.%03d\n' % version


async def read_string(reader: asyncio.StreamReader, limit: int = MAX_STRING_LENGTH) -> str:
    """Read a u32 length-prefixed string."""
    (length,) = struct.unpack('!I', await reader.readexactly(4))
    if length > limit:
        raise ProtocolError(f"string of {length} bytes exceeds limit of {limit}")
    data = await reader.readexactly(length)
    return data.decode('utf-8', errors='replace')


async def negotiate_security(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    version: Version
) -> None:
    """
    Agree on the None security type or fail.

    Servers that only offer authenticated types are rejected; this client
    never sends credentials.
    """
    if version == RFB_3_3:
        (sec_type,) = struct.unpack('!I', await reader.readexactly(4))
        if sec_type == SECURITY_INVALID:
            raise ProtocolError(f"server refused connection: {await read_string(reader)}")
        if sec_type != SECURITY_NONE:
            raise ProtocolError(f"authentication required (security type {sec_type})")
        return

    count = (await reader.readexactly(1))[0]
    if count == 0:
        raise ProtocolError(f"server refused connection: {await read_string(reader)}")

    offered = list(await reader.readexactly(count))
    if SECURITY_NONE not in offered:
        raise ProtocolError(f"authentication required (security types {offered})")

    writer.write(bytes([SECURITY_NONE]))
    await writer.drain()

    # 3.7 skips SecurityResult for the None type
    if version >= RFB_3_8:
        (result,) = struct.unpack('!I', await reader.readexactly(4))
        if result != 0:
            raise ProtocolError(f"security handshake failed: {await read_string(reader)}")


async def read_server_init(reader: asyncio.StreamReader) -> ServerInit:
    header = await reader.readexactly(4 + _PIXEL_FORMAT.size)
    width, height = struct.unpack('!HH', header[:4])
    pixel_format = PixelFormat.unpack(header[4:])
    name = await read_string(reader)
    return ServerInit(width, height, pixel_format, name)


# ---------------------------------------------------------------------------
# Client messages

def client_init(shared: bool = True) -> bytes:
    return bytes([1 if shared else 0])


def set_pixel_format(pixel_format: PixelFormat) -> bytes:
    return struct.pack('!B3x', SET_PIXEL_FORMAT) + pixel_format.pack()


def set_encodings(encodings: Iterable[int]) -> bytes:
    encodings = list(encodings)
    return (struct.pack('!BxH', SET_ENCODINGS, len(encodings))
            + b''.join(struct.pack('!i', code) for code in encodings))


def framebuffer_update_request(incremental: bool, x: int, y: int, width: int, height: int) -> bytes:
    return struct.pack(
        '!BBHHHH', FRAMEBUFFER_UPDATE_REQUEST, int(incremental), x, y, width, height
    )


# ---------------------------------------------------------------------------
# Server messages

async def read_server_message(
    reader: asyncio.StreamReader,
    pixel_format: PixelFormat,
    framebuffer_size: Optional[Tuple[int, int]] = None
) -> ServerMessage:
    """
    Read one server message.

    ``pixel_format`` is the format the client asked for; it sizes Raw
    rectangle payloads. When ``framebuffer_size`` (width, height from
    ServerInit) is given, a rectangle reaching outside it is rejected
    before its payload is read.
    """
    msg_type = (await reader.readexactly(1))[0]

    if msg_type == FRAMEBUFFER_UPDATE:
        return await _read_framebuffer_update(reader, pixel_format, framebuffer_size)

    if msg_type == SET_COLOUR_MAP_ENTRIES:
        first, count = struct.unpack('!xHH', await reader.readexactly(5))
        data = await reader.readexactly(count * 6)
        colours = tuple(struct.iter_unpack('!HHH', data))
        return SetColourMapEntries(first, colours)

    if msg_type == BELL:
        return Bell()

    if msg_type == SERVER_CUT_TEXT:
        await reader.readexactly(3)
        return ServerCutText(await read_string(reader))

    raise ProtocolError(f"unknown server message type {msg_type}")


async def _read_framebuffer_update(
    reader: asyncio.StreamReader,
    pixel_format: PixelFormat,
    framebuffer_size: Optional[Tuple[int, int]] = None
) -> FramebufferUpdate:
    (count,) = struct.unpack('!xH', await reader.readexactly(3))
    if count == 0:
        return FramebufferUpdate(rectangles=(), announced=0)

    # Everything after the first rectangle is left unread; the session
    # is closed right after.
    x, y, width, height, code = _RECTANGLE.unpack(await reader.readexactly(_RECTANGLE.size))
    if framebuffer_size is not None:
        fb_width, fb_height = framebuffer_size
        if x + width > fb_width or y + height > fb_height:
            raise ProtocolError(
                f"rectangle {width}x{height}+{x}+{y} exceeds "
                f"{fb_width}x{fb_height} framebuffer"
            )
    if code == ENCODING_RAW:
        data = await reader.readexactly(width * height * pixel_format.bytes_per_pixel)
        encoding: RectEncoding = RawEncoding(data)
    else:
        encoding = UnsupportedEncoding(code)

    return FramebufferUpdate(
        rectangles=(Rectangle(x, y, width, height, encoding),),
        announced=count,
    )
