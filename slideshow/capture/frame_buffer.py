"""
Frame Buffer

Decodes Raw-encoded rectangles into an immutable RGB pixel grid.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

import numpy as np
from PIL import Image

from slideshow.capture.rfb import (
    FramebufferUpdate,
    PixelFormat,
    RawEncoding,
    Rectangle,
    UnsupportedEncoding,
)
from slideshow.errors import DecodeError

OPAQUE = 255


@dataclass(frozen=True, eq=False)
class FrameBuffer:
    """
    A decoded frame.

    ``pixels`` has shape (height, width, 3), dtype uint8, and is read-only.
    """
    width: int
    height: int
    pixels: np.ndarray

    def pixel(self, x: int, y: int) -> Tuple[int, int, int]:
        """RGB value at column x, row y."""
        r, g, b = self.pixels[y, x]
        return int(r), int(g), int(b)

    def to_image(self) -> Image.Image:
        """RGBA image with alpha fixed at opaque."""
        alpha = np.full((self.height, self.width, 1), OPAQUE, dtype=np.uint8)
        return Image.fromarray(np.concatenate([self.pixels, alpha], axis=2))


def decode_raw(
    width: int,
    height: int,
    samples: Union[np.ndarray, Sequence[Tuple[int, int, int]]]
) -> FrameBuffer:
    """
    Lay out ``width * height`` RGB samples row-major.

    Sample ``i`` lands at ``(i % width, i // width)``. Any other sample
    count is an error, never a partial frame.
    """
    if width <= 0 or height <= 0:
        raise DecodeError(f"empty rectangle {width}x{height}")

    samples = np.asarray(samples, dtype=np.uint8)
    if samples.ndim != 2 or samples.shape[1] != 3:
        raise DecodeError(f"expected RGB triples, got array of shape {samples.shape}")

    expected = width * height
    if samples.shape[0] != expected:
        raise DecodeError(
            f"{width}x{height} rectangle needs {expected} samples, got {samples.shape[0]}"
        )

    pixels = samples.reshape(height, width, 3).copy()
    pixels.flags.writeable = False
    return FrameBuffer(width, height, pixels)


def unpack_pixels(data: bytes, pixel_format: PixelFormat) -> np.ndarray:
    """
    Split raw pixel values into (N, 3) uint8 RGB samples.

    Channels are scaled to 0-255 only when the format's max differs from 255.
    """
    if not pixel_format.true_colour:
        raise DecodeError("colour-map pixel formats are not supported")

    bpp = pixel_format.bytes_per_pixel
    if bpp not in (1, 2, 4):
        raise DecodeError(f"unsupported pixel size of {pixel_format.bits_per_pixel} bits")
    if len(data) % bpp:
        raise DecodeError(f"{len(data)} bytes is not a whole number of {bpp}-byte pixels")

    order = '>' if pixel_format.big_endian else '<'
    values = np.frombuffer(data, dtype=np.dtype(f'{order}u{bpp}')).astype(np.uint32)

    channels = []
    for channel_max, shift in (
        (pixel_format.red_max, pixel_format.red_shift),
        (pixel_format.green_max, pixel_format.green_shift),
        (pixel_format.blue_max, pixel_format.blue_shift),
    ):
        channel = (values >> shift) & channel_max
        if channel_max == 0:
            channel = np.zeros_like(values)
        elif channel_max != 255:
            channel = channel * 255 // channel_max
        channels.append(channel)

    return np.stack(channels, axis=-1).astype(np.uint8)


def decode_rectangle(rect: Rectangle, pixel_format: PixelFormat) -> FrameBuffer:
    encoding = rect.encoding
    if isinstance(encoding, UnsupportedEncoding):
        raise DecodeError(f"unsupported rectangle encoding {encoding.code}")
    if isinstance(encoding, RawEncoding):
        return decode_raw(rect.width, rect.height, unpack_pixels(encoding.data, pixel_format))
    raise DecodeError(f"unknown rectangle encoding {type(encoding).__name__}")


def decode_update(update: FramebufferUpdate, pixel_format: PixelFormat) -> FrameBuffer:
    """Decode the first rectangle of an update; the rest are ignored."""
    if not update.rectangles:
        raise DecodeError("framebuffer update carried no rectangles")
    return decode_rectangle(update.rectangles[0], pixel_format)
