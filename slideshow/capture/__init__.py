"""
Screen Capture Module

Single-frame VNC capture: RFB handshake, one full update request, Raw
rectangle decoding.
"""

from .frame_buffer import FrameBuffer, decode_raw
from .vnc_capturer import CaptureSession, VNCCapturer, capture

__all__ = ['CaptureSession', 'FrameBuffer', 'VNCCapturer', 'capture', 'decode_raw']
