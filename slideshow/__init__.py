"""
VNC Slideshow

Finds VNC servers that accept unauthenticated sessions, grabs one frame
from each and dumps it as a PNG.
"""

__version__ = "0.1.0"
