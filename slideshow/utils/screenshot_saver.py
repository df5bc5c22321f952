"""
Screenshot Saver - Writes captured frames into the dump directory.

Files are named ``<time_ns>_<host>.png``. Timestamps handed out by one
saver strictly increase, so two captures finishing in the same instant
still get different names.
"""

import asyncio
import os
import time
from pathlib import Path

from PIL import Image

from slideshow.errors import OutputDirectoryError
from slideshow.models import HostAddress
from slideshow.utils.logger import get_logger

logger = get_logger(__name__)


class ScreenshotSaver:
    """Names and writes screenshot files."""

    def __init__(self, dump_dir: str, extension: str = "png"):
        """
        Initialize screenshot saver.

        Args:
            dump_dir: Directory receiving one file per capture
            extension: Image file extension, also picks the encoder
        """
        self.dump_dir = Path(dump_dir)
        self.extension = extension
        self.saved_count = 0
        self._last_stamp = 0

    def ensure_dir(self) -> Path:
        """Create the dump directory if needed."""
        try:
            self.dump_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OutputDirectoryError(f"cannot create dump directory {self.dump_dir}: {e}") from e
        return self.dump_dir

    def next_stamp(self) -> int:
        """Nanosecond wall-clock timestamp, bumped past the previous one if needed."""
        stamp = time.time_ns()
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def path_for(self, host: HostAddress) -> Path:
        return self.dump_dir / f"{self.next_stamp()}_{host.identity}.{self.extension}"

    async def save(self, image: Image.Image, path: Path) -> Path:
        """
        Encode ``image`` to ``path`` off the event loop.

        The file only appears under its final name once fully written.
        """
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write, image, path)
        self.saved_count += 1
        logger.debug(f"Screenshot saved: {path}")
        return path

    def _write(self, image: Image.Image, path: Path) -> None:
        partial = path.with_name(path.name + '.part')
        try:
            image.save(partial, format=Image.registered_extensions()[f'.{self.extension}'])
            os.replace(partial, path)
        except Exception:
            partial.unlink(missing_ok=True)
            raise
