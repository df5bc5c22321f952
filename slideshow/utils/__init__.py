"""
Utilities Module

- Configuration management
- Logging setup
- Screenshot file output
"""

from .config import Config, load_config
from .logger import setup_logging, get_logger
from .screenshot_saver import ScreenshotSaver

__all__ = ['Config', 'load_config', 'setup_logging', 'get_logger', 'ScreenshotSaver']
