"""
Configuration Management

Handles loading of configuration from YAML files.
"""

import os
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from slideshow.errors import ConfigError
from slideshow.utils.logger import get_logger

logger = get_logger(__name__)

_ENV_REFERENCE = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$')


@dataclass
class ScanConfig:
    """Capture behaviour."""
    port: int = 5901
    step_timeout: float = 10.0
    total_timeout: Optional[float] = None
    concurrency: str = 'page'  # 'page' or 'host'
    max_workers: int = 0  # 0 means unbounded


@dataclass
class DiscoveryConfig:
    """Shodan discovery settings."""
    query: str = 'port:5901 authentication disabled'
    pages: int = 1
    api_key: str = ''
    base_url: str = 'https://api.shodan.io'
    stream_url: str = 'https://stream.shodan.io'
    stream_ports: List[int] = field(default_factory=lambda: [5901])
    stream_filter: str = 'authentication disabled'
    timeout: float = 30.0


@dataclass
class OutputConfig:
    dump_dir: str = '/tmp/vncdumps'


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    log_file: Optional[str] = 'slideshow.log'
    colored: bool = True


@dataclass
class Config:
    """Main configuration container."""
    scan: ScanConfig = field(default_factory=ScanConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Create Config from dictionary."""
        try:
            return cls(
                scan=ScanConfig(**(data.get('scan') or {})),
                discovery=DiscoveryConfig(**(data.get('discovery') or {})),
                output=OutputConfig(**(data.get('output') or {})),
                logging=LoggingConfig(**(data.get('logging') or {})),
            )
        except TypeError as e:
            raise ConfigError(f"invalid configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        """Convert Config to dictionary."""
        return asdict(self)


def substitute_env(obj: Any) -> Any:
    """Recursively replace ``${VAR}`` strings with environment values."""
    if isinstance(obj, str):
        match = _ENV_REFERENCE.match(obj)
        if match:
            return os.environ.get(match.group(1), '')
        return obj
    elif isinstance(obj, dict):
        return {k: substitute_env(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env(item) for item in obj]
    return obj


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, uses default locations.

    Returns:
        Config object with loaded settings.
    """
    if config_path is None:
        possible_paths = [
            Path('config/settings.yaml'),
            Path.home() / '.config' / 'slideshow' / 'settings.yaml',
        ]
        for path in possible_paths:
            if path.exists():
                config_path = str(path)
                break

    if not config_path:
        return Config()

    if not Path(config_path).exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return Config()

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read {config_path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    logger.debug(f"Configuration loaded from {config_path}")
    return Config.from_dict(substitute_env(data or {}))
