"""
Slideshow CLI

Dumps one screenshot from every unauthenticated VNC server a Shodan query
(or stream, or host list) turns up.
"""

import argparse
import asyncio
import os
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from slideshow.capture.vnc_capturer import VNCCapturer
from slideshow.errors import ConfigError, SlideshowError
from slideshow.fetcher import ShodanFetcher, ShodanStream, read_host_file
from slideshow.models import ScanSummary
from slideshow.orchestrator import Concurrency, ScanOrchestrator
from slideshow.utils.config import Config, load_config
from slideshow.utils.logger import get_logger, setup_logging
from slideshow.utils.screenshot_saver import ScreenshotSaver

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='slideshow',
        description='Grab one frame from every open VNC server found and dump it as PNG',
    )
    parser.add_argument('--config', help='YAML settings file (default: config/settings.yaml)')
    parser.add_argument('--dumpdir', help='screenshots will be dumped to this directory')
    parser.add_argument('--logfile', help='logfile location')
    parser.add_argument('--query', help='shodan query')
    parser.add_argument('--pages', type=int, help='result pages to retrieve')
    parser.add_argument('--port', type=int, help='VNC port to capture on each host')
    parser.add_argument('--timeout', type=float, help='seconds allowed for each protocol step')
    parser.add_argument('--total-timeout', type=float,
                        help='seconds allowed for a whole capture')
    parser.add_argument('--concurrency', choices=[c.value for c in Concurrency],
                        help='one task per result page or per host')
    parser.add_argument('--workers', type=int, help='max simultaneous captures (0 = no limit)')
    parser.add_argument('--log-level', help='DEBUG, INFO, WARNING or ERROR')
    parser.add_argument('--no-color', action='store_true', help='plain console output')

    source = parser.add_mutually_exclusive_group()
    source.add_argument('--stream', action='store_true',
                        help='follow the Shodan banner stream instead of searching')
    source.add_argument('--hosts-file', help='capture hosts listed in this file instead of searching')
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Let command line flags win over the settings file."""
    overrides = [
        (config.output, 'dump_dir', args.dumpdir),
        (config.logging, 'log_file', args.logfile),
        (config.logging, 'level', args.log_level),
        (config.discovery, 'query', args.query),
        (config.discovery, 'pages', args.pages),
        (config.scan, 'port', args.port),
        (config.scan, 'step_timeout', args.timeout),
        (config.scan, 'total_timeout', args.total_timeout),
        (config.scan, 'concurrency', args.concurrency),
        (config.scan, 'max_workers', args.workers),
    ]
    for section, name, value in overrides:
        if value is not None:
            setattr(section, name, value)
    if args.no_color:
        config.logging.colored = False
    if not config.discovery.api_key:
        config.discovery.api_key = os.environ.get('SHODAN_API_KEY', '')
    return config


async def run(config: Config, args: argparse.Namespace) -> ScanSummary:
    """Wire discovery, capture and output together and run one scan."""
    try:
        concurrency = Concurrency(config.scan.concurrency)
    except ValueError:
        raise ConfigError(f"unknown concurrency '{config.scan.concurrency}'") from None

    orchestrator = ScanOrchestrator(
        capturer=VNCCapturer(
            step_timeout=config.scan.step_timeout,
            total_timeout=config.scan.total_timeout,
        ),
        saver=ScreenshotSaver(config.output.dump_dir),
        concurrency=concurrency,
        max_workers=config.scan.max_workers,
    )

    signals = (signal.SIGINT, signal.SIGTERM) if sys.platform != 'win32' else ()
    loop = asyncio.get_running_loop()
    for signum in signals:
        loop.add_signal_handler(signum, orchestrator.stop)
    try:
        return await _scan(orchestrator, config, args)
    finally:
        for signum in signals:
            loop.remove_signal_handler(signum)


async def _scan(orchestrator: ScanOrchestrator, config: Config,
                args: argparse.Namespace) -> ScanSummary:
    discovery = config.discovery

    if args.hosts_file:
        hosts = read_host_file(args.hosts_file, default_port=config.scan.port)
        return await orchestrator.run_batch([hosts])

    if args.stream:
        stream = ShodanStream(
            api_key=discovery.api_key,
            ports=discovery.stream_ports,
            banner_filter=discovery.stream_filter,
            target_port=config.scan.port,
            stream_url=discovery.stream_url,
        )
        await stream.initialize()
        try:
            return await orchestrator.run_stream(stream.hosts())
        finally:
            await stream.shutdown()

    fetcher = ShodanFetcher(
        api_key=discovery.api_key,
        port=config.scan.port,
        base_url=discovery.base_url,
        timeout=discovery.timeout,
    )
    await fetcher.initialize()
    try:
        return await orchestrator.run_batch(fetcher.iter_pages(discovery.query, discovery.pages))
    finally:
        await fetcher.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point. Exit status is non-zero only for fatal errors."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = apply_overrides(load_config(args.config), args)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Fatal: {e}")
        return 1

    try:
        setup_logging(
            level=config.logging.level,
            log_file=config.logging.log_file,
            colored=config.logging.colored,
        )
    except OSError as e:
        setup_logging(level=config.logging.level, colored=config.logging.colored)
        logger.error(f"Fatal: cannot open log file {config.logging.log_file}: {e}")
        return 1

    try:
        asyncio.run(run(config, args))
    except SlideshowError as e:
        logger.error(f"Fatal: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return 130

    return 0
