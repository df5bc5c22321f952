"""
Scan Orchestrator - Fans captures out over discovered hosts.

This is what drives a scan:
1. Takes hosts from discovery, either as a closed batch of pages or as an
   open stream
2. Runs one capture per host, concurrently
3. Writes a PNG for every frame grabbed
4. Emits exactly one event per host, success or failure

A failing host never stops the scan. Discovery errors and a dump
directory that cannot be created do.
"""

import asyncio
import contextlib
from enum import Enum
from typing import (
    AsyncIterable,
    AsyncIterator,
    Callable,
    Iterable,
    Optional,
    Sequence,
    Set,
    TypeVar,
    Union,
)

from slideshow.capture.vnc_capturer import VNCCapturer
from slideshow.errors import ErrorKind
from slideshow.models import (
    CaptureFailure,
    CaptureResult,
    CaptureSuccess,
    HostAddress,
    ScanEvent,
    ScanSummary,
)
from slideshow.utils.logger import get_logger
from slideshow.utils.screenshot_saver import ScreenshotSaver

logger = get_logger(__name__)

T = TypeVar('T')

Page = Sequence[HostAddress]


class Concurrency(Enum):
    """How captures of a batch are grouped into tasks."""
    PAGE = "page"  # one task per result page, its hosts one after another
    HOST = "host"  # one task per host


async def _aiter(source: Union[Iterable[T], AsyncIterable[T]]) -> AsyncIterator[T]:
    if hasattr(source, '__aiter__'):
        async for item in source:
            yield item
    else:
        for item in source:
            yield item


class ScanOrchestrator:
    """
    Runs captures for every discovered host.

    The capturer, the saver (and with it the dump directory) and the event
    sink are handed in; nothing is read from module globals.
    """

    def __init__(
        self,
        capturer: VNCCapturer,
        saver: ScreenshotSaver,
        concurrency: Concurrency = Concurrency.PAGE,
        max_workers: int = 0,
        on_event: Optional[Callable[[ScanEvent], None]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            capturer: Capture engine used for every host
            saver: Names and writes the output files
            concurrency: Task grouping for batch scans; streams always
                run one task per host
            max_workers: Cap on simultaneous captures, 0 for none
            on_event: Called with every ScanEvent after it is logged
        """
        self.capturer = capturer
        self.saver = saver
        self.concurrency = concurrency
        self.max_workers = max_workers
        self.on_event = on_event

        self.summary = ScanSummary()
        self._semaphore = asyncio.Semaphore(max_workers) if max_workers > 0 else None
        self._tasks: Set[asyncio.Task] = set()
        self._runner: Optional[asyncio.Task] = None
        self._stopping = False

    async def run_batch(self, pages: Union[Iterable[Page], AsyncIterable[Page]]) -> ScanSummary:
        """
        Capture every host of a closed batch.

        Each page is dispatched as soon as discovery hands it over. Returns
        once every launched capture has finished.
        """
        return await self._supervise(self._dispatch_pages(pages))

    async def run_stream(self, feed: Union[Iterable[HostAddress], AsyncIterable[HostAddress]]) -> ScanSummary:
        """
        Capture hosts from an open feed, each as soon as it arrives.

        Runs until the feed ends (then waits for in-flight captures) or
        stop() is called.
        """
        return await self._supervise(self._dispatch_feed(feed))

    def stop(self) -> None:
        """Stop the running scan and cancel in-flight captures."""
        self._stopping = True
        if self._runner is not None:
            self._runner.cancel()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _supervise(self, dispatch) -> ScanSummary:
        self.summary = ScanSummary()
        self._stopping = False
        self._runner = asyncio.current_task()
        try:
            self.saver.ensure_dir()
            await dispatch
            await self._drain()
        except asyncio.CancelledError:
            if not self._stopping:
                raise
            logger.info("Scan stopped")
        finally:
            dispatch.close()
            await self._cancel_all()
            self._runner = None

        logger.info(f"Scan finished: {self.summary.succeeded} captured, "
                    f"{self.summary.failed} failed of {self.summary.dispatched}")
        return self.summary

    async def _dispatch_pages(self, pages) -> None:
        page_count = 0
        async for page in _aiter(pages):
            page_count += 1
            if self.concurrency is Concurrency.PAGE:
                self._spawn(self._capture_page(list(page)))
            else:
                for host in page:
                    self._spawn(self._capture_host(host))
            logger.debug(f"Dispatched page {page_count} ({len(page)} hosts)")
        logger.info(f"Started with {self.in_flight} tasks over {page_count} pages")

    async def _dispatch_feed(self, feed) -> None:
        async for host in _aiter(feed):
            self._spawn(self._capture_host(host))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drain(self) -> None:
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    async def _cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _capture_page(self, page: Page) -> None:
        for host in page:
            await self._capture_host(host)

    async def _capture_host(self, host: HostAddress) -> None:
        self.summary.dispatched += 1
        path = self.saver.path_for(host)
        try:
            async with self._semaphore or contextlib.nullcontext():
                result = await self.capturer.capture(host)
            if result.ok:
                result = await self._write(result, path)
        except Exception as e:
            logger.exception(f"Unexpected error capturing {host}: {e}")
            self.summary.failed += 1
            self._emit(ScanEvent("error", host, f"{host} unexpected error: {e}"))
            return

        self._record(result)

    async def _write(self, result: CaptureSuccess, path) -> CaptureResult:
        try:
            await self.saver.save(result.image, path)
        except OSError as e:
            return CaptureFailure(result.host, ErrorKind.WRITE_ERROR, f"cannot write {path}: {e}")
        return result.with_output_path(path)

    def _record(self, result: CaptureResult) -> None:
        if result.ok:
            self.summary.succeeded += 1
            self.summary.files.append(result.output_path)
            self._emit(ScanEvent(
                "info", result.host,
                f"dumping screenshot from {result.host} to {result.output_path}"
            ))
        else:
            self.summary.failed += 1
            self._emit(ScanEvent(
                "error", result.host,
                f"{result.host} {result.error_kind.value}: {result.detail}",
                result.error_kind
            ))

    def _emit(self, event: ScanEvent) -> None:
        if event.level == "info":
            logger.info(event.message)
        else:
            logger.error(event.message)
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                logger.exception(f"Event handler failed for {event.host}: {e}")
