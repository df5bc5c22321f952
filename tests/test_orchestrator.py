"""
Tests for the scan orchestrator: fan-out, one event per host, output files.
"""

import asyncio
from unittest.mock import patch

import pytest
from PIL import Image

from slideshow.capture.vnc_capturer import VNCCapturer
from slideshow.errors import DiscoveryError, ErrorKind, OutputDirectoryError
from slideshow.models import CaptureFailure, CaptureSuccess, HostAddress
from slideshow.orchestrator import Concurrency, ScanOrchestrator
from slideshow.utils.screenshot_saver import ScreenshotSaver


class FakeCapturer:
    """Capturer stand-in: fails the hosts it is told to, grabs a 2x2 frame otherwise."""

    def __init__(self, failing=(), crashing=(), delay=0.0, hang=()):
        self.failing = set(failing)
        self.crashing = set(crashing)
        self.hang = set(hang)
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.seen = []

    async def capture(self, host):
        self.seen.append(host)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if host in self.hang:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if host in self.crashing:
                raise RuntimeError("boom")
            if host in self.failing:
                return CaptureFailure(host, ErrorKind.CONNECT_ERROR, "connection refused")
            return CaptureSuccess(host, Image.new('RGBA', (2, 2), (0, 128, 255, 255)))
        finally:
            self.active -= 1


def hosts(*octets, port=5901):
    return [HostAddress(f"10.0.0.{n}", port) for n in octets]


def make_orchestrator(tmp_path, capturer, **kwargs):
    events = []
    orchestrator = ScanOrchestrator(
        capturer=capturer,
        saver=ScreenshotSaver(str(tmp_path / "dumps")),
        on_event=events.append,
        **kwargs
    )
    return orchestrator, events


class TestRunBatch:
    """Test suite for closed batches of pages."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [Concurrency.PAGE, Concurrency.HOST])
    async def test_one_event_per_host(self, tmp_path, concurrency):
        """Test that N hosts with M failures give N events and N - M files."""
        page1, page2 = hosts(1, 2, 3), hosts(4, 5)
        capturer = FakeCapturer(failing=[page1[1], page2[0]])
        orchestrator, events = make_orchestrator(tmp_path, capturer, concurrency=concurrency)

        summary = await orchestrator.run_batch([page1, page2])

        assert len(events) == 5
        assert {e.host for e in events} == set(page1 + page2)
        assert (summary.dispatched, summary.succeeded, summary.failed) == (5, 3, 2)

        files = sorted((tmp_path / "dumps").iterdir())
        assert len(files) == 3
        assert sorted(summary.files) == files
        assert not list((tmp_path / "dumps").glob("*.part"))

    @pytest.mark.asyncio
    async def test_event_contents(self, tmp_path):
        ok_host, bad_host = hosts(1, 2)
        orchestrator, events = make_orchestrator(tmp_path, FakeCapturer(failing=[bad_host]))

        await orchestrator.run_batch([[ok_host, bad_host]])

        by_host = {e.host: e for e in events}
        info = by_host[ok_host]
        assert info.level == "info"
        assert info.message.startswith(f"dumping screenshot from {ok_host} to ")
        assert info.kind is None

        error = by_host[bad_host]
        assert error.level == "error"
        assert error.kind is ErrorKind.CONNECT_ERROR
        assert str(bad_host) in error.message
        assert "connection refused" in error.message

    @pytest.mark.asyncio
    async def test_files_are_pngs_named_by_time_and_host(self, tmp_path):
        orchestrator, _ = make_orchestrator(tmp_path, FakeCapturer())

        summary = await orchestrator.run_batch([hosts(7)])

        (path,) = summary.files
        stamp, identity = path.stem.split("_", 1)
        assert stamp.isdigit()
        assert identity == "10.0.0.7"
        assert path.suffix == ".png"
        with Image.open(path) as image:
            assert image.format == "PNG"
            assert image.size == (2, 2)

    @pytest.mark.asyncio
    async def test_same_host_twice_gets_two_files(self, tmp_path):
        host = hosts(9)[0]
        orchestrator, events = make_orchestrator(tmp_path, FakeCapturer(), concurrency=Concurrency.HOST)

        summary = await orchestrator.run_batch([[host, host]])

        assert len(set(summary.files)) == 2
        assert len(events) == 2

    @pytest.mark.asyncio
    async def test_zero_hosts(self, tmp_path):
        orchestrator, events = make_orchestrator(tmp_path, FakeCapturer())

        summary = await orchestrator.run_batch([[], []])

        assert events == []
        assert summary.dispatched == 0
        assert list((tmp_path / "dumps").iterdir()) == []

    @pytest.mark.asyncio
    async def test_page_mode_captures_a_page_sequentially(self, tmp_path):
        capturer = FakeCapturer(delay=0.02)
        orchestrator, _ = make_orchestrator(tmp_path, capturer, concurrency=Concurrency.PAGE)

        await orchestrator.run_batch([hosts(1, 2, 3)])

        assert capturer.max_active == 1
        assert capturer.seen == hosts(1, 2, 3)

    @pytest.mark.asyncio
    async def test_host_mode_runs_hosts_concurrently(self, tmp_path):
        capturer = FakeCapturer(delay=0.05)
        orchestrator, _ = make_orchestrator(tmp_path, capturer, concurrency=Concurrency.HOST)

        await orchestrator.run_batch([hosts(1, 2, 3, 4)])

        assert capturer.max_active == 4

    @pytest.mark.asyncio
    async def test_max_workers_caps_concurrency(self, tmp_path):
        capturer = FakeCapturer(delay=0.03)
        orchestrator, events = make_orchestrator(
            tmp_path, capturer, concurrency=Concurrency.HOST, max_workers=2
        )

        await orchestrator.run_batch([hosts(*range(1, 7))])

        assert capturer.max_active == 2
        assert len(events) == 6

    @pytest.mark.asyncio
    async def test_async_page_source(self, tmp_path):
        async def pages():
            yield hosts(1, 2)
            yield hosts(3)

        orchestrator, events = make_orchestrator(tmp_path, FakeCapturer())

        summary = await orchestrator.run_batch(pages())

        assert summary.succeeded == 3
        assert len(events) == 3

    @pytest.mark.asyncio
    async def test_discovery_error_ends_the_scan(self, tmp_path):
        async def pages():
            yield hosts(1)
            raise DiscoveryError("Shodan search returned status 401: Invalid API key")

        orchestrator, _ = make_orchestrator(tmp_path, FakeCapturer(hang=hosts(1)))

        with pytest.raises(DiscoveryError, match="401"):
            await orchestrator.run_batch(pages())
        assert orchestrator.in_flight == 0

    @pytest.mark.asyncio
    async def test_unusable_dump_dir(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        capturer = FakeCapturer()
        orchestrator = ScanOrchestrator(capturer, ScreenshotSaver(str(blocker / "dumps")))

        with pytest.raises(OutputDirectoryError):
            await orchestrator.run_batch([hosts(1)])
        assert capturer.seen == []

    @pytest.mark.asyncio
    async def test_write_error_is_a_host_failure(self, tmp_path):
        orchestrator, events = make_orchestrator(tmp_path, FakeCapturer())

        with patch.object(orchestrator.saver, '_write', side_effect=OSError("disk full")):
            summary = await orchestrator.run_batch([hosts(1)])

        (event,) = events
        assert event.kind is ErrorKind.WRITE_ERROR
        assert "disk full" in event.message
        assert summary.files == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, tmp_path):
        crashing = hosts(2)[0]
        orchestrator, events = make_orchestrator(
            tmp_path, FakeCapturer(crashing=[crashing]), concurrency=Concurrency.HOST
        )

        summary = await orchestrator.run_batch([hosts(1, 2, 3)])

        assert len(events) == 3
        assert summary.succeeded == 2
        crash = next(e for e in events if e.host == crashing)
        assert crash.level == "error"
        assert "boom" in crash.message

    @pytest.mark.asyncio
    async def test_failing_event_handler_does_not_lose_hosts(self, tmp_path):
        seen = []

        def handler(event):
            seen.append(event.host)
            raise ValueError("sink closed")

        orchestrator = ScanOrchestrator(
            FakeCapturer(failing=hosts(2)),
            ScreenshotSaver(str(tmp_path / "dumps")),
            concurrency=Concurrency.HOST,
            on_event=handler,
        )

        summary = await orchestrator.run_batch([hosts(1, 2, 3)])

        assert sorted(seen, key=str) == hosts(1, 2, 3)
        assert (summary.succeeded, summary.failed) == (2, 1)
        assert len(summary.files) == 2


class TestRunStream:
    """Test suite for open host feeds."""

    @pytest.mark.asyncio
    async def test_feed_runs_to_completion(self, tmp_path):
        async def feed():
            for host in hosts(1, 2, 3):
                yield host
                await asyncio.sleep(0)

        orchestrator, events = make_orchestrator(tmp_path, FakeCapturer(failing=hosts(3)))

        summary = await orchestrator.run_stream(feed())

        assert len(events) == 3
        assert summary.succeeded == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_captures(self, tmp_path):
        arrived = asyncio.Event()

        async def feed():
            yield hosts(1)[0]
            yield hosts(2)[0]
            arrived.set()
            await asyncio.Event().wait()

        capturer = FakeCapturer(hang=hosts(2))
        orchestrator, events = make_orchestrator(tmp_path, capturer)

        task = asyncio.create_task(orchestrator.run_stream(feed()))
        await asyncio.wait_for(arrived.wait(), 2)
        while len(events) < 1:
            await asyncio.sleep(0.01)
        orchestrator.stop()
        summary = await asyncio.wait_for(task, 2)

        assert [e.host for e in events] == hosts(1)
        assert summary.dispatched == 2
        assert orchestrator.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancellation_from_outside_propagates(self, tmp_path):
        async def feed():
            await asyncio.Event().wait()
            yield hosts(1)[0]

        orchestrator, _ = make_orchestrator(tmp_path, FakeCapturer())
        task = asyncio.create_task(orchestrator.run_stream(feed()))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task


class TestAgainstVNCServers:
    """End-to-end scan over real sockets."""

    @pytest.mark.asyncio
    async def test_mixed_batch(self, tmp_path, fake_vnc, unused_tcp_port):
        async with fake_vnc(width=4, height=2, pixels=[(255, 0, 0)] * 8) as red, \
                fake_vnc(security=(2,)) as locked:
            red_port, locked_port = red.port, locked.port
            batch = [
                HostAddress('127.0.0.1', red_port),
                HostAddress('127.0.0.1', locked_port),
                HostAddress('127.0.0.1', unused_tcp_port),
            ]
            orchestrator, events = make_orchestrator(
                tmp_path, VNCCapturer(step_timeout=2), concurrency=Concurrency.HOST
            )
            summary = await orchestrator.run_batch([batch])

        assert len(events) == 3
        kinds = {e.host.port: e.kind for e in events}
        assert kinds[red_port] is None
        assert kinds[locked_port] is ErrorKind.HANDSHAKE_ERROR
        assert kinds[unused_tcp_port] is ErrorKind.CONNECT_ERROR

        (path,) = summary.files
        with Image.open(path) as image:
            assert image.size == (4, 2)
            assert image.convert('RGBA').getpixel((3, 1)) == (255, 0, 0, 255)
