"""Tests for the concurrent runner, the stdout writer and run_find."""

from __future__ import annotations

import asyncio
import errno
import io
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from obvious3 import (
    BrokenOutput,
    DecodeError,
    FilterConfig,
    FindOptions,
    InvalidPattern,
    ListingSource,
    MemoryStore,
    Obvious3Error,
    ObjectMeta,
    Preamble,
    ProgressTracker,
    SourceError,
    StdoutWriter,
    for_each_concurrent,
    run_find,
    run_pipeline,
)

UTC = timezone.utc
NOW = datetime(2024, 5, 1, tzinfo=UTC)


async def generate(count: int, produced: list | None = None):
    for i in range(count):
        if produced is not None:
            produced.append(i)
        yield ObjectMeta(location=f"obj/{i:05d}", last_modified=NOW, size=i)
        await asyncio.sleep(0)


class ClosingOutput(io.BytesIO):
    """Accepts a number of writes, then behaves like a pipe whose reader exited."""

    def __init__(self, accept_writes: int):
        super().__init__()
        self.accept_writes = accept_writes

    def write(self, data: bytes) -> int:
        if self.accept_writes <= 0:
            raise BrokenPipeError(errno.EPIPE, "Broken pipe")
        self.accept_writes -= 1
        return super().write(data)


class FullDiskOutput(io.BytesIO):
    def write(self, data: bytes) -> int:
        raise OSError(errno.ENOSPC, "No space left on device")


class RejectingOutput(io.BytesIO):
    """Takes the preamble, then fails every record write with a non-OS error."""

    def write(self, data: bytes) -> int:
        if b'"location"' in data:
            raise ValueError("I/O operation on closed file.")
        return super().write(data)


def output_lines(output: io.BytesIO) -> list:
    data = output.getvalue().decode("utf-8")
    assert data == "" or data.endswith("\n"), "last line was cut short"
    return [json.loads(line) for line in data.splitlines()]


def make_tree(root: Path, count: int) -> None:
    for i in range(count):
        sub = root / f"d{i % 3}"
        sub.mkdir(exist_ok=True)
        (sub / f"file{i}.{'log' if i % 2 else 'csv'}").write_bytes(b"x" * i)


class TestForEachConcurrent:
    """Tests for the bounded concurrent runner."""

    def test_concurrency_never_exceeded(self) -> None:
        active = 0
        peak = 0
        handled = []

        async def handler(meta: ObjectMeta) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.001)
            handled.append(meta.location)
            active -= 1

        asyncio.run(for_each_concurrent(generate(200), handler, 4))
        assert peak <= 4
        assert len(handled) == 200

    def test_runs_concurrently(self) -> None:
        peak = 0
        active = 0

        async def handler(meta: ObjectMeta) -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        asyncio.run(for_each_concurrent(generate(50), handler, 8))
        assert peak > 1

    def test_handler_failure_stops_scheduling(self) -> None:
        produced = []
        handled = []

        async def handler(meta: ObjectMeta) -> None:
            if meta.size == 5:
                raise DecodeError(7, "boom")
            await asyncio.sleep(0.001)
            handled.append(meta.size)

        with pytest.raises(DecodeError):
            asyncio.run(for_each_concurrent(generate(1000, produced), handler, 2))
        assert len(produced) < 20
        assert len(handled) < 20

    def test_source_failure_waits_for_in_flight(self) -> None:
        finished = []

        async def failing_source():
            for i in range(3):
                yield ObjectMeta(location=f"k{i}", last_modified=NOW, size=i)
            raise SourceError("listing failed")

        async def handler(meta: ObjectMeta) -> None:
            await asyncio.sleep(0.01)
            finished.append(meta.location)

        with pytest.raises(SourceError):
            asyncio.run(for_each_concurrent(failing_source(), handler, 10))
        assert sorted(finished) == ["k0", "k1", "k2"]

    def test_rejects_non_positive_concurrency(self) -> None:
        async def handler(meta: ObjectMeta) -> None:
            pass

        with pytest.raises(ValueError):
            asyncio.run(for_each_concurrent(generate(1), handler, 0))


class TestStdoutWriter:
    """Tests for the single-writer output queue."""

    def test_preamble_then_whole_lines(self) -> None:
        output = io.BytesIO()

        async def scenario() -> StdoutWriter:
            writer = StdoutWriter(output)
            writer.start(Preamble(root="memory:///"))
            await for_each_concurrent(generate(300), writer.write, 32)
            await writer.close()
            return writer

        writer = asyncio.run(scenario())
        lines = output_lines(output)
        assert lines[0] == {"file_type": "Obvious3_0", "root": "memory:///"}
        assert len(lines) == 301
        assert writer.lines_written == 300
        assert {line["location"] for line in lines[1:]} == {f"obj/{i:05d}" for i in range(300)}

    def test_backpressure_bounds_buffered_records(self) -> None:
        output = io.BytesIO()
        produced = []
        queue_size = 5
        concurrency = 3

        async def scenario() -> None:
            writer = StdoutWriter(output, queue_size=queue_size)
            # Nothing drains the queue until start() is called
            runner = asyncio.create_task(
                for_each_concurrent(generate(500, produced), writer.write, concurrency)
            )
            await asyncio.sleep(0.05)
            assert len(produced) <= queue_size + concurrency + 1
            assert writer.queue.qsize() == queue_size
            assert not runner.done()

            writer.start(Preamble(root="memory:///"))
            await runner
            await writer.close()

        asyncio.run(scenario())
        assert len(produced) == 500
        assert len(output_lines(output)) == 501

    def test_closed_output_raises_broken_output_to_producers(self) -> None:
        output = ClosingOutput(accept_writes=4)

        async def scenario() -> StdoutWriter:
            writer = StdoutWriter(output, queue_size=2)
            writer.start(Preamble(root="memory:///"))
            with pytest.raises(BrokenOutput):
                await for_each_concurrent(generate(1000), writer.write, 4)
            await writer.close()
            return writer

        writer = asyncio.run(scenario())
        assert writer.closed
        assert writer.error is None
        assert len(output_lines(output)) == 4

    def test_write_failure_reaches_producers(self) -> None:
        output = RejectingOutput()

        async def scenario() -> StdoutWriter:
            writer = StdoutWriter(output, queue_size=2)
            writer.start(Preamble(root="memory:///"))
            with pytest.raises(ValueError, match="closed file"):
                await asyncio.wait_for(
                    for_each_concurrent(generate(2000), writer.write, 4), timeout=10
                )
            await asyncio.wait_for(writer.close(), timeout=10)
            return writer

        writer = asyncio.run(scenario())
        assert isinstance(writer.error, ValueError)
        assert writer.lines_written == 0
        assert len(output_lines(output)) == 1

    def test_dead_drain_task_fails_writes(self) -> None:
        output = io.BytesIO()

        async def scenario() -> None:
            writer = StdoutWriter(output, queue_size=2)
            writer.start(Preamble(root="memory:///"))
            writer._task.cancel()
            await asyncio.sleep(0)
            with pytest.raises(Obvious3Error, match="stopped unexpectedly"):
                await asyncio.wait_for(
                    for_each_concurrent(generate(100), writer.write, 4), timeout=10
                )
            await asyncio.wait_for(writer.close(), timeout=10)

        asyncio.run(scenario())
        assert len(output_lines(output)) == 1


class TestRunPipeline:
    """Tests for run_pipeline with in-memory stores."""

    def test_forwards_only_matches_and_counts_progress(self) -> None:
        store = MemoryStore(
            ObjectMeta(location=f"data/{i}.{'log' if i % 2 else 'csv'}", last_modified=NOW, size=i)
            for i in range(20)
        )
        config = FilterConfig.from_options(FindOptions(basename_match=r"\.log$", min_size=10))
        output = io.BytesIO()

        async def scenario() -> ProgressTracker:
            progress = ProgressTracker()
            writer = StdoutWriter(output)
            writer.start(Preamble(root="memory:///data"))
            await run_pipeline(ListingSource(store, "data"), config, writer, 4, progress)
            await writer.close()
            return progress

        progress = asyncio.run(scenario())
        sizes = sorted(line["size"] for line in output_lines(output)[1:])
        assert sizes == [11, 13, 15, 17, 19]
        assert progress.total_objects == 20
        assert progress.matches == 5


class TestRunFind:
    """End-to-end runs of the find command against streams."""

    def test_listing_mode(self, tmp_path: Path) -> None:
        make_tree(tmp_path, 12)
        stdout = io.BytesIO()
        asyncio.run(run_find(FindOptions(root=str(tmp_path), basename_match=r"\.log$"), stdout=stdout))

        lines = output_lines(stdout)
        assert lines[0] == {"file_type": "Obvious3_0", "root": tmp_path.resolve().as_uri()}
        assert len(lines) == 7
        assert all(line["location"].endswith(".log") for line in lines[1:])

    def test_chained_run_reproduces_listing(self, tmp_path: Path) -> None:
        make_tree(tmp_path, 25)
        first = io.BytesIO()
        asyncio.run(run_find(FindOptions(root=str(tmp_path), concurrency=3), stdout=first))

        second = io.BytesIO()
        stdin = io.BytesIO(first.getvalue())
        asyncio.run(run_find(FindOptions(concurrency=7), stdin=stdin, stdout=second))

        first_lines = first.getvalue().decode("utf-8").splitlines()
        second_lines = second.getvalue().decode("utf-8").splitlines()
        assert second_lines[0] == first_lines[0]
        assert sorted(second_lines[1:]) == sorted(first_lines[1:])
        assert len(first_lines) == 26

    def test_chained_filter_refines(self, tmp_path: Path) -> None:
        make_tree(tmp_path, 10)
        first = io.BytesIO()
        asyncio.run(run_find(FindOptions(root=str(tmp_path), basename_match=r"\.log$"), stdout=first))

        second = io.BytesIO()
        stdin = io.BytesIO(first.getvalue())
        asyncio.run(run_find(FindOptions(min_size=5), stdin=stdin, stdout=second))

        sizes = sorted(line["size"] for line in output_lines(second)[1:])
        assert sizes == [5, 7, 9]

    def test_bad_pattern_fails_before_any_io(self) -> None:
        stdin = io.BytesIO(b'{"file_type":"Obvious3_0","root":"memory:///"}\n')
        stdout = io.BytesIO()
        with pytest.raises(InvalidPattern):
            asyncio.run(run_find(FindOptions(path_match="(", root=None), stdin=stdin, stdout=stdout))
        assert stdin.tell() == 0
        assert stdout.getvalue() == b""

    def test_decode_error_keeps_lines_whole(self) -> None:
        good = b'{"location":"a","last_modified":"2024-01-01T00:00:00Z","size":1}\n'
        stdin = io.BytesIO(
            b'{"file_type":"Obvious3_0","root":"memory:///"}\n' + good + b"{oops\n" + good
        )
        stdout = io.BytesIO()
        with pytest.raises(DecodeError):
            asyncio.run(run_find(FindOptions(), stdin=stdin, stdout=stdout))

        lines = output_lines(stdout)
        assert lines[0]["file_type"] == "Obvious3_0"
        assert len(lines) <= 2

    def test_broken_output(self, tmp_path: Path) -> None:
        make_tree(tmp_path, 60)
        stdout = ClosingOutput(accept_writes=3)
        with pytest.raises(BrokenOutput):
            asyncio.run(run_find(FindOptions(root=str(tmp_path), concurrency=4), stdout=stdout))
        assert len(output_lines(stdout)) == 3

    def test_other_write_errors_propagate(self, tmp_path: Path) -> None:
        make_tree(tmp_path, 3)
        with pytest.raises(OSError) as excinfo:
            asyncio.run(run_find(FindOptions(root=str(tmp_path)), stdout=FullDiskOutput()))
        assert excinfo.value.errno == errno.ENOSPC
        assert not isinstance(excinfo.value, BrokenOutput)

    def test_non_os_write_error_fails_run(self, tmp_path: Path) -> None:
        make_tree(tmp_path, 500)
        stdout = RejectingOutput()

        async def scenario() -> None:
            await asyncio.wait_for(
                run_find(FindOptions(root=str(tmp_path), concurrency=4), stdout=stdout),
                timeout=30,
            )

        with pytest.raises(ValueError, match="closed file"):
            asyncio.run(scenario())
        assert len(output_lines(stdout)) == 1
