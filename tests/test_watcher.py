"""Tests for Client.txt tailing."""

import os
import threading
import time

import pytest

from deathtracker import watcher as watcher_module
from deathtracker.watcher import ClientLogWatcher


class Recorder:
    """Collects watcher callbacks."""

    def __init__(self):
        self.lines = []
        self.startup_done = 0
        self.batches = []

    def on_line(self, line, is_startup):
        self.lines.append((line, is_startup))

    def on_startup_done(self):
        self.startup_done += 1

    def on_batch(self, offset):
        self.batches.append(offset)

    def live(self):
        return [line for line, startup in self.lines if not startup]

    def startup(self):
        return [line for line, startup in self.lines if startup]


@pytest.fixture
def log(tmp_path):
    path = tmp_path / "Client.txt"
    path.write_bytes(b"")
    return path


def append(path, text):
    with open(path, "ab") as f:
        f.write(text.encode("utf-8"))


def make_watcher(path, rec, **kwargs):
    return ClientLogWatcher(
        path, rec.on_line,
        on_startup_done=rec.on_startup_done,
        on_batch_done=rec.on_batch,
        **kwargs,
    )


class TestStartup:
    """Test replay of existing content."""

    def test_existing_lines_are_startup(self, log):
        append(log, "one\ntwo\n")
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)
        assert rec.startup() == ["one", "two"]
        assert rec.startup_done == 1
        assert watcher.committed_offset == len(b"one\ntwo\n")

    def test_blank_lines_and_crlf(self, log):
        append(log, "one\r\n\r\n   \ntwo\r\n")
        rec = Recorder()
        make_watcher(log, rec).start(follow=False)
        assert rec.startup() == ["one", "two"]

    def test_missing_file(self, tmp_path):
        path = tmp_path / "missing.txt"
        rec = Recorder()
        watcher = make_watcher(path, rec)
        watcher.start(follow=False)
        assert rec.lines == []
        assert rec.startup_done == 1

        append(path, "late\n")
        assert watcher.poll_once() == 1
        assert rec.live() == ["late"]

    def test_resume_offset_skips_consumed_bytes(self, log):
        append(log, "old\nnew\n")
        rec = Recorder()
        make_watcher(log, rec, resume_offset=len(b"old\n")).start(follow=False)
        assert rec.startup() == ["new"]

    def test_resume_offset_past_end_reads_everything(self, log):
        append(log, "a\n")
        rec = Recorder()
        make_watcher(log, rec, resume_offset=1000).start(follow=False)
        assert rec.startup() == ["a"]


class TestTailing:
    """Test incremental reads."""

    def test_appended_lines_delivered_once(self, log):
        append(log, "a\n")
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)

        append(log, "b\nc\n")
        assert watcher.poll_once() == 2
        assert watcher.poll_once() == 0
        append(log, "d\n")
        assert watcher.poll_once() == 1
        assert rec.live() == ["b", "c", "d"]
        assert rec.startup() == ["a"]

    def test_partial_line_waits_for_newline(self, log):
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)

        append(log, "first half")
        assert watcher.poll_once() == 0
        assert watcher.committed_offset == 0
        append(log, " second half\n")
        assert watcher.poll_once() == 1
        assert rec.live() == ["first half second half"]
        assert watcher.committed_offset == log.stat().st_size

    def test_multibyte_split_across_passes(self, log):
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)
        data = "Ärger\n".encode("utf-8")
        with open(log, "ab") as f:
            f.write(data[:1])
        watcher.poll_once()
        with open(log, "ab") as f:
            f.write(data[1:])
        watcher.poll_once()
        assert rec.live() == ["Ärger"]

    def test_batch_done_reports_committed_offset(self, log):
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)
        append(log, "a\nb")
        watcher.poll_once()
        assert rec.batches[-1] == 2

    def test_handler_error_does_not_stop_reading(self, log):
        seen = []

        def handler(line, is_startup):
            if line == "bad":
                raise ValueError("boom")
            seen.append(line)

        watcher = ClientLogWatcher(log, handler)
        watcher.start(follow=False)
        append(log, "a\nbad\nb\n")
        watcher.poll_once()
        assert seen == ["a", "b"]


class TestTruncation:
    """Test truncated or replaced log files."""

    def test_truncation_rereads_from_start(self, log):
        append(log, "aaaaaaaaaa\nbbbbbbbbbb\n")
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)

        log.write_bytes(b"c\n")
        assert watcher.poll_once() == 1
        assert rec.live() == ["c"]
        assert watcher.committed_offset == 2

    def test_replaced_file_rereads_from_start(self, log, tmp_path):
        append(log, "a\n")
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)

        replacement = tmp_path / "new.txt"
        replacement.write_bytes(b"x\ny\nz\n")
        os.replace(replacement, log)
        watcher.poll_once()
        assert rec.live() == ["x", "y", "z"]

    def test_read_error_retries_from_committed_offset(self, log, monkeypatch):
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)
        append(log, "a\nb\n")

        def locked(*args, **kwargs):
            raise PermissionError("file is locked")

        monkeypatch.setattr(watcher_module, "open", locked, raising=False)
        assert watcher.poll_once() == 0
        assert watcher.committed_offset == 0
        assert rec.batches == [0]

        monkeypatch.undo()
        assert watcher.poll_once() == 2
        assert rec.live() == ["a", "b"]
        assert watcher.committed_offset == len(b"a\nb\n")

    def test_deleted_file_is_not_an_error(self, log):
        append(log, "aaaaaaaa\n")
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)

        log.unlink()
        assert watcher.poll_once() == 0
        append(log, "b\n")
        assert watcher.poll_once() == 1
        assert rec.live() == ["b"]


class TestStop:
    """Test stop semantics."""

    def test_no_lines_after_stop(self, log):
        rec = Recorder()
        watcher = make_watcher(log, rec)
        watcher.start(follow=False)
        watcher.stop()
        append(log, "a\n")
        assert watcher.poll_once() == 0
        assert rec.lines == []

    def test_stop_twice(self, log):
        watcher = ClientLogWatcher(log, lambda line, startup: None)
        watcher.start()
        watcher.stop()
        watcher.stop()

    def test_stop_from_handler(self, log):
        seen = []

        def handler(line, is_startup):
            seen.append(line)
            watcher.stop()

        watcher = ClientLogWatcher(log, handler)
        watcher.start(follow=False)
        append(log, "a\nb\nc\n")
        watcher.poll_once()
        assert seen == ["a"]


class TestPolling:
    """Test the background polling thread."""

    def test_notify_change_wakes_poller(self, log):
        got = threading.Event()

        def handler(line, is_startup):
            if not is_startup and line == "live":
                got.set()

        watcher = ClientLogWatcher(log, handler, poll_interval=30.0, min_interval=0.01)
        watcher.start()
        try:
            append(log, "live\n")
            watcher.notify_change()
            assert got.wait(5.0)
        finally:
            watcher.stop()

    def test_polls_without_notification(self, log):
        got = threading.Event()

        def handler(line, is_startup):
            if not is_startup:
                got.set()

        watcher = ClientLogWatcher(log, handler, poll_interval=0.05, min_interval=0.01)
        watcher.start()
        try:
            append(log, "live\n")
            assert got.wait(5.0)
        finally:
            watcher.stop()

    def test_burst_of_notifications_is_throttled(self, log):
        passes = []
        lines = []

        class CountingWatcher(ClientLogWatcher):
            def poll_once(self):
                passes.append(time.monotonic())
                return super().poll_once()

        watcher = CountingWatcher(
            log, lambda line, startup: lines.append(line),
            poll_interval=30.0, min_interval=0.5,
        )
        watcher.start()
        try:
            for i in range(20):
                append(log, f"line {i}\n")
                watcher.notify_change()
                time.sleep(0.01)

            # Lines from notifications that came too early still arrive
            deadline = time.monotonic() + 5.0
            while len(lines) < 20 and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            watcher.stop()

        assert lines == [f"line {i}" for i in range(20)]
        assert len(passes) <= 4
        gaps = [b - a for a, b in zip(passes, passes[1:])]
        assert all(gap >= 0.4 for gap in gaps)

    def test_failing_pass_does_not_kill_poller(self, log):
        got = []
        second = threading.Event()

        def handler(line, is_startup):
            got.append(line)
            if line == "second":
                second.set()

        def on_batch_done(offset):
            if offset > 0:
                raise RuntimeError("save failed")

        watcher = ClientLogWatcher(
            log, handler, on_batch_done=on_batch_done,
            poll_interval=0.05, min_interval=0.01,
        )
        watcher.start()
        try:
            append(log, "first\n")
            deadline = time.monotonic() + 5.0
            while not got and time.monotonic() < deadline:
                time.sleep(0.02)
            append(log, "second\n")
            assert second.wait(5.0)
        finally:
            watcher.stop()
        assert got == ["first", "second"]
