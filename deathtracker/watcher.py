"""File watcher for Path of Exile Client.txt using polling.

The client appends to Client.txt a few times per second at most, and
filesystem events are unreliable across platforms. We poll the file size
every POLL_INTERVAL seconds; change notifications from elsewhere only wake
the poller early, never more than once per MIN_READ_INTERVAL.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0  # seconds
MIN_READ_INTERVAL = 1.0  # seconds between two read passes


class ClientLogWatcher:
    """Tails Client.txt, handing every new non-blank line to a callback.

    Usage:
        watcher = ClientLogWatcher(Path("Client.txt"), handle_line)
        watcher.start()
        # ... later ...
        watcher.stop()

    handle_line(line, is_startup) is called with is_startup=True for the
    content present when start() ran, then with False for appended lines.
    """

    def __init__(
        self,
        file_path: Path,
        on_new_line: Callable[[str, bool], None],
        on_startup_done: Callable[[], None] | None = None,
        on_batch_done: Callable[[int], None] | None = None,
        resume_offset: int = 0,
        poll_interval: float = POLL_INTERVAL,
        min_interval: float = MIN_READ_INTERVAL,
    ) -> None:
        self._file_path = file_path.resolve()
        self._on_new_line = on_new_line
        self._on_startup_done = on_startup_done
        self._on_batch_done = on_batch_done
        self._resume_offset = max(resume_offset, 0)
        self._poll_interval = poll_interval
        self._min_interval = min_interval

        self._position: int = 0  # bytes read from the file
        self._committed: int = 0  # bytes whose lines were handed out
        self._partial: bytes = b""  # trailing bytes not yet ended by a newline
        self._inode: int | None = None
        self._last_pass: float = 0.0

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._closed = False
        self._thread: threading.Thread | None = None

    @property
    def file_path(self) -> Path:
        return self._file_path

    @property
    def committed_offset(self) -> int:
        """Offset just past the last complete line handed out."""
        return self._committed

    def start(self, follow: bool = True) -> None:
        """Replay the existing content as startup lines, then start polling."""
        with self._lock:
            if self._closed:
                return
            self._read_startup()
            if self._on_startup_done is not None and not self._closed:
                self._on_startup_done()
            if self._on_batch_done is not None and not self._closed:
                self._on_batch_done(self._committed)

        if not follow or self._closed:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._thread.start()
        logger.info("Watching (poll) %s", self._file_path)

    def stop(self) -> None:
        """Stop polling. No line callback fires after this returns."""
        self._closed = True
        self._stop_event.set()
        self._wake.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        # Wait for a pass running on another thread (re-entrant for callbacks)
        with self._lock:
            self._thread = None
        logger.info("Stopped watching")

    def notify_change(self) -> None:
        """Signal that the file may have grown. Bursts collapse into one pass."""
        self._wake.set()

    def poll_once(self) -> int:
        """Read any lines appended since the last pass. Returns lines delivered."""
        with self._lock:
            if self._closed:
                return 0
            delivered = self._read_new_lines()
            self._last_pass = time.monotonic()
            if delivered >= 0 and self._on_batch_done is not None and not self._closed:
                self._on_batch_done(self._committed)
        return max(delivered, 0)

    def _read_startup(self) -> None:
        try:
            stat = self._file_path.stat()
            self._inode = stat.st_ino
            start = self._resume_offset
            if start > stat.st_size:
                logger.info("Log shorter than resume offset, reading from start")
                start = 0
            with open(self._file_path, "rb") as f:
                f.seek(start)
                data = f.read()
        except OSError as e:
            logger.warning("Cannot read client log %s: %s", self._file_path, e)
            return

        self._position = self._committed = start
        self._position += len(data)
        count = self._dispatch(data, is_startup=True)
        logger.info("Startup replay: %d lines from %s", count, self._file_path)

    def _poll_loop(self) -> None:
        """Poll every poll_interval, or sooner when notified."""
        while not self._stop_event.is_set():
            self._wake.wait(self._poll_interval)
            self._wake.clear()
            if self._stop_event.is_set():
                break
            # Throttle: a notification that comes too early is deferred
            wait = self._min_interval - (time.monotonic() - self._last_pass)
            if wait > 0 and self._stop_event.wait(wait):
                break
            try:
                self.poll_once()
            except Exception:
                logger.exception("Read pass failed")

    def _read_new_lines(self) -> int:
        """Read [position, size) from the file. Returns -1 when nothing was read."""
        try:
            stat = self._file_path.stat()
        except OSError as e:
            logger.debug("Cannot stat client log: %s", e)
            return -1

        size = stat.st_size
        # File was truncated or replaced: resync from the start
        if size < self._position or (self._inode is not None and stat.st_ino != self._inode):
            logger.info("Client log truncated or recreated, resetting position")
            self._position = self._committed = 0
            self._partial = b""
        self._inode = stat.st_ino

        if size == self._position:
            return -1

        try:
            with open(self._file_path, "rb") as f:
                f.seek(self._position)
                data = f.read(size - self._position)
        except OSError as e:
            logger.warning("Cannot read client log: %s", e)
            return -1

        self._position += len(data)
        return self._dispatch(data, is_startup=False)

    def _dispatch(self, data: bytes, is_startup: bool) -> int:
        buf = self._partial + data
        chunks = buf.split(b"\n")
        self._partial = chunks.pop()

        count = 0
        for chunk in chunks:
            if self._closed:
                break
            self._committed += len(chunk) + 1
            line = chunk.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                self._on_new_line(line, is_startup)
            except Exception:
                logger.exception("Line handler failed for: %s", line[:150])
            count += 1
        return count
