"""
Incremental reader for one growing JSONL file.

The reader starts at the current end of the file and polls for appended
bytes, emitting one callback per complete line. A trailing line without a
newline stays buffered until it is finished.

Rotation is detected by inode: the old handle is drained and closed and
the file now occupying the path is read from the start. A shrinking file
is treated as truncated and re-read from offset 0.

Transient OSErrors back off exponentially. Once errors have persisted for
`retry_timeout` seconds the reader gives up, reports through `on_fatal`
and exits; other readers are unaffected.
"""
import asyncio
import logging
import os
import time
from typing import BinaryIO, Callable, Optional

logger = logging.getLogger(__name__)

LineCallback = Callable[[str, str], object]
FatalCallback = Callable[["TailReader", Exception], object]

BACKOFF_BASE_S = 0.1
BACKOFF_MAX_S = 2.0


class TailReader:
    def __init__(
        self,
        path: str,
        on_line: LineCallback,
        *,
        poll_interval: float = 0.25,
        retry_timeout: float = 5.0,
        on_fatal: Optional[FatalCallback] = None,
    ) -> None:
        self.path = path
        self.on_line = on_line
        self.on_fatal = on_fatal
        self.poll_interval = poll_interval
        self.retry_timeout = retry_timeout

        self.offset = 0
        self.inode: Optional[int] = None
        self.lines_emitted = 0
        self._handle: Optional[BinaryIO] = None
        self._partial = b""
        self._task: Optional[asyncio.Task] = None
        self._failing_since: Optional[float] = None
        self._failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Open at EOF and begin polling. Calling start() twice is a no-op."""
        if self._task is not None:
            return
        self._open(None)
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("👂 Tail started: %s", self.path)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._close()
        if task is not None:
            logger.info("🛑 Tail stopped: %s", self.path)

    # ── File handling ─────────────────────────────────────────────────────

    def _open(self, offset: Optional[int]) -> None:
        """Open the path at `offset`, or at EOF when offset is None."""
        handle = open(self.path, "rb")
        stat = os.fstat(handle.fileno())
        self._close()
        self._handle = handle
        self.inode = stat.st_ino
        self.offset = stat.st_size if offset is None else offset

    def _close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError:
                pass
            self._handle = None

    def _read_available(self) -> None:
        if self._handle is None:
            return
        self._handle.seek(self.offset)
        data = self._handle.read()
        if not data:
            return
        self.offset += len(data)
        self._emit(data)

    def _emit(self, data: bytes) -> None:
        buffer = self._partial + data
        *complete, self._partial = buffer.split(b"\n")
        for raw in complete:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            self.lines_emitted += 1
            try:
                self.on_line(line, self.path)
            except Exception as exc:
                logger.error("Line handler failed for %s: %s", self.path, exc, exc_info=True)

    def poll(self) -> None:
        """One read pass. Raises OSError on I/O trouble."""
        stat = os.stat(self.path)
        if self._handle is None:
            # Reopening after a transient error
            if stat.st_ino == self.inode:
                self._open(self.offset)
            else:
                self._partial = b""
                self._open(0)
        elif stat.st_ino != self.inode:
            logger.info("🔄 Rotation detected: %s", self.path)
            self._read_available()
            self._partial = b""
            self._open(0)
        elif stat.st_size < self.offset:
            logger.info("✂️ Truncation detected: %s", self.path)
            self.offset = 0
            self._partial = b""
        self._read_available()

    # ── Poll loop ─────────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            try:
                self.poll()
            except OSError as exc:
                if self._fail(exc):
                    return
                await asyncio.sleep(self._backoff())
                continue
            self._failing_since = None
            self._failures = 0
            await asyncio.sleep(self.poll_interval)

    def _backoff(self) -> float:
        return min(BACKOFF_BASE_S * (2 ** (self._failures - 1)), BACKOFF_MAX_S)

    def _fail(self, exc: OSError) -> bool:
        """Record a failure; returns True once the retry budget is spent."""
        now = time.monotonic()
        if self._failing_since is None:
            self._failing_since = now
        self._failures += 1
        self._close()
        if now - self._failing_since < self.retry_timeout:
            logger.warning("Tail read error %s (attempt %d): %s", self.path, self._failures, exc)
            return False

        logger.error("💥 Tail giving up on %s after %d attempts: %s", self.path, self._failures, exc)
        self._task = None
        if self.on_fatal is not None:
            try:
                self.on_fatal(self, exc)
            except Exception as cb_exc:
                logger.error("Fatal handler failed for %s: %s", self.path, cb_exc)
        return True
