"""
Session folder watcher.

Owns one watchdog Observer on the active session directory and one
TailReader per matching file. Observer callbacks run on watchdog's thread
and are handed to the event loop; everything else happens on the loop.

A directory switch validates and lists the new folder first and only then
tears down: every tail of the old directory is stopped (awaited) before
any tail of the new one starts, so events from two directories never
interleave. A missing, non-directory or unreadable target leaves the
current watch untouched.
"""
import asyncio
import fnmatch
import logging
import os
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from commentary_bus.services.activity_log import ActivityLog
from commentary_bus.services.tail_reader import TailReader

logger = logging.getLogger(__name__)

SESSION_GLOB = "*.jsonl"


class SessionDirError(Exception):
    def __init__(self, message: str, path: str) -> None:
        super().__init__(message)
        self.path = path


# ── Path helpers ──────────────────────────────────────────────────────────────

def project_path_to_session_path(input_path: str, root: str) -> str:
    """
    /var/work/my-project -> <root>/-var-work-my-project
    Paths already under `root` are returned unchanged.
    """
    root = root.rstrip("/")
    if input_path == root or input_path.startswith(root + "/"):
        return input_path
    transformed = input_path.rstrip("/").lstrip("/").replace("/", "-")
    return f"{root}/-{transformed}"


def session_path_to_project_path(session_path: str, root: str) -> str:
    """Inverse of project_path_to_session_path (dashes inside names come back as slashes)."""
    root = root.rstrip("/")
    parent, name = os.path.split(session_path.rstrip("/"))
    if parent != root or not name.startswith("-"):
        return session_path
    return "/" + name[1:].replace("-", "/")


def validate_session_dir(path: str) -> None:
    if not os.path.exists(path):
        raise SessionDirError(f"Session directory not found: {path}", path)
    if not os.path.isdir(path):
        raise SessionDirError(f"Not a directory: {path}", path)


# ── Watchdog bridge ───────────────────────────────────────────────────────────

class _SessionFileHandler(FileSystemEventHandler):
    def __init__(self, watcher: "FolderWatcher", loop: asyncio.AbstractEventLoop, generation: int) -> None:
        self.watcher = watcher
        self.loop = loop
        self.generation = generation

    def _dispatch(self, kind: str, path: Any) -> None:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not fnmatch.fnmatch(os.path.basename(path), self.watcher.pattern):
            return
        try:
            self.loop.call_soon_threadsafe(self.watcher.handle_fs_event, kind, path, self.generation)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("added", event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("modified", event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("removed", event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch("removed", event.src_path)
            self._dispatch("added", event.dest_path)


# ── Watcher ───────────────────────────────────────────────────────────────────

class FolderWatcher:
    def __init__(
        self,
        on_line: Callable[[str, str], object],
        *,
        pattern: str = SESSION_GLOB,
        debounce: float = 0.3,
        poll_interval: float = 0.25,
        retry_timeout: float = 5.0,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.on_line = on_line
        self.pattern = pattern
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.retry_timeout = retry_timeout
        self.activity = activity or ActivityLog()

        self.directory: Optional[str] = None
        self.tails: dict[str, TailReader] = {}
        self._observer: Optional[Any] = None
        self._generation = 0
        self._pending: dict[str, tuple[asyncio.TimerHandle, int]] = {}
        self._background: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def watching(self) -> bool:
        return self._observer is not None

    @property
    def active_tails(self) -> int:
        return len(self.tails)

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.directory is not None,
            "sessionDir": self.directory,
            "activeTails": len(self.tails),
            "watcherActive": self.watching,
        }

    def scan(self, directory: Optional[str] = None) -> list[str]:
        directory = directory or self.directory
        if not directory:
            return []
        with os.scandir(directory) as entries:
            return sorted(
                entry.path for entry in entries
                if entry.is_file() and fnmatch.fnmatch(entry.name, self.pattern)
            )

    async def switch(self, directory: str) -> dict[str, Any]:
        path = os.path.abspath(os.path.expanduser(directory))
        validate_session_dir(path)

        async with self._lock:
            # The new folder must be listable before the current watch is torn down
            try:
                files = self.scan(path)
            except OSError as exc:
                raise SessionDirError(f"Cannot read session directory: {path} ({exc})", path) from exc

            await self.stop()
            self.directory = path
            self._generation += 1
            logger.info("📁 Switching to folder: %s", path)

            if not files:
                logger.warning("⚠️ No %s session files in %s (watching for new ones)", self.pattern, path)
            for file_path in files:
                self.start_tail(file_path)
            self._start_observer(path)

        self.activity.log("info", "watch", f"Watching {path} ({len(files)} session files)")
        return {"sessionDir": path, "sessionFiles": len(files)}

    def _start_observer(self, path: str) -> None:
        loop = asyncio.get_running_loop()
        observer = Observer()
        observer.daemon = True
        observer.schedule(_SessionFileHandler(self, loop, self._generation), path, recursive=False)
        try:
            observer.start()
        except OSError as exc:
            logger.error("❌ Watcher failed to start on %s: %s", path, exc)
            self.activity.log("error", "watch", f"Watcher failed on {path}: {exc}")
            return
        self._observer = observer
        logger.info("👀 Watching folder: %s", path)

    async def stop(self) -> None:
        """Stop the observer and every tail. Safe to call repeatedly."""
        self._generation += 1
        for handle, _ in self._pending.values():
            handle.cancel()
        self._pending.clear()

        observer, self._observer = self._observer, None
        if observer is not None:
            logger.info("🛑 Stopping folder watch: %s", self.directory)
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join)

        tails, self.tails = self.tails, {}
        for reader in tails.values():
            await reader.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Tail lifecycle ────────────────────────────────────────────────────

    def start_tail(self, path: str) -> bool:
        if path in self.tails:
            return False
        reader = TailReader(
            path,
            self.on_line,
            poll_interval=self.poll_interval,
            retry_timeout=self.retry_timeout,
            on_fatal=self._on_tail_fatal,
        )
        try:
            reader.start()
        except OSError as exc:
            logger.error("💥 Failed to start tail [%s]: %s", path, exc)
            self.activity.log("error", "tail", f"Failed to open {os.path.basename(path)}: {exc}")
            return False
        self.tails[path] = reader
        self.activity.log("success", "tail", f"Tailing {os.path.basename(path)}")
        return True

    def stop_tail(self, path: str) -> bool:
        reader = self.tails.pop(path, None)
        if reader is None:
            return False
        task = asyncio.get_running_loop().create_task(reader.stop())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        self.activity.log("info", "tail", f"Stopped {os.path.basename(path)}")
        return True

    def _on_tail_fatal(self, reader: TailReader, exc: Exception) -> None:
        if self.tails.get(reader.path) is reader:
            del self.tails[reader.path]
        self.activity.log("error", "tail", f"Gave up on {os.path.basename(reader.path)}: {exc}")

    # ── Filesystem events (on the loop) ───────────────────────────────────

    def handle_fs_event(self, kind: str, path: str, generation: int) -> None:
        if generation != self._generation:
            return
        if kind in ("added", "modified"):
            if path in self.tails:
                return
            self._debounce(path, self._confirm_added)
        elif kind == "removed":
            if path in self.tails or path in self._pending:
                self._debounce(path, self._confirm_removed)

    def _debounce(self, path: str, callback: Callable[[str], None]) -> None:
        previous = self._pending.pop(path, None)
        if previous is not None:
            previous[0].cancel()
        handle = asyncio.get_running_loop().call_later(self.debounce, callback, path)
        self._pending[path] = (handle, _size(path))

    def _confirm_added(self, path: str) -> None:
        _, size = self._pending.pop(path, (None, -1))
        if not os.path.isfile(path):
            return
        if _size(path) != size:
            # Still being written
            self._debounce(path, self._confirm_added)
            return
        logger.info("➕ Session file discovered: %s", path)
        self.start_tail(path)

    def _confirm_removed(self, path: str) -> None:
        self._pending.pop(path, None)
        if os.path.exists(path):
            # Replaced in place; a running tail picks up the new inode itself
            if path not in self.tails:
                self._debounce(path, self._confirm_added)
            return
        logger.info("➖ Session file removed: %s", path)
        self.stop_tail(path)


def _size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return -1
