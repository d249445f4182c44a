"""
watchdog event source for ``specmon watch``.

The observer thread hands raw file events to the asyncio loop, where they are
debounced: every event restarts a timer and, once the timer expires, each
distinct path is queued once as a ``ChangeEvent``.
"""
import asyncio
import fnmatch
import os
from typing import Dict, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from specmon.common import get_logger, normalize_path
from specmon.configure import DEFAULT_SPEC_GLOB
from specmon.dependency_graph import IGNORED_DIRS
from specmon.watch import ChangeEvent

logger = get_logger(__name__)

WATCHED_EXTENSIONS = (".py",)


class Debouncer:
    """Collects paths on the event loop and flushes them after a quiet interval."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue, interval: float, spec_glob=DEFAULT_SPEC_GLOB):
        self.loop = loop
        self.queue = queue
        self.interval = interval
        self.spec_glob = spec_glob
        self._pending: Dict[str, ChangeEvent] = {}
        self._timer: Optional[asyncio.TimerHandle] = None

    def submit_threadsafe(self, path):
        self.loop.call_soon_threadsafe(self.submit, path)

    def submit(self, path):
        path = normalize_path(path)
        is_test_module = fnmatch.fnmatch(os.path.basename(path), self.spec_glob)
        self._pending[path] = ChangeEvent(path, is_test_module)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_later(self.interval, self.flush)

    def flush(self):
        self._timer = None
        events, self._pending = list(self._pending.values()), {}
        for event in events:
            self.queue.put_nowait(event)
        if events:
            logger.debug("flushed %d change events", len(events))


class _SpecEventHandler(FileSystemEventHandler):
    def __init__(self, debouncer: Debouncer, rootdir):
        super().__init__()
        self._debouncer = debouncer
        self._rootdir = rootdir

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self._handle(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self._handle(event.src_path)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self._handle(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self._handle(event.src_path)
            self._handle(event.dest_path)

    def _handle(self, path):
        path = os.fsdecode(path)
        if not path.endswith(WATCHED_EXTENSIONS):
            return
        relative = os.path.relpath(path, self._rootdir)
        parts = relative.split(os.sep)
        if any(part.startswith(".") or part in IGNORED_DIRS for part in parts[:-1]):
            return
        self._debouncer.submit_threadsafe(path)


class SpecWatcher:
    def __init__(self, rootdir, queue: asyncio.Queue, interval=0.2, spec_glob=DEFAULT_SPEC_GLOB):
        self.rootdir = rootdir
        self.queue = queue
        self.interval = interval
        self.spec_glob = spec_glob
        self._observer: Optional[Observer] = None
        self.debouncer: Optional[Debouncer] = None

    def start(self, loop: asyncio.AbstractEventLoop = None):
        loop = loop or asyncio.get_running_loop()
        self.debouncer = Debouncer(loop, self.queue, self.interval, self.spec_glob)
        self._observer = Observer()
        self._observer.schedule(_SpecEventHandler(self.debouncer, self.rootdir), self.rootdir, recursive=True)
        self._observer.daemon = True
        self._observer.start()
        logger.info("Watching %s for changes", self.rootdir)

    def stop(self):
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
