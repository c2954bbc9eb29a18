"""Live inbox monitoring and the server startup sequence.

Uses the ``watchdog`` library (inotify on Linux) with a recursive watch on
the inbox root. The Observer runs in a background thread and hands arrivals
to the :class:`~flood.watcher.ingest.Ingestor` on the asyncio event loop.
"""

import asyncio
import logging
import threading
from pathlib import Path

from watchdog.events import (
    DirCreatedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileModifiedEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

from flood.schemas.transfer import Stage
from flood.watcher.ingest import Ingestor

logger = logging.getLogger(__name__)

# A "created" file with no writes inside this window was moved in whole.
DEFAULT_SETTLE_SECONDS = 1.0


class InboxEventHandler(FileSystemEventHandler):
    """Turns inbox notifications into arrivals.

    - ``on_closed`` (IN_CLOSE_WRITE): a writer finished the file.
    - ``on_moved``: renamed within the inbox; the destination arrived.
    - ``on_created`` for a file: a rename into the inbox from elsewhere
      (e.g. staging promotion) surfaces as a creation. It only counts if no
      write is seen within the settle window; files still being written
      arrive later through ``on_closed``.
    - ``on_created`` for a directory: files moved in with it never raise
      their own events, so the new directory is scanned.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        ingestor: Ingestor,
        inbox_root: Path,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    ) -> None:
        super().__init__()
        self._loop = loop
        self._ingestor = ingestor
        self._inbox_root = Path(inbox_root)
        self._settle_seconds = settle_seconds
        # Paths inside a settle window, and those of them written since creation
        self._settling: set[str] = set()
        self._written: set[str] = set()
        self._lock = threading.Lock()

    def _in_inbox(self, path: str) -> bool:
        return Path(path).is_relative_to(self._inbox_root)

    def _submit(self, path: str) -> None:
        if not self._in_inbox(path):
            return
        logger.info("Detected arrival: %s", path)
        self._loop.call_soon_threadsafe(self._ingestor.admit, path)

    def _submit_tree(self, path: str) -> None:
        if not self._in_inbox(path):
            return
        logger.info("Detected new directory: %s", path)
        self._loop.call_soon_threadsafe(self._ingestor.admit_tree, path)

    def _settle(self, path: str) -> None:
        """Runs on the event loop once the settle window for ``path`` closes."""
        with self._lock:
            written = path in self._written
            self._settling.discard(path)
            self._written.discard(path)
        if written:
            logger.debug("Still being written, waiting for close: %s", path)
            return
        self._ingestor.admit(path)

    def on_closed(self, event: FileClosedEvent) -> None:
        if event.is_directory:
            return
        with self._lock:
            self._settling.discard(event.src_path)
            self._written.discard(event.src_path)
        self._submit(event.src_path)

    def on_moved(self, event: FileSystemMovedEvent) -> None:
        if event.is_directory:
            self._submit_tree(event.dest_path)
        else:
            self._submit(event.dest_path)

    def on_modified(self, event: FileModifiedEvent) -> None:
        if event.is_directory:
            return
        with self._lock:
            if event.src_path in self._settling:
                self._written.add(event.src_path)

    def on_created(self, event: FileCreatedEvent | DirCreatedEvent) -> None:
        if event.is_directory:
            self._submit_tree(event.src_path)
            return
        if not self._in_inbox(event.src_path):
            return
        with self._lock:
            self._settling.add(event.src_path)
        self._loop.call_soon_threadsafe(
            self._loop.call_later, self._settle_seconds, self._settle, event.src_path
        )


async def watch_inbox(
    ingestor: Ingestor,
    inbox_root: Path,
    *,
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    stop: asyncio.Event | None = None,
) -> None:
    """Watch the inbox recursively and admit arrivals until stopped.

    Runs until ``stop`` is set or the task is cancelled. After the observer
    starts, the inbox is swept once more so that files landing between the
    startup scan and the watch registration are not missed; duplicate
    admissions are harmless because claiming is a rename.
    """
    loop = asyncio.get_running_loop()
    handler = InboxEventHandler(
        loop=loop,
        ingestor=ingestor,
        inbox_root=inbox_root,
        settle_seconds=settle_seconds,
    )

    observer = Observer()
    observer.schedule(handler, str(inbox_root), recursive=True)
    observer.start()
    logger.info("Watching %s for new files…", inbox_root)
    ingestor.admit_tree(inbox_root)

    try:
        while stop is None or not stop.is_set():
            await asyncio.sleep(1)
    except (asyncio.CancelledError, KeyboardInterrupt):
        pass
    finally:
        observer.stop()
        observer.join()
        logger.info("Watcher stopped.")


async def run_server(
    ingestor: Ingestor,
    inbox_root: Path,
    *,
    once: bool = False,
    settle_seconds: float = DEFAULT_SETTLE_SECONDS,
    stop: asyncio.Event | None = None,
) -> list:
    """Startup sequence: recover processing, sweep inbox, then watch.

    Files stranded in ``processing`` are drained to a terminal stage before
    any inbox file is admitted.

    Returns:
        The UploadResults of the recovery and inbox phases when ``once`` is
        set; an empty list in watch mode.
    """
    recovered = await ingestor.recover_processing()
    logger.info("Recovered %d file(s) from %s", len(recovered), Stage.PROCESSING)

    ingestor.scan_inbox()
    if once:
        return recovered + await ingestor.drain()

    await watch_inbox(ingestor, inbox_root, settle_seconds=settle_seconds, stop=stop)
    return []
