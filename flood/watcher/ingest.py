"""Admission control: claim arriving files and run them concurrently.

Every arrival source (startup scans, live filesystem events, tests) feeds
:meth:`Ingestor.admit`. Each admitted file runs in its own asyncio task,
guarded by a per-identity lock so one identity never has two in-flight
attempts while unrelated files proceed in parallel.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from pathlib import Path

from flood.schemas.transfer import Identity, Stage, UploadResult
from flood.staging.addressing import MalformedPathError
from flood.staging.layout import StageLayout
from flood.transfer.executor import UploadExecutor

logger = logging.getLogger(__name__)


class KeyedLocks:
    """A registry of asyncio locks, one per key, dropped when unused."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class Ingestor:
    """Owns the claim-and-submit path and the set of in-flight tasks.

    Usage::

        ingestor = Ingestor(layout, executor)
        await ingestor.recover_processing()   # drain crash leftovers first
        ingestor.scan_inbox()                 # then pre-existing arrivals
        ingestor.admit(inbox_path)            # then live events
        results = await ingestor.drain()
    """

    def __init__(self, layout: StageLayout, executor: UploadExecutor) -> None:
        self._layout = layout
        self._executor = executor
        self._locks = KeyedLocks()
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def _identify(self, path: Path, stage: Stage) -> Identity | None:
        try:
            return self._layout.identity_of(path) if self._layout.stage_of(path) == stage else None
        except MalformedPathError as exc:
            logger.warning("Dropping %s: %s", path, exc)
            return None

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s crashed", task.get_name(), exc_info=exc)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def admit(self, path: str | Path) -> asyncio.Task | None:
        """Submit an inbox arrival for claiming and upload.

        Malformed paths are logged and dropped. Returns the task handling
        the file, or None if the path was dropped.
        """
        path = Path(path)
        identity = self._identify(path, Stage.INBOX)
        if identity is None:
            return None
        return self._spawn(self._claim_and_process(path, identity), name=f"claim:{identity}")

    def admit_tree(self, directory: str | Path) -> list[asyncio.Task]:
        """Admit every file already present below an inbox directory."""
        tasks = []
        for item in sorted(Path(directory).rglob("*")):
            if item.is_file():
                task = self.admit(item)
                if task is not None:
                    tasks.append(task)
        return tasks

    async def _claim_and_process(self, path: Path, identity: Identity) -> UploadResult | None:
        async with self._locks.hold(identity):
            try:
                claimed = self._layout.claim(path)
            except OSError:
                logger.exception("Could not claim %s; leaving it in the inbox", path)
                return None
            if claimed is None:
                return None
            return await self._executor.process(claimed)

    async def _resume(self, path: Path, identity: Identity) -> UploadResult:
        async with self._locks.hold(identity):
            return await self._executor.process(path)

    # ------------------------------------------------------------------
    # Startup scans
    # ------------------------------------------------------------------

    async def recover_processing(self) -> list[UploadResult]:
        """Resubmit every file left in ``processing`` and wait for all of them.

        These are leftovers from a crash. Each restarts at attempt 0.
        """
        tasks = []
        for path in self._layout.iter_files(Stage.PROCESSING):
            identity = self._identify(path, Stage.PROCESSING)
            if identity is not None:
                logger.info("Recovering %s from processing", identity)
                tasks.append(self._spawn(self._resume(path, identity), name=f"recover:{identity}"))
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return [r for r in results if isinstance(r, UploadResult)]

    def scan_inbox(self) -> list[asyncio.Task]:
        """Admit every file already sitting in the inbox."""
        return self.admit_tree(self._layout.root(Stage.INBOX))

    async def drain(self) -> list[UploadResult]:
        """Wait until no admitted file is in flight; return what finished."""
        results: list[UploadResult] = []
        while self._tasks:
            done = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            results.extend(r for r in done if isinstance(r, UploadResult))
        return results
