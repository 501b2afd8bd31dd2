"""Single-process backends: local files, in-memory queue and status map.

The queue and the status map are each guarded by one ``threading.Lock``
held only around the deque/dict operation, so they stay correct whether
callers share an event loop or run on separate threads.
"""

import asyncio
import copy
import threading
import time
from collections import deque
from pathlib import Path
from typing import Callable

import structlog

from doc_pipeline.config import S3Config

from .errors import DocidNotFound, InvalidLocation, LocalIOError
from .models import DocStatus, FileLocation, LocalPath, S3Location, TaskID, TaskMessage
from .s3 import ClientFactory, client_for_location, download_object

log = structlog.get_logger(__name__)


def resolve_under(base: Path, relative: str | Path) -> Path:
    """Join ``relative`` onto ``base``, refusing results that escape ``base``."""
    base = base.resolve()
    target = (base / str(relative).lstrip("/")).resolve()
    if not target.is_relative_to(base):
        raise InvalidLocation(f"path {relative!s} escapes {base}")
    return target


class LocalFileStore:
    """Blob store for documents already on this machine.

    ``upload`` is an identity mapping. ``download`` of an object-store
    location fetches the object beneath the base directory so the worker can
    read it from disk.
    """

    def __init__(
        self,
        base_dir: Path,
        s3_config: S3Config,
        client_factory: ClientFactory = client_for_location,
    ) -> None:
        self._base = Path(base_dir).resolve()
        self._s3 = s3_config
        self._client_factory = client_factory

    @property
    def base_dir(self) -> Path:
        return self._base

    def _resolve(self, location: LocalPath) -> Path:
        if location.path.is_absolute():
            return location.path
        return resolve_under(self._base, location.path)

    async def upload(self, local_path: Path, key: str) -> FileLocation:
        return LocalPath(Path(local_path))

    async def download(self, location: FileLocation) -> Path:
        if isinstance(location, LocalPath):
            return self._resolve(location)
        if not isinstance(location, S3Location):
            raise InvalidLocation()
        target = resolve_under(self._base / "downloads" / location.bucket, location.key)
        return await download_object(self._client_factory, self._s3, location, target)

    async def delete(self, location: FileLocation) -> None:
        if not isinstance(location, LocalPath):
            raise InvalidLocation("local store can only delete local paths")
        path = self._resolve(location)
        try:
            await asyncio.to_thread(path.unlink)
        except OSError as e:
            raise LocalIOError(f"failed to delete {path}: {e}") from e


class InMemoryTaskQueue:
    """FIFO queue of task messages with optional visibility leases.

    With ``visibility_timeout`` > 0, a dequeued message stays leased until
    ``ack``; ``requeue_expired`` puts messages whose lease ran out back on
    the tail.
    """

    def __init__(self, visibility_timeout: float = 0.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._queue: deque[TaskMessage] = deque()
        self._leases: dict[TaskMessage, float] = {}
        self._visibility_timeout = visibility_timeout
        self._clock = clock

    async def enqueue(self, message: TaskMessage) -> None:
        with self._lock:
            self._queue.append(message)

    async def dequeue(self) -> TaskMessage | None:
        with self._lock:
            if not self._queue:
                return None
            message = self._queue.popleft()
            if self._visibility_timeout > 0:
                self._leases[message] = self._clock() + self._visibility_timeout
            return message

    async def ack(self, message: TaskMessage) -> None:
        with self._lock:
            self._leases.pop(message, None)

    async def requeue_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [m for m, deadline in self._leases.items() if deadline <= now]
            for message in expired:
                del self._leases[message]
                self._queue.append(message)
        if expired:
            log.warning("Requeued messages with expired leases", count=len(expired))
        return len(expired)

    def qsize(self) -> int:
        with self._lock:
            return len(self._queue)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._leases)


class InMemoryStatusStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[TaskID, DocStatus] = {}

    async def set_doc_status(self, status: DocStatus) -> None:
        snapshot = copy.deepcopy(status)
        with self._lock:
            self._statuses[status.request_id] = snapshot

    async def get_doc_status(self, task_id: TaskID) -> DocStatus:
        with self._lock:
            status = self._statuses.get(task_id)
        if status is None:
            raise DocidNotFound(task_id)
        return copy.deepcopy(status)
