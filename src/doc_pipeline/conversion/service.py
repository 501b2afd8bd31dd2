import asyncio
import os
from pathlib import Path
from typing import Awaitable, Callable, Mapping

import structlog

from .errors import (
    ConversionError,
    DocidNotFound,
    DocStatusError,
    InvalidTransition,
    QueueError,
    QueueSerializationError,
    StoreError,
)
from .interfaces import ConverterGateway
from .models import (
    ConversionResult,
    DocStatus,
    FileLocation,
    LocalPath,
    MarkdownConversionMethod,
    ProcessingStage,
    S3Location,
    TaskID,
    TaskMessage,
    new_task_id,
)
from .store import Store

log = structlog.get_logger(__name__)

CHUNK = 1024 * 1024


class UploadTooLarge(ValueError):
    pass


def safe_filename(name: str | None) -> str:
    base = os.path.basename((name or "").replace("\\", "/")).strip()
    cleaned = "".join(c if c.isalnum() or c in "._-" else "_" for c in base).lstrip(".")
    return cleaned or "upload.pdf"


class ConversionService:
    """Core domain service driving documents from submission to a terminal stage.

    This service is framework-agnostic. The ingestion side writes the
    initial ``Waiting`` status and then enqueues a task message; the worker
    side dequeues messages and moves each status through
    ``Processing -> Completed | Errored``. All state lives in the injected
    ``Store``; the service keeps none across iterations.
    """

    def __init__(
        self,
        store: Store,
        converters: Mapping[MarkdownConversionMethod, ConverterGateway],
        *,
        upload_dir: Path,
        workers: int = 1,
        poll_interval: float = 2.0,
        job_timeout: float = 1800.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._converters = dict(converters)
        self._upload_dir = Path(upload_dir)
        self._workers = workers
        self._poll_interval = poll_interval
        self._job_timeout = job_timeout
        self._sleep = sleep
        self._tasks: list[asyncio.Task] = []

    @property
    def store(self) -> Store:
        return self._store

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # Ingestion

    async def submit(self, status: DocStatus) -> DocStatus:
        """Persist a fresh ``Waiting`` status, then enqueue its task message.

        The status write happens before the enqueue so a worker never pops a
        message whose status is missing.
        """
        if status.status is not ProcessingStage.WAITING:
            raise InvalidTransition(f"task {status.request_id} must be submitted in Waiting, not {status.status.value}")
        await self._store.status_store.set_doc_status(status)
        await self._store.task_queue.enqueue(status.to_message())
        log.info(
            "Task submitted",
            task_id=status.request_id,
            location=str(status.file_location),
            method=status.conversion_method.value,
        )
        return status

    async def submit_location(
        self, location: FileLocation, method: MarkdownConversionMethod | str | None = None
    ) -> DocStatus:
        status = DocStatus.new(new_task_id(), location, MarkdownConversionMethod.parse(method))
        return await self.submit(status)

    async def submit_upload(
        self,
        filename: str | None,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_bytes: int,
        method: MarkdownConversionMethod | str | None = None,
    ) -> DocStatus:
        """Stream an upload to disk, hand it to the blob store and submit it."""
        conversion_method = MarkdownConversionMethod.parse(method)
        task_id = new_task_id()
        name = safe_filename(filename)
        input_path = self._upload_dir / str(task_id) / name

        def open_target():
            input_path.parent.mkdir(parents=True, exist_ok=True)
            return input_path.open("wb")

        size_bytes = 0
        try:
            with await asyncio.to_thread(open_target) as f_out:
                while True:
                    chunk = await reader(CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > max_bytes:
                        raise UploadTooLarge(f"upload exceeds {max_bytes // (1024 * 1024)} MB")
                    f_out.write(bytes(chunk))
        except UploadTooLarge:
            self._discard_local_copy(input_path)
            raise
        except OSError as e:
            raise StoreError(f"failed to store upload {name}: {e}") from e

        try:
            location = await self._store.file_store.upload(input_path, f"uploads/{task_id}/{name}")
        except Exception:
            self._discard_local_copy(input_path)
            raise
        if not isinstance(location, LocalPath):
            # the object store now holds the document
            self._discard_local_copy(input_path)
        log.info("Upload stored", task_id=task_id, size_bytes=size_bytes, location=str(location))

        try:
            return await self.submit(DocStatus.new(task_id, location, conversion_method))
        except Exception:
            await self._discard_upload(task_id, input_path, location)
            raise

    async def _discard_upload(self, task_id: TaskID, input_path: Path, location: FileLocation) -> None:
        """Best-effort removal of an upload whose task could not be queued."""
        self._discard_local_copy(input_path)
        if isinstance(location, LocalPath):
            return
        try:
            await self._store.file_store.delete(location)
        except StoreError:
            log.exception("Failed to remove orphaned upload", task_id=task_id, location=str(location))

    async def get_status(self, task_id: TaskID) -> DocStatus:
        return await self._store.status_store.get_doc_status(task_id)

    # Worker

    async def start(self) -> None:
        for i in range(self._workers):
            task = asyncio.create_task(self.worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def worker_loop(self, name: str) -> None:
        log.info("Starting pdf processing worker", worker=name)
        while True:
            try:
                handled = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Worker iteration failed", worker=name)
                handled = False
            if not handled:
                log.debug("No tasks detected, sleeping", worker=name, seconds=self._poll_interval)
                await self._sleep(self._poll_interval)

    async def run_once(self) -> bool:
        """Handle at most one queued task. Returns False if the queue was empty."""
        queue = self._store.task_queue
        try:
            message = await queue.dequeue()
        except QueueSerializationError:
            log.exception("Discarded undecodable task message")
            return True
        except QueueError:
            log.exception("Failed to poll task queue")
            return False

        if message is None:
            try:
                await queue.requeue_expired()
            except QueueError:
                log.exception("Failed to requeue expired tasks")
            return False

        try:
            await self.process(message)
        except asyncio.CancelledError:
            # no ack: the lease (if any) expires and the task is redelivered
            log.warning("Worker cancelled mid-task", task_id=message.id)
            raise
        except Exception:
            log.exception("Unhandled error while processing task", task_id=message.id)
        try:
            await queue.ack(message)
        except QueueError:
            log.exception("Failed to acknowledge task", task_id=message.id)
        return True

    async def process(self, message: TaskMessage) -> DocStatus | None:
        """Drive one task through the lifecycle, recording failures on the status.

        Returns the last status written, or None when the task was dropped
        before it reached ``Processing``.
        """
        task_log = log.bind(task_id=message.id)
        try:
            status = await self._store.status_store.get_doc_status(message.id)
        except DocidNotFound:
            task_log.error("DocStatus not found for dequeued task message; dropping it")
            return None
        except DocStatusError:
            task_log.exception("Failed to load status for dequeued task")
            return None

        if status.status.is_finished:
            task_log.info("Task already finished; skipping redelivery", stage=status.status.value)
            return status

        try:
            status.mark_processing()
            await self._store.status_store.set_doc_status(status)
        except (InvalidTransition, DocStatusError):
            task_log.exception("Failed to set status to Processing")
            return None
        task_log.info("Updated document to processing stage.")

        try:
            local_path = await asyncio.wait_for(
                self._store.file_store.download(status.file_location), timeout=self._job_timeout
            )
        except asyncio.TimeoutError:
            return await self._fail(status, f"Encountered error: download timed out after {self._job_timeout:g}s")
        except StoreError as e:
            return await self._fail(status, f"Encountered error: {e}")

        task_log.info(
            "Downloaded result successfully, processing pdf locally",
            local_path=str(local_path),
            method=status.conversion_method.value,
        )
        try:
            result = await self._convert(status.conversion_method, local_path)
        except asyncio.TimeoutError:
            return await self._fail(
                status, f"Encountered error processing pdf: conversion timed out after {self._job_timeout:g}s"
            )
        except Exception as e:
            task_log.error("Encountered error processing pdf", error=str(e))
            return await self._fail(status, f"Encountered error processing pdf: {e}")
        finally:
            if isinstance(status.file_location, S3Location) or self._is_owned_upload(local_path):
                self._discard_local_copy(local_path)

        superseded = await self._finished_elsewhere(status)
        if superseded is not None:
            return superseded
        status.mark_completed(result)
        try:
            await self._store.status_store.set_doc_status(status)
        except DocStatusError:
            task_log.exception("Encountered error pushing final data to status store")
            return status
        task_log.info("Successfully processed pdf", markdown_chars=len(result.markdown))
        return status

    async def _finished_elsewhere(self, status: DocStatus) -> DocStatus | None:
        """Return the stored status if another worker already finished this task.

        A worker whose lease expired mid-task races the worker the message
        was redelivered to; a terminal stage already in the store wins.
        """
        try:
            stored = await self._store.status_store.get_doc_status(status.request_id)
        except DocStatusError:
            # fall through to the write, which reports the store failure itself
            return None
        if stored.status.is_finished:
            log.warning(
                "Task finished by another worker; dropping late result",
                task_id=status.request_id,
                stage=stored.status.value,
            )
            return stored
        return None

    async def _convert(self, method: MarkdownConversionMethod, path: Path) -> ConversionResult:
        converter = self._converters.get(method)
        if converter is None:
            raise ConversionError(f"no converter registered for {method.value}")
        return await asyncio.wait_for(asyncio.to_thread(converter.convert, path), timeout=self._job_timeout)

    async def _fail(self, status: DocStatus, message: str) -> DocStatus:
        superseded = await self._finished_elsewhere(status)
        if superseded is not None:
            return superseded
        status.mark_errored(message)
        try:
            await self._store.status_store.set_doc_status(status)
        except DocStatusError:
            log.exception("Failed to record task error", task_id=status.request_id, error=message)
        else:
            log.warning("Task errored", task_id=status.request_id, error=message)
        return status

    def _is_owned_upload(self, path: Path) -> bool:
        return path.resolve().is_relative_to(self._upload_dir.resolve())

    def _discard_local_copy(self, path: Path) -> None:
        """Remove a scratch download or a finished task's upload."""
        try:
            path.unlink(missing_ok=True)
            if self._is_owned_upload(path.parent) and not any(path.parent.iterdir()):
                path.parent.rmdir()
        except OSError:
            log.warning("Failed to remove local document copy", path=str(path))
