from pathlib import Path
from typing import Protocol, runtime_checkable

from .models import ConversionResult, DocStatus, FileLocation, TaskID, TaskMessage


@runtime_checkable
class ConverterGateway(Protocol):
    def convert(self, path: Path) -> ConversionResult:
        """Convert the file at ``path`` into Markdown synchronously.
        This is a blocking call; callers should offload to threads if needed.
        """


@runtime_checkable
class FileStoreGateway(Protocol):
    async def upload(self, local_path: Path, key: str) -> FileLocation:
        ...

    async def download(self, location: FileLocation) -> Path:
        ...

    async def delete(self, location: FileLocation) -> None:
        ...


@runtime_checkable
class TaskQueueGateway(Protocol):
    """FIFO of task messages. ``dequeue`` hands any message to exactly one caller."""

    async def enqueue(self, message: TaskMessage) -> None:
        ...

    async def dequeue(self) -> TaskMessage | None:
        ...

    async def ack(self, message: TaskMessage) -> None:
        ...

    async def requeue_expired(self) -> int:
        ...


@runtime_checkable
class StatusStoreGateway(Protocol):
    async def set_doc_status(self, status: DocStatus) -> None:
        ...

    async def get_doc_status(self, task_id: TaskID) -> DocStatus:
        ...
