class StoreError(Exception):
    """Blob storage failure."""


class InvalidLocation(StoreError):
    def __init__(self, message: str = "invalid file location for this store") -> None:
        super().__init__(message)


class StorageBackendError(StoreError):
    """Object store transport failure; wraps the SDK error."""


class LocalIOError(StoreError):
    """Filesystem failure while reading or writing a blob."""


class QueueError(Exception):
    """Task queue failure."""


class QueueBackendError(QueueError):
    pass


class QueueSerializationError(QueueError):
    pass


class DocStatusError(Exception):
    """Status store failure."""


class DocidNotFound(DocStatusError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"doc id {task_id} not found")
        self.task_id = task_id


class StatusBackendError(DocStatusError):
    pass


class StatusSerializationError(DocStatusError):
    pass


class InvalidTransition(ValueError):
    """Raised when a status change would move a task backward or out of a terminal stage."""


class ConversionError(Exception):
    """Raised by a conversion strategy that could not produce markdown."""
