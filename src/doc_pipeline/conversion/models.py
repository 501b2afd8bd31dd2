"""Task and document status model.

A submitted document is tracked by a single ``DocStatus`` record keyed by a
random 64-bit ``TaskID``. The queue only carries a ``TaskMessage``
projection (id + location); the status store holds the authoritative record.
"""

import json
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Union

from .errors import InvalidLocation, InvalidTransition

TaskID = int

TASK_ID_BITS = 64
_HTTPS = "https://"


def new_task_id() -> TaskID:
    return secrets.randbits(TASK_ID_BITS)


def is_valid_task_id(value: int) -> bool:
    return 0 <= value < 2**TASK_ID_BITS


@dataclass(frozen=True)
class LocalPath:
    path: Path

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class S3Location:
    """Fully decomposed object-store address.

    Canonical string form is the virtual-hosted URL, e.g.
    ``https://examplebucket.sfo3.digitaloceanspaces.com/this/is/the/key``
    for bucket ``examplebucket``, region ``sfo3`` and endpoint
    ``https://sfo3.digitaloceanspaces.com``.
    """

    bucket: str
    key: str
    endpoint: str
    region: str

    def to_uri(self) -> str:
        host_part = self.endpoint.removeprefix(_HTTPS)
        key_part = self.key.lstrip("/")
        url = f"{_HTTPS}{self.bucket}.{host_part}"
        if key_part:
            url += "/" + key_part
        return url

    @classmethod
    def from_uri(cls, uri: str) -> "S3Location":
        if not uri.startswith(_HTTPS):
            raise InvalidLocation(f"not an https object-store URI: {uri!r}")
        host, _, key = uri[len(_HTTPS):].partition("/")
        labels = host.split(".")
        if len(labels) < 3 or not all(labels):
            raise InvalidLocation(f"object-store host needs bucket.region.domain: {host!r}")
        bucket, region, rest = labels[0], labels[1], ".".join(labels[2:])
        return cls(bucket=bucket, key=key, endpoint=f"{_HTTPS}{region}.{rest}", region=region)

    def __str__(self) -> str:
        return self.to_uri()


FileLocation = Union[LocalPath, S3Location]


def location_to_dict(location: FileLocation) -> dict[str, str]:
    if isinstance(location, LocalPath):
        return {"type": "local", "path": str(location.path)}
    return {
        "type": "s3",
        "bucket": location.bucket,
        "key": location.key,
        "endpoint": location.endpoint,
        "region": location.region,
    }


def location_from_dict(data: dict[str, Any]) -> FileLocation:
    kind = data.get("type")
    if kind == "local":
        return LocalPath(Path(data["path"]))
    if kind == "s3":
        return S3Location(
            bucket=data["bucket"], key=data["key"], endpoint=data["endpoint"], region=data["region"]
        )
    raise ValueError(f"unknown location type {kind!r}")


class ProcessingStage(str, Enum):
    WAITING = "Waiting"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    ERRORED = "Errored"

    @property
    def is_successful(self) -> bool:
        return self is ProcessingStage.COMPLETED

    @property
    def is_finished(self) -> bool:
        return self in (ProcessingStage.COMPLETED, ProcessingStage.ERRORED)


_ALLOWED_TRANSITIONS: dict[ProcessingStage, frozenset[ProcessingStage]] = {
    # Processing -> Processing covers redelivery of a task whose worker died.
    ProcessingStage.WAITING: frozenset({ProcessingStage.PROCESSING}),
    ProcessingStage.PROCESSING: frozenset(
        {ProcessingStage.PROCESSING, ProcessingStage.COMPLETED, ProcessingStage.ERRORED}
    ),
    ProcessingStage.COMPLETED: frozenset(),
    ProcessingStage.ERRORED: frozenset(),
}


class MarkdownConversionMethod(str, Enum):
    SIMPLE = "Simple"
    MARKER = "Marker"
    OLMOCR = "OlmOcr"

    @classmethod
    def default(cls) -> "MarkdownConversionMethod":
        return cls.SIMPLE

    @classmethod
    def parse(cls, value: "str | MarkdownConversionMethod | None") -> "MarkdownConversionMethod":
        if value is None or value == "":
            return cls.default()
        if isinstance(value, cls):
            return value
        wanted = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == wanted or member.name.lower() == wanted:
                return member
        raise ValueError(f"unknown conversion method {value!r}")


@dataclass
class ConversionResult:
    markdown: str
    images: dict[str, str] | None = None
    metadata: dict[str, str] | None = None


_IMMUTABLE_FIELDS = frozenset({"request_id", "file_location", "conversion_method"})


@dataclass
class DocStatus:
    """Aggregate record for one submitted document.

    ``request_id``, ``file_location`` and ``conversion_method`` are fixed at
    creation. ``status`` only moves forward through the ``mark_*`` methods;
    ``markdown`` is set only on completion and ``error`` only on failure.
    """

    request_id: TaskID
    file_location: FileLocation
    conversion_method: MarkdownConversionMethod = MarkdownConversionMethod.SIMPLE
    status: ProcessingStage = ProcessingStage.WAITING
    markdown: str | None = None
    images: dict[str, str] | None = None
    metadata: dict[str, str] | None = None
    error: str | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name in _IMMUTABLE_FIELDS and name in self.__dict__:
            raise AttributeError(f"{name} cannot change after creation")
        super().__setattr__(name, value)

    @classmethod
    def new(
        cls,
        task_id: TaskID,
        location: FileLocation,
        method: MarkdownConversionMethod = MarkdownConversionMethod.SIMPLE,
    ) -> "DocStatus":
        return cls(request_id=task_id, file_location=location, conversion_method=method)

    def _advance(self, target: ProcessingStage) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"task {self.request_id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_processing(self) -> None:
        self._advance(ProcessingStage.PROCESSING)

    def mark_completed(self, result: ConversionResult) -> None:
        self._advance(ProcessingStage.COMPLETED)
        self.markdown = result.markdown
        self.images = result.images
        self.metadata = result.metadata
        self.error = None

    def mark_errored(self, message: str) -> None:
        self._advance(ProcessingStage.ERRORED)
        self.error = message or "unknown error"
        self.markdown = None

    def to_message(self) -> "TaskMessage":
        return TaskMessage(id=self.request_id, location=self.file_location)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "file_location": location_to_dict(self.file_location),
            "conversion_method": self.conversion_method.value,
            "status": self.status.value,
            "markdown": self.markdown,
            "images": self.images,
            "metadata": self.metadata,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocStatus":
        return cls(
            request_id=int(data["request_id"]),
            file_location=location_from_dict(data["file_location"]),
            conversion_method=MarkdownConversionMethod(data["conversion_method"]),
            status=ProcessingStage(data["status"]),
            markdown=data.get("markdown"),
            images=data.get("images"),
            metadata=data.get("metadata"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class TaskMessage:
    id: TaskID
    location: FileLocation

    def to_json(self) -> str:
        # sorted keys keep the encoding stable; the Redis queue matches leases by raw payload
        return json.dumps({"id": self.id, "location": location_to_dict(self.location)}, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "TaskMessage":
        data = json.loads(raw)
        return cls(id=int(data["id"]), location=location_from_dict(data["location"]))
