"""
Domain layer for the document conversion pipeline.
Provides the task/status model, storage interfaces (gateways) with
in-memory and networked backends, and a service that ingests documents
and runs the worker state machine, so front-ends (HTTP or others) can use
the same core logic.
"""

from .interfaces import ConverterGateway, FileStoreGateway, StatusStoreGateway, TaskQueueGateway
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
from .service import ConversionService
from .store import Store, build_store
