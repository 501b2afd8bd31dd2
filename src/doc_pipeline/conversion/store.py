from dataclasses import dataclass

import structlog

from doc_pipeline.config import BACKEND_MEMORY, BACKEND_S3_REDIS, Settings

from .interfaces import FileStoreGateway, StatusStoreGateway, TaskQueueGateway
from .memory import InMemoryStatusStore, InMemoryTaskQueue, LocalFileStore
from .networked import RedisStatusStore, RedisTaskQueue, S3FileStore, get_redis_client

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Store:
    """The three storage capabilities, built once per process and passed around explicitly."""

    file_store: FileStoreGateway
    task_queue: TaskQueueGateway
    status_store: StatusStoreGateway
    backend: str


def build_in_memory_store(settings: Settings) -> Store:
    return Store(
        file_store=LocalFileStore(settings.local_store_path, settings.s3),
        task_queue=InMemoryTaskQueue(visibility_timeout=settings.visibility_timeout_sec),
        status_store=InMemoryStatusStore(),
        backend=BACKEND_MEMORY,
    )


def build_networked_store(settings: Settings) -> Store:
    client = get_redis_client(settings.redis_url)
    return Store(
        file_store=S3FileStore(settings.s3, settings.downloads_dir),
        task_queue=RedisTaskQueue(
            client,
            key_prefix=settings.redis_key_prefix,
            visibility_timeout=settings.visibility_timeout_sec,
        ),
        status_store=RedisStatusStore(client, key_prefix=settings.redis_key_prefix),
        backend=BACKEND_S3_REDIS,
    )


def build_store(settings: Settings) -> Store:
    store = build_networked_store(settings) if settings.store_backend == BACKEND_S3_REDIS else build_in_memory_store(settings)
    log.info("Store initialized", backend=store.backend)
    return store
