"""Networked backends: S3-compatible object store plus Redis queue and status store.

Multiple API and worker processes can share these. Dequeue atomicity comes
from Redis list pops (``LPOP``/``LMOVE``), which hand each element to one
client only.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Callable

import redis
import structlog
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from redis.exceptions import RedisError

from doc_pipeline.config import S3Config

from .errors import (
    DocidNotFound,
    InvalidLocation,
    LocalIOError,
    QueueBackendError,
    QueueSerializationError,
    StatusBackendError,
    StatusSerializationError,
    StorageBackendError,
)
from .memory import resolve_under
from .models import DocStatus, FileLocation, S3Location, TaskID, TaskMessage
from .s3 import ClientFactory, client_for_location, download_object

log = structlog.get_logger(__name__)

# KEYS: leases zset, processing list, queue list. ARGV: raw message.
# ZREM succeeds for exactly one caller, so concurrent reapers requeue a message once.
_REQUEUE_SCRIPT = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 1 then
    redis.call("LREM", KEYS[2], 1, ARGV[1])
    redis.call("RPUSH", KEYS[3], ARGV[1])
    return 1
end
return 0
"""

# KEYS: queue list, processing list, leases zset. ARGV: lease deadline.
# Move and lease in one step so a popped message always has a lease entry.
_LEASE_POP_SCRIPT = """
local raw = redis.call("LMOVE", KEYS[1], KEYS[2], "LEFT", "RIGHT")
if raw then
    redis.call("ZADD", KEYS[3], ARGV[1], raw)
end
return raw
"""


def get_redis_client(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


class S3FileStore:
    """Blob store backed by an S3-compatible object store.

    Uploads go to the default bucket. Downloads land in ``scratch_dir`` so the
    conversion strategy can read a local file.
    """

    def __init__(
        self,
        config: S3Config,
        scratch_dir: Path,
        client_factory: ClientFactory = client_for_location,
    ) -> None:
        self._config = config
        self._scratch = Path(scratch_dir).resolve()
        self._client_factory = client_factory

    def location_for(self, key: str) -> S3Location:
        return S3Location(
            bucket=self._config.default_bucket,
            key=key.lstrip("/"),
            endpoint=self._config.endpoint,
            region=self._config.region,
        )

    def _require_s3(self, location: FileLocation) -> S3Location:
        if not isinstance(location, S3Location):
            raise InvalidLocation("object store only accepts object-store locations")
        return location

    async def upload(self, local_path: Path, key: str) -> FileLocation:
        location = self.location_for(key)
        log.info("Uploading file to object store", local_path=str(local_path), location=str(location))

        def put() -> None:
            client = self._client_factory(self._config, location)
            client.upload_file(str(local_path), location.bucket, location.key)  # type: ignore[attr-defined]

        try:
            await asyncio.to_thread(put)
        except (BotoCoreError, ClientError, Boto3Error) as e:
            raise StorageBackendError(f"failed to upload {local_path} to {location}: {e}") from e
        except OSError as e:
            raise LocalIOError(f"failed to read {local_path}: {e}") from e
        return location

    async def download(self, location: FileLocation) -> Path:
        s3_location = self._require_s3(location)
        target = resolve_under(self._scratch / s3_location.bucket, s3_location.key)
        return await download_object(self._client_factory, self._config, s3_location, target)

    async def delete(self, location: FileLocation) -> None:
        s3_location = self._require_s3(location)

        def remove() -> None:
            client = self._client_factory(self._config, s3_location)
            client.delete_object(Bucket=s3_location.bucket, Key=s3_location.key)  # type: ignore[attr-defined]

        try:
            await asyncio.to_thread(remove)
        except (BotoCoreError, ClientError) as e:
            raise StorageBackendError(f"failed to delete {s3_location}: {e}") from e
        log.info("Object deleted", location=str(s3_location))


class RedisTaskQueue:
    """FIFO task queue on a Redis list.

    Without a visibility timeout, ``dequeue`` is a plain ``LPOP``. With one,
    the message is moved to a processing list and leased in a sorted set
    scored by its deadline, both inside one Lua script; ``ack`` clears both.
    """

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: str = "doc_pipeline",
        visibility_timeout: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.queue_key = f"{key_prefix}:task_queue"
        self.processing_key = f"{key_prefix}:task_queue:processing"
        self.leases_key = f"{key_prefix}:task_queue:leases"
        self._visibility_timeout = visibility_timeout
        self._clock = clock
        self._requeue = self.client.register_script(_REQUEUE_SCRIPT)
        self._lease_pop = self.client.register_script(_LEASE_POP_SCRIPT)

    @property
    def leased(self) -> bool:
        return self._visibility_timeout > 0

    async def enqueue(self, message: TaskMessage) -> None:
        try:
            await asyncio.to_thread(self.client.rpush, self.queue_key, message.to_json())
        except RedisError as e:
            raise QueueBackendError(f"enqueue failed: {e}") from e

    def _pop(self) -> str | None:
        if not self.leased:
            return self.client.lpop(self.queue_key)
        return self._lease_pop(
            keys=[self.queue_key, self.processing_key, self.leases_key],
            args=[self._clock() + self._visibility_timeout],
        )

    def _discard(self, raw: str) -> None:
        if self.leased:
            pipe = self.client.pipeline()
            pipe.lrem(self.processing_key, 1, raw)
            pipe.zrem(self.leases_key, raw)
            pipe.execute()

    async def dequeue(self) -> TaskMessage | None:
        try:
            raw = await asyncio.to_thread(self._pop)
        except RedisError as e:
            raise QueueBackendError(f"dequeue failed: {e}") from e
        if raw is None:
            return None
        try:
            return TaskMessage.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            log.error("Dropping malformed task message", raw=raw[:200])
            try:
                await asyncio.to_thread(self._discard, raw)
            except RedisError:
                log.exception("Failed to discard malformed task message")
            raise QueueSerializationError(f"malformed task message: {e}") from e

    async def ack(self, message: TaskMessage) -> None:
        if not self.leased:
            return
        try:
            await asyncio.to_thread(self._discard, message.to_json())
        except RedisError as e:
            raise QueueBackendError(f"ack failed: {e}") from e

    async def requeue_expired(self) -> int:
        if not self.leased:
            return 0

        def reap() -> int:
            expired = self.client.zrangebyscore(self.leases_key, "-inf", self._clock())
            requeued = 0
            for raw in expired:
                requeued += int(
                    self._requeue(keys=[self.leases_key, self.processing_key, self.queue_key], args=[raw])
                )
            return requeued

        try:
            count = await asyncio.to_thread(reap)
        except RedisError as e:
            raise QueueBackendError(f"requeue failed: {e}") from e
        if count:
            log.warning("Requeued messages with expired leases", count=count)
        return count

    async def qsize(self) -> int:
        try:
            return int(await asyncio.to_thread(self.client.llen, self.queue_key))
        except RedisError as e:
            raise QueueBackendError(f"llen failed: {e}") from e


class RedisStatusStore:
    def __init__(self, client: redis.Redis, key_prefix: str = "doc_pipeline") -> None:
        self.client = client
        self._prefix = f"{key_prefix}:doc_status"

    def key_for(self, task_id: TaskID) -> str:
        return f"{self._prefix}:{task_id}"

    async def set_doc_status(self, status: DocStatus) -> None:
        try:
            payload = json.dumps(status.to_dict(), sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StatusSerializationError(f"cannot encode status {status.request_id}: {e}") from e
        try:
            await asyncio.to_thread(self.client.set, self.key_for(status.request_id), payload)
        except RedisError as e:
            raise StatusBackendError(f"set failed for {status.request_id}: {e}") from e

    async def get_doc_status(self, task_id: TaskID) -> DocStatus:
        try:
            raw = await asyncio.to_thread(self.client.get, self.key_for(task_id))
        except RedisError as e:
            raise StatusBackendError(f"get failed for {task_id}: {e}") from e
        if raw is None:
            raise DocidNotFound(task_id)
        try:
            return DocStatus.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise StatusSerializationError(f"corrupt status for {task_id}: {e}") from e
