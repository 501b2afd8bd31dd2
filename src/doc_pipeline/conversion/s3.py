import asyncio
from pathlib import Path
from typing import Callable

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from doc_pipeline.config import S3Config

from .errors import LocalIOError, StorageBackendError
from .models import S3Location

log = structlog.get_logger(__name__)

ClientFactory = Callable[[S3Config, S3Location], object]


def make_s3_client(config: S3Config, endpoint: str | None = None, region: str | None = None):
    """Build a boto3 S3 client for ``endpoint``/``region`` using the configured credentials."""
    return boto3.client(
        "s3",
        region_name=region or config.region,
        endpoint_url=endpoint or config.endpoint,
        aws_access_key_id=config.access_key,
        aws_secret_access_key=config.secret_key,
        config=Config(retries={"max_attempts": 3, "mode": "standard"}),
    )


def client_for_location(config: S3Config, location: S3Location):
    # Locations carry their own endpoint and region, so clients are per location.
    return make_s3_client(config, endpoint=location.endpoint, region=location.region)


async def download_object(
    client_factory: ClientFactory, config: S3Config, location: S3Location, target: Path
) -> Path:
    log.info("Downloading object", location=str(location), target=str(target))

    def fetch() -> bytes:
        client = client_factory(config, location)
        response = client.get_object(Bucket=location.bucket, Key=location.key)  # type: ignore[attr-defined]
        return response["Body"].read()

    try:
        data = await asyncio.to_thread(fetch)
    except (BotoCoreError, ClientError, ValueError) as e:
        raise StorageBackendError(f"failed to fetch {location}: {e}") from e

    def write() -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    try:
        await asyncio.to_thread(write)
    except OSError as e:
        raise LocalIOError(f"failed to write {target}: {e}") from e
    log.info("Object downloaded", location=str(location), size_bytes=len(data))
    return target
