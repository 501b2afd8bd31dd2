"""Shared fixtures: an in-memory store, stub converters and a service wired to them."""

from pathlib import Path

import pytest
from botocore.exceptions import EndpointConnectionError

from doc_pipeline.config import BACKEND_MEMORY, S3Config, Settings
from doc_pipeline.conversion import ConversionResult, ConversionService, MarkdownConversionMethod, Store
from doc_pipeline.conversion.memory import InMemoryStatusStore, InMemoryTaskQueue, LocalFileStore


class StubConverter:
    def __init__(self, markdown: str = "# Hello", error: Exception | None = None) -> None:
        self.markdown = markdown
        self.error = error
        self.calls: list[Path] = []

    def convert(self, path: Path) -> ConversionResult:
        self.calls.append(path)
        if self.error is not None:
            raise self.error
        return ConversionResult(markdown=self.markdown, metadata={"source": path.name})


def unreachable_client_factory(config, location):
    raise EndpointConnectionError(endpoint_url=location.endpoint)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        store_backend=BACKEND_MEMORY,
        local_store_path=tmp_path,
        domain="http://testserver",
        workers=0,
        job_timeout_sec=5.0,
        visibility_timeout_sec=0.0,
        max_upload_mb=1,
        allow_local_ingest=True,
        log_json=False,
    )


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(
        file_store=LocalFileStore(tmp_path, S3Config(), client_factory=unreachable_client_factory),
        task_queue=InMemoryTaskQueue(),
        status_store=InMemoryStatusStore(),
        backend=BACKEND_MEMORY,
    )


@pytest.fixture
def converter() -> StubConverter:
    return StubConverter()


@pytest.fixture
def converters(converter: StubConverter) -> dict:
    return {method: converter for method in MarkdownConversionMethod}


@pytest.fixture
def service(store: Store, converters: dict, tmp_path: Path) -> ConversionService:
    return ConversionService(store, converters, upload_dir=tmp_path / "uploads", workers=0, job_timeout=5.0)


@pytest.fixture
def pdf_file(tmp_path: Path) -> Path:
    path = tmp_path / "doc.pdf"
    path.write_bytes(b"%PDF-1.4\n%fake\n")
    return path
