import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Mapping

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from doc_pipeline import __version__
from doc_pipeline.config import ConfigError, Settings
from doc_pipeline.conversion import (
    ConversionService,
    ConverterGateway,
    DocStatus,
    LocalPath,
    MarkdownConversionMethod,
    S3Location,
    Store,
    build_store,
)
from doc_pipeline.conversion.adapters import build_converters
from doc_pipeline.conversion.errors import (
    DocidNotFound,
    DocStatusError,
    InvalidLocation,
    QueueError,
    StoreError,
)
from doc_pipeline.conversion.models import is_valid_task_id
from doc_pipeline.conversion.service import UploadTooLarge
from doc_pipeline.logging_config import setup_logging

log = structlog.get_logger(__name__)

PDF_MIME = {"application/pdf", "application/x-pdf"}
# some clients label every upload this way; the extension decides then
GENERIC_MIME = {"", "application/octet-stream", "binary/octet-stream"}


class DocStatusResponse(BaseModel):
    request_id: int
    request_check_url: str
    request_check_leaf: str
    markdown: str | None = None
    status: str
    success: bool
    completed: bool
    images: dict[str, str] | None = None
    metadata: dict[str, str] | None = None
    error: str | None = None


class IngestS3Request(BaseModel):
    s3_uri: str
    conversion_method: str | None = None


class IngestLocalRequest(BaseModel):
    path: str
    conversion_method: str | None = None


class ServerInfo(BaseModel):
    name: str
    version: str
    backend: str


def request_check_leaf(task_id: int) -> str:
    return f"/v1/status/{task_id}"


def to_response(doc: DocStatus, domain: str) -> DocStatusResponse:
    leaf = request_check_leaf(doc.request_id)
    return DocStatusResponse(
        request_id=doc.request_id,
        request_check_url=domain.rstrip("/") + leaf,
        request_check_leaf=leaf,
        markdown=doc.markdown,
        status=doc.status.value,
        success=doc.status.is_successful,
        completed=doc.status.is_finished,
        images=doc.images,
        metadata=doc.metadata,
        error=doc.error,
    )


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _parse_method(value: str | None) -> MarkdownConversionMethod:
    try:
        return MarkdownConversionMethod.parse(value)
    except ValueError as e:
        allowed = ", ".join(m.value for m in MarkdownConversionMethod)
        raise _error(422, "invalid_conversion_method", f"{e}; expected one of {allowed}")


def _accepted(doc: DocStatus, settings: Settings) -> JSONResponse:
    body = to_response(doc, settings.domain)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={"Location": body.request_check_leaf},
    )


def get_service(request: Request) -> ConversionService:
    return request.app.state.service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def _submit(coro) -> DocStatus:
    try:
        return await coro
    except UploadTooLarge as e:
        raise _error(413, "payload_too_large", str(e))
    except InvalidLocation as e:
        raise _error(400, "invalid_location", str(e))
    except (StoreError, QueueError, DocStatusError) as e:
        log.error("Ingestion failed", error=str(e), error_type=type(e).__name__)
        raise _error(503, "ingest_failed", f"could not queue document: {e}")


v1 = APIRouter()
admin = APIRouter()


@v1.get("/health", response_class=PlainTextResponse)
def health() -> str:
    """Basic health check endpoint."""
    return "Service is Healthy"


@v1.post("/ingest/upload", status_code=status.HTTP_202_ACCEPTED, response_model=DocStatusResponse)
async def ingest_upload(
    file: UploadFile = File(...),
    conversion_method: str | None = Form(None),
    service: ConversionService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Queue an uploaded PDF for conversion.

    Accepts multipart/form-data with a required part named "file" and an
    optional "conversion_method". Returns 202 Accepted with the task id and
    the URL to poll.
    """
    ct = (file.content_type or "").strip().lower()
    fn = (file.filename or "").lower()
    if ct not in PDF_MIME and not (ct in GENERIC_MIME and fn.endswith(".pdf")):
        raise _error(415, "unsupported_media_type", f"content-type {file.content_type} not allowed")
    method = _parse_method(conversion_method)

    doc = await _submit(
        service.submit_upload(file.filename, file.read, max_bytes=settings.max_upload_bytes, method=method)
    )
    return _accepted(doc, settings)


@v1.post("/ingest/s3", status_code=status.HTTP_202_ACCEPTED, response_model=DocStatusResponse)
async def ingest_s3(
    body: IngestS3Request,
    service: ConversionService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    method = _parse_method(body.conversion_method)
    try:
        location = S3Location.from_uri(body.s3_uri.strip())
    except InvalidLocation as e:
        raise _error(400, "invalid_location", str(e))
    doc = await _submit(service.submit_location(location, method))
    return _accepted(doc, settings)


@v1.post("/ingest/local", status_code=status.HTTP_202_ACCEPTED, response_model=DocStatusResponse)
async def ingest_local(
    body: IngestLocalRequest,
    service: ConversionService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Debug route: queue a file that is already on the server's disk."""
    if not settings.allow_local_ingest:
        raise _error(403, "forbidden", "local path ingestion is disabled")
    if not body.path.strip():
        raise _error(400, "invalid_location", "path must not be empty")
    method = _parse_method(body.conversion_method)
    doc = await _submit(service.submit_location(LocalPath(Path(body.path)), method))
    return _accepted(doc, settings)


@v1.get("/status/{task_id}", response_model=DocStatusResponse)
async def get_status(
    task_id: int,
    service: ConversionService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> DocStatusResponse:
    if not is_valid_task_id(task_id):
        raise _error(404, "not_found", "task not found")
    try:
        doc = await service.get_status(task_id)
    except DocidNotFound:
        raise _error(404, "not_found", "task not found")
    except DocStatusError as e:
        log.error("Status lookup failed", task_id=task_id, error=str(e))
        raise _error(503, "status_unavailable", "status store unavailable")
    return to_response(doc, settings.domain)


@admin.get("/info", response_model=ServerInfo)
def server_info(request: Request) -> ServerInfo:
    service: ConversionService = request.app.state.service
    return ServerInfo(name="doc-pipeline", version=__version__, backend=service.store.backend)


def create_app(
    settings: Settings | None = None,
    store: Store | None = None,
    converters: Mapping[MarkdownConversionMethod, ConverterGateway] | None = None,
    *,
    start_workers: bool = True,
) -> FastAPI:
    """Build the application. Collaborators not supplied are built from the environment at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = (settings or Settings.from_env()).validate()
        setup_logging(cfg.log_level, cfg.log_json)
        cfg.uploads_dir.mkdir(parents=True, exist_ok=True)
        service = ConversionService(
            store or build_store(cfg),
            converters if converters is not None else build_converters(cfg),
            upload_dir=cfg.uploads_dir,
            workers=cfg.workers if start_workers else 0,
            poll_interval=cfg.poll_interval_sec,
            job_timeout=cfg.job_timeout_sec,
        )
        app.state.settings = cfg
        app.state.service = service
        await service.start()
        log.info("Service started", backend=service.store.backend, workers=cfg.workers if start_workers else 0)
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="Document Pipeline",
        version=os.getenv("DOC_PIPELINE_VERSION", __version__),
        description="Queues PDFs for asynchronous conversion to Markdown and reports their progress.",
        lifespan=lifespan,
    )
    app.include_router(v1, prefix="/v1", tags=["documents"])
    app.include_router(admin, prefix="/admin", tags=["admin"])
    return app


app = create_app()


def run() -> None:
    """Run the API (and in-process workers) with uvicorn.

    Exposes the app at HOST:PORT (default 0.0.0.0:8080).
    """
    import uvicorn

    try:
        settings = Settings.from_env().validate()
    except ConfigError as e:
        print(f"FATAL: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(1)

    uvicorn.run("doc_pipeline.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()
