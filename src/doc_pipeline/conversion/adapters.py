import base64
import io
import threading
from pathlib import Path
from typing import Any, Mapping

import requests
import structlog

from doc_pipeline.config import Settings

from .errors import ConversionError
from .interfaces import ConverterGateway
from .models import ConversionResult, MarkdownConversionMethod

log = structlog.get_logger(__name__)

_MARKDOWN_EXPORTS = ("export_to_markdown", "to_markdown", "as_markdown")


def _require_file(path: Path) -> None:
    if not path.exists():
        raise ConversionError(f"File access error: {path} does not exist")
    if not path.is_file():
        raise ConversionError(f"Path is not a file: {path}")


def _as_str_map(value: Any) -> dict[str, str] | None:
    if not value:
        return None
    if not isinstance(value, Mapping):
        raise ConversionError(f"expected a mapping, got {type(value).__name__}")
    return {str(k): str(v) for k, v in value.items()}


class DoclingConverter(ConverterGateway):
    """Default strategy: Docling's ``DocumentConverter``.

    The converter loads layout models on first use, so one instance is
    built lazily and reused across tasks.
    """

    def __init__(self) -> None:
        self._converter = None
        self._lock = threading.Lock()

    def _get_converter(self):
        with self._lock:
            if self._converter is None:
                try:
                    from docling.document_converter import DocumentConverter  # type: ignore
                except ImportError as e:
                    raise ConversionError("docling is not installed (pip install doc-pipeline[docling])") from e
                self._converter = DocumentConverter()
            return self._converter

    def convert(self, path: Path) -> ConversionResult:
        _require_file(path)
        converter = self._get_converter()
        try:
            result = converter.convert(str(path))
        except Exception as e:
            raise ConversionError(f"docling failed on {path.name}: {e}") from e

        # generic extraction across variants
        doc = getattr(result, "document", None)
        if doc is None:
            to_doc = getattr(result, "to_doc", None)
            doc = to_doc() if callable(to_doc) else result
        for m in _MARKDOWN_EXPORTS:
            fn = getattr(doc, m, None)
            if callable(fn):
                markdown = fn()
                break
        else:
            raise ConversionError("Doc object lacks markdown export method")

        metadata = {"source": path.name}
        pages = getattr(doc, "pages", None)
        if pages is not None:
            metadata["page_count"] = str(len(pages))
        return ConversionResult(markdown=markdown, metadata=metadata)


class MarkerConverter(ConverterGateway):
    """Layout-aware strategy backed by the ``marker-pdf`` package."""

    def __init__(self) -> None:
        self._converter = None
        self._lock = threading.Lock()

    def _get_converter(self):
        with self._lock:
            if self._converter is None:
                try:
                    from marker.converters.pdf import PdfConverter  # type: ignore
                    from marker.models import create_model_dict  # type: ignore
                except ImportError as e:
                    raise ConversionError("marker-pdf is not installed (pip install doc-pipeline[marker])") from e
                self._converter = PdfConverter(artifact_dict=create_model_dict())
            return self._converter

    @staticmethod
    def _encode_image(image: Any) -> str:
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return base64.b64encode(buf.getvalue()).decode("ascii")

    def convert(self, path: Path) -> ConversionResult:
        _require_file(path)
        converter = self._get_converter()
        try:
            from marker.output import text_from_rendered  # type: ignore

            rendered = converter(str(path))
            markdown, _, images = text_from_rendered(rendered)
        except Exception as e:
            raise ConversionError(f"marker failed on {path.name}: {e}") from e

        encoded = {name: self._encode_image(img) for name, img in (images or {}).items()}
        metadata = {"source": path.name}
        page_stats = (getattr(rendered, "metadata", None) or {}).get("page_stats")
        if page_stats is not None:
            metadata["page_count"] = str(len(page_stats))
        return ConversionResult(markdown=markdown, images=encoded or None, metadata=metadata)


class OlmOcrConverter(ConverterGateway):
    """Sends the document to an olmOCR conversion service over HTTP.

    The service answers with JSON ``{"markdown": ..., "images": {...}, "metadata": {...}}``.
    """

    def __init__(self, service_url: str | None, timeout: float = 600.0) -> None:
        self._url = service_url
        self._timeout = timeout

    def convert(self, path: Path) -> ConversionResult:
        if not self._url:
            raise ConversionError("OlmOcr service URL is not configured (OLMOCR_SERVICE_URL)")
        _require_file(path)
        try:
            with path.open("rb") as fh:
                resp = requests.post(
                    self._url,
                    files={"file": (path.name, fh, "application/pdf")},
                    timeout=self._timeout,
                )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise ConversionError(f"OlmOcr service request failed: {e}") from e
        except ValueError as e:
            raise ConversionError(f"OlmOcr service returned invalid JSON: {e}") from e

        markdown = data.get("markdown") if isinstance(data, dict) else None
        if not isinstance(markdown, str):
            raise ConversionError("OlmOcr service response has no markdown")
        return ConversionResult(
            markdown=markdown,
            images=_as_str_map(data.get("images")),
            metadata=_as_str_map(data.get("metadata")),
        )


def build_converters(settings: Settings) -> dict[MarkdownConversionMethod, ConverterGateway]:
    """Lookup table from method to strategy, built once at startup."""
    return {
        MarkdownConversionMethod.SIMPLE: DoclingConverter(),
        MarkdownConversionMethod.MARKER: MarkerConverter(),
        MarkdownConversionMethod.OLMOCR: OlmOcrConverter(
            settings.olmocr_service_url, timeout=settings.job_timeout_sec
        ),
    }
