import time
from pathlib import Path
from typing import Any, BinaryIO

import requests

FINISHED = {"Completed", "Errored"}


class ClientError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DocPipelineClient:
    """Small HTTP client for the document pipeline API."""

    def __init__(self, base_url: str, timeout: float = 60.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ClientError(f"Failed to connect to API: {e}") from e
        if resp.status_code not in (200, 202):
            raise ClientError(f"{method} {path} failed: {resp.status_code} {resp.text}", resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ClientError(f"{method} {path} returned invalid JSON") from e

    def submit_file(
        self,
        file: str | Path | BinaryIO,
        filename: str | None = None,
        conversion_method: str | None = None,
    ) -> dict[str, Any]:
        data = {"conversion_method": conversion_method} if conversion_method else None
        if isinstance(file, (str, Path)):
            path = Path(file)
            with path.open("rb") as fh:
                files = {"file": (filename or path.name, fh, "application/pdf")}
                return self._request("POST", "/v1/ingest/upload", files=files, data=data)
        files = {"file": (filename or "upload.pdf", file, "application/pdf")}
        return self._request("POST", "/v1/ingest/upload", files=files, data=data)

    def submit_s3(self, s3_uri: str, conversion_method: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"s3_uri": s3_uri}
        if conversion_method:
            body["conversion_method"] = conversion_method
        return self._request("POST", "/v1/ingest/s3", json=body)

    def get_status(self, task_id: int) -> dict[str, Any]:
        return self._request("GET", f"/v1/status/{task_id}")

    def wait_until_finished(self, task_id: int, interval: float = 2.0, timeout: float = 1800.0) -> dict[str, Any]:
        """Poll until the task is Completed or Errored; raises ClientError on timeout."""
        deadline = time.monotonic() + timeout
        while True:
            data = self.get_status(task_id)
            if data.get("completed") or data.get("status") in FINISHED:
                return data
            if time.monotonic() >= deadline:
                raise ClientError(f"task {task_id} still {data.get('status')} after {timeout:g}s")
            time.sleep(interval)
