import asyncio
import logging
from dataclasses import replace
from pathlib import Path

import pytest

from doc_pipeline import worker
from doc_pipeline.conversion import ConversionService, LocalPath, ProcessingStage
from doc_pipeline.logging_config import setup_logging


@pytest.mark.asyncio
async def test_standalone_worker_processes_queued_tasks(monkeypatch, settings, store, converters):
    monkeypatch.setattr(worker, "build_store", lambda s: store)
    monkeypatch.setattr(worker, "build_converters", lambda s: converters)
    api_side = ConversionService(store, converters, upload_dir=settings.uploads_dir, workers=0)
    status = await api_side.submit_location(LocalPath(Path("/tmp/doc.pdf")))

    stop = asyncio.Event()
    runner = asyncio.create_task(worker.run_worker(replace(settings, poll_interval_sec=0.01), stop))
    for _ in range(200):
        if (await api_side.get_status(status.request_id)).status.is_finished:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await runner

    assert (await api_side.get_status(status.request_id)).status is ProcessingStage.COMPLETED


def test_worker_refuses_invalid_configuration(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "s3redis")
    monkeypatch.delenv("S3_ACCESS_KEY", raising=False)
    with pytest.raises(SystemExit) as exc:
        worker.main()
    assert exc.value.code == 1


def test_setup_logging_quiets_noisy_libraries():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        setup_logging("DEBUG", json_logs=True)
        assert root.level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)
