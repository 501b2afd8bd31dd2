from pathlib import Path

import pytest

from doc_pipeline.config import BACKEND_MEMORY, BACKEND_S3_REDIS, ConfigError, Settings

ENV_VARS = [
    "STORE_BACKEND",
    "LOCAL_STORE_PATH",
    "S3_ENDPOINT",
    "S3_CLOUD_REGION",
    "S3_BUCKET",
    "S3_ACCESS_KEY",
    "S3_SECRET_KEY",
    "REDIS_URL",
    "DOMAIN",
    "WORKERS",
    "LOG_LEVEL",
    "ALLOW_LOCAL_INGEST",
    "MAX_UPLOAD_MB",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings.from_env().validate()
    assert settings.store_backend == BACKEND_MEMORY
    assert settings.s3.endpoint == "https://sfo3.digitaloceanspaces.com"
    assert settings.s3.region == "sfo3"
    assert settings.s3.default_bucket == "crimsondocs"
    assert settings.workers == 1
    assert settings.poll_interval_sec == 2.0
    assert settings.allow_local_ingest is False
    assert settings.local_store_path.is_absolute()


def test_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("LOCAL_STORE_PATH", str(tmp_path))
    monkeypatch.setenv("DOMAIN", "https://docs.example.com/")
    monkeypatch.setenv("WORKERS", "4")
    monkeypatch.setenv("ALLOW_LOCAL_INGEST", "yes")
    monkeypatch.setenv("MAX_UPLOAD_MB", "10")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env().validate()

    assert settings.local_store_path == tmp_path.resolve()
    assert settings.uploads_dir == tmp_path.resolve() / "uploads"
    assert settings.domain == "https://docs.example.com"
    assert settings.workers == 4
    assert settings.allow_local_ingest is True
    assert settings.max_upload_bytes == 10 * 1024 * 1024
    assert settings.log_level == "DEBUG"


def test_non_numeric_value_is_config_error(monkeypatch):
    monkeypatch.setenv("WORKERS", "many")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_networked_backend_requires_credentials(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", BACKEND_S3_REDIS)
    with pytest.raises(ConfigError) as exc:
        Settings.from_env().validate()
    assert "S3_ACCESS_KEY" in str(exc.value)
    assert "S3_SECRET_KEY" in str(exc.value)


def test_networked_backend_with_credentials_is_valid(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "S3Redis")
    monkeypatch.setenv("S3_ACCESS_KEY", "key")
    monkeypatch.setenv("S3_SECRET_KEY", "secret")
    settings = Settings.from_env().validate()
    assert settings.store_backend == BACKEND_S3_REDIS
    assert settings.s3.has_credentials


@pytest.mark.parametrize(
    "overrides",
    [
        {"store_backend": "postgres"},
        {"log_level": "LOUD"},
        {"workers": -1},
        {"poll_interval_sec": 0},
        {"job_timeout_sec": 0},
        {"visibility_timeout_sec": -5},
        {"max_upload_mb": 0},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ConfigError):
        Settings(local_store_path=Path("/tmp"), **overrides).validate()


def test_default_lease_outlasts_a_full_job():
    settings = Settings.from_env().validate()
    assert settings.visibility_timeout_sec > 2 * settings.job_timeout_sec


@pytest.mark.parametrize("visibility", [60, 1800, 3600])
def test_lease_shorter_than_download_plus_conversion_is_rejected(visibility):
    with pytest.raises(ConfigError) as exc:
        Settings(local_store_path=Path("/tmp"), job_timeout_sec=1800, visibility_timeout_sec=visibility).validate()
    assert "VISIBILITY_TIMEOUT_SEC" in str(exc.value)


@pytest.mark.parametrize("visibility", [0, 3601])
def test_lease_disabled_or_long_enough_is_valid(visibility):
    settings = Settings(
        local_store_path=Path("/tmp"), job_timeout_sec=1800, visibility_timeout_sec=visibility
    ).validate()
    assert settings.visibility_timeout_sec == visibility
