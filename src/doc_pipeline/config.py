import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigError(Exception):
    """Invalid or incomplete startup configuration."""


BACKEND_MEMORY = "memory"
BACKEND_S3_REDIS = "s3redis"
_BACKENDS = {BACKEND_MEMORY, BACKEND_S3_REDIS}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_TRUE = {"1", "true", "yes", "on"}


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE


def _optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class S3Config:
    endpoint: str = "https://sfo3.digitaloceanspaces.com"
    region: str = "sfo3"
    default_bucket: str = "crimsondocs"
    access_key: str | None = None
    secret_key: str | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_key and self.secret_key)


@dataclass(frozen=True)
class Settings:
    store_backend: str = BACKEND_MEMORY
    local_store_path: Path = Path("./data")
    s3: S3Config = field(default_factory=S3Config)
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "doc_pipeline"
    domain: str = "http://localhost:8080"
    workers: int = 1
    poll_interval_sec: float = 2.0
    job_timeout_sec: float = 1800.0
    visibility_timeout_sec: float = 4200.0
    max_upload_mb: int = 300
    allow_local_ingest: bool = False
    olmocr_service_url: str | None = None
    log_level: str = "INFO"
    log_json: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    reload: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            return cls(
                store_backend=os.getenv("STORE_BACKEND", BACKEND_MEMORY).strip().lower(),
                local_store_path=Path(os.getenv("LOCAL_STORE_PATH", "./data")).resolve(),
                s3=S3Config(
                    endpoint=os.getenv("S3_ENDPOINT", "https://sfo3.digitaloceanspaces.com"),
                    region=os.getenv("S3_CLOUD_REGION", "sfo3"),
                    default_bucket=os.getenv("S3_BUCKET", "crimsondocs"),
                    access_key=_optional("S3_ACCESS_KEY"),
                    secret_key=_optional("S3_SECRET_KEY"),
                ),
                redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
                redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", "doc_pipeline"),
                domain=os.getenv("DOMAIN", "http://localhost:8080").rstrip("/"),
                workers=int(os.getenv("WORKERS", "1")),
                poll_interval_sec=float(os.getenv("POLL_INTERVAL_SEC", "2.0")),
                job_timeout_sec=float(os.getenv("JOB_TIMEOUT_SEC", "1800")),
                visibility_timeout_sec=float(os.getenv("VISIBILITY_TIMEOUT_SEC", "4200")),
                max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "300")),
                allow_local_ingest=_flag("ALLOW_LOCAL_INGEST", "false"),
                olmocr_service_url=_optional("OLMOCR_SERVICE_URL"),
                log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
                log_json=_flag("LOG_JSON", "true"),
                host=os.getenv("HOST", "0.0.0.0"),
                port=int(os.getenv("PORT", "8080")),
                reload=_flag("RELOAD", "false"),
            )
        except ValueError as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e

    def validate(self) -> "Settings":
        """Fail fast on configuration that would only break later, per request."""
        problems: list[str] = []
        if self.store_backend not in _BACKENDS:
            problems.append(f"STORE_BACKEND must be one of {sorted(_BACKENDS)}, got {self.store_backend!r}")
        if self.log_level not in _LOG_LEVELS:
            problems.append(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}")
        if self.workers < 0:
            problems.append("WORKERS must be >= 0")
        if self.poll_interval_sec <= 0:
            problems.append("POLL_INTERVAL_SEC must be > 0")
        if self.job_timeout_sec <= 0:
            problems.append("JOB_TIMEOUT_SEC must be > 0")
        if self.visibility_timeout_sec < 0:
            problems.append("VISIBILITY_TIMEOUT_SEC must be >= 0")
        elif 0 < self.visibility_timeout_sec <= 2 * self.job_timeout_sec:
            # a lease must outlast the timed download plus the timed conversion
            problems.append("VISIBILITY_TIMEOUT_SEC must be 0 or greater than twice JOB_TIMEOUT_SEC")
        if self.max_upload_mb <= 0:
            problems.append("MAX_UPLOAD_MB must be > 0")
        if self.store_backend == BACKEND_S3_REDIS:
            if not self.s3.access_key:
                problems.append("S3_ACCESS_KEY must be set")
            if not self.s3.secret_key:
                problems.append("S3_SECRET_KEY must be set")
            if not self.s3.default_bucket:
                problems.append("S3_BUCKET must be set")
            if not self.s3.endpoint.startswith("https://"):
                problems.append("S3_ENDPOINT must be an https URL")
            if not self.redis_url:
                problems.append("REDIS_URL must be set")
        if problems:
            raise ConfigError("; ".join(problems))
        return self

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @property
    def uploads_dir(self) -> Path:
        return self.local_store_path / "uploads"

    @property
    def downloads_dir(self) -> Path:
        return self.local_store_path / "downloads"
