import os
from pathlib import Path


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    try:
        for line in path.read_text(encoding="utf-8").splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, value = stripped.split("=", 1)
            key = key.strip()
            if not key or key in os.environ:
                continue
            cleaned = value.strip().strip('"').strip("'")
            os.environ[key] = cleaned
    except OSError:
        return


def _load_env() -> None:
    current = Path(__file__).resolve()
    for candidate in (current.parents[2] / ".env", Path.cwd() / ".env"):
        _load_env_file(candidate)


_load_env()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def _normalize_cors(origins: str) -> list[str]:
    items: list[str] = []
    for raw in origins.split(","):
        value = raw.strip()
        if value and value not in items:
            items.append(value)
    return items


def _default_database_url() -> str:
    backend_root = Path(__file__).resolve().parents[2]
    return f"sqlite:///{(backend_root / 'server_api.db').as_posix()}"


DATABASE_URL = os.getenv("DATABASE_URL", _default_database_url())
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "600"))

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-prod")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("ACCESS_TOKEN_EXPIRE_DAYS", "30"))
TOKEN_REVOCATION_DEFAULT_TTL_SECONDS = int(
    os.getenv("TOKEN_REVOCATION_DEFAULT_TTL_SECONDS", "86400")
)
# Off by default: a revocation-store outage rejects tokens instead of accepting them.
TOKEN_REVOCATION_FAIL_OPEN = _env_flag("TOKEN_REVOCATION_FAIL_OPEN", "false")

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")

S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "http://127.0.0.1:9000")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY", "")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY", "")
S3_BUCKET = os.getenv("S3_BUCKET", "server-api")
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_UPLOAD_URL_TTL_SECONDS = int(os.getenv("S3_UPLOAD_URL_TTL_SECONDS", "3600"))
S3_DELETE_URL_TTL_SECONDS = int(os.getenv("S3_DELETE_URL_TTL_SECONDS", "60"))
S3_REQUEST_TIMEOUT_SECONDS = float(os.getenv("S3_REQUEST_TIMEOUT_SECONDS", "30"))
UPLOAD_MAX_IMAGE_BYTES = int(os.getenv("UPLOAD_MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

STATIC_BASE_PATH = os.getenv("STATIC_BASE_PATH", "/static").rstrip("/")

MEILISEARCH_URL = os.getenv("MEILISEARCH_URL", "http://127.0.0.1:7700").rstrip("/")
MEILISEARCH_API_KEY = os.getenv("MEILISEARCH_API_KEY", "")
MEILISEARCH_INDEX = os.getenv("MEILISEARCH_INDEX", "servers")
MEILISEARCH_TIMEOUT_SECONDS = float(os.getenv("MEILISEARCH_TIMEOUT_SECONDS", "10"))
SEARCH_SYNC_ENABLED = _env_flag("SEARCH_SYNC_ENABLED", "true")
SEARCH_SYNC_INTERVAL_SECONDS = int(os.getenv("SEARCH_SYNC_INTERVAL_SECONDS", "300"))
SEARCH_MAX_LIMIT = 100

SENTENCE_API_URL = os.getenv("SENTENCE_API_URL", "https://international.v1.hitokoto.cn")
SENTENCE_QUEUE_SIZE = int(os.getenv("SENTENCE_QUEUE_SIZE", "10"))
SENTENCE_REFILL_INTERVAL_SECONDS = float(os.getenv("SENTENCE_REFILL_INTERVAL_SECONDS", "5"))
SENTENCE_POLL_INTERVAL_SECONDS = 0.1
SENTENCE_REQUEST_TIMEOUT_SECONDS = float(os.getenv("SENTENCE_REQUEST_TIMEOUT_SECONDS", "5"))
SENTENCE_PREFETCH_ENABLED = _env_flag("SENTENCE_PREFETCH_ENABLED", "true")

SMTP_SERVER = os.getenv("SMTP_SERVER", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "465"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_SSL = _env_flag("SMTP_USE_SSL", "true")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", SMTP_USERNAME)
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Server Directory")
EMAIL_CODE_TTL_SECONDS = int(os.getenv("EMAIL_CODE_TTL_SECONDS", "300"))

ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

CORS_ORIGINS = _normalize_cors(os.getenv("CORS_ORIGINS", "*"))
