import asyncio
import logging
import threading
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import OperationalError

from .core.cache import CacheClient
from .core.config import (
    CORS_ORIGINS,
    LOG_LEVEL,
    REDIS_URL,
    SEARCH_SYNC_ENABLED,
    SEARCH_SYNC_INTERVAL_SECONDS,
    SENTENCE_PREFETCH_ENABLED,
)
from .core.errors import ApiError
from .core.logging import configure_logging
from .core.security import TokenService
from .db import Base, SessionLocal, engine
from .middleware import AuthMiddleware, RequestLoggingMiddleware
from .routes import auth, search, servers
from .services.email import EmailCodeService, SmtpSender
from .services.file_upload import FileUploadService, ObjectStorage
from .services.search import SearchClient
from .services.sentences import SentenceQueue
from .services.servers import ServerService
from .services.store import ServerStore

logger = logging.getLogger(__name__)

_BASE_SCHEMA_LOCK = threading.Lock()
_BASE_SCHEMA_READY = False


def _ensure_base_schema() -> None:
    global _BASE_SCHEMA_READY
    if _BASE_SCHEMA_READY:
        return
    with _BASE_SCHEMA_LOCK:
        if _BASE_SCHEMA_READY:
            return
        try:
            Base.metadata.create_all(bind=engine)
        except OperationalError as exc:
            # Several workers may race on first start.
            if "already exists" not in str(exc).lower():
                raise
        _BASE_SCHEMA_READY = True


def install_services(app: FastAPI, cache: CacheClient, store: ServerStore, storage: ObjectStorage) -> None:
    """Build the shared service handles once and hang them on ``app.state``."""
    sentences = SentenceQueue()
    uploads = FileUploadService(store, storage)
    app.state.cache = cache
    app.state.store = store
    app.state.token_service = TokenService(cache)
    app.state.uploads = uploads
    app.state.server_service = ServerService(store, uploads)
    app.state.search_client = SearchClient()
    app.state.sentences = sentences
    app.state.email_service = EmailCodeService(cache, SmtpSender(), sentences)


async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s context=%s",
            request.method,
            request.url.path,
            exc.message,
            exc.context,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    configure_logging(LOG_LEVEL)
    app = FastAPI(title="Server Directory API", version="0.1.0")
    app.add_exception_handler(ApiError, api_error_handler)

    # Middleware runs in reverse order of addition: CORS wraps everything so
    # auth rejections still carry CORS headers.
    app.add_middleware(AuthMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials="*" not in CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    background: List[asyncio.Task] = []

    @app.on_event("startup")
    async def on_startup() -> None:
        if getattr(app.state, "store", None) is not None:
            return
        _ensure_base_schema()
        cache = CacheClient(REDIS_URL)
        cache.connect()
        install_services(app, cache, ServerStore(SessionLocal), ObjectStorage())

        if SENTENCE_PREFETCH_ENABLED:
            background.append(app.state.sentences.start())
        if SEARCH_SYNC_ENABLED:
            background.append(asyncio.create_task(_start_search_sync(app), name="search-sync"))

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        background.clear()
        cache = getattr(app.state, "cache", None)
        if cache is not None:
            await cache.disconnect()

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    @app.head("/health")
    def health_check_head():
        return Response(status_code=200)

    app.include_router(servers.router, prefix="/v2/servers", tags=["servers"])
    app.include_router(auth.router, prefix="/v2/auth", tags=["auth"])
    app.include_router(search.router, prefix="/v2/search", tags=["search"])
    return app


async def _start_search_sync(app: FastAPI) -> None:
    client: SearchClient = app.state.search_client
    try:
        await client.init_index()
    except ApiError as exc:
        logger.error("Search index setup failed: %s", exc)
    await client.sync_loop(app.state.store, SEARCH_SYNC_INTERVAL_SECONDS)


app = create_app()
