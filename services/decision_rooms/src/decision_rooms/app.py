"""FastAPI application factory."""

from __future__ import annotations

import json
import logging
import logging.config
import time
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.routes import router
from .artifacts import ArtifactGenerator
from .badges import BadgeDispatcher, BadgeEngine, InlineBadgeDispatcher
from .completion import CompletionCoordinator
from .config import Settings, get_settings
from .data import DataStoreError, DataStoreProtocol, InMemoryDataStore, NotFoundError, PostgresDataStore, StaleWriteError
from .exceptions import (
    AuthorizationError,
    CapacityExceeded,
    DataIntegrityError,
    DecisionRoomError,
    InvalidInput,
    StateConflict,
)
from .matchmaking import Matchmaker
from .observability import setup_observability
from .quests import QuestCatalog
from .session import DecisionSession
from .version import __version__

logger = logging.getLogger(__name__)

_DOMAIN_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (StateConflict, status.HTTP_409_CONFLICT),
    (CapacityExceeded, status.HTTP_409_CONFLICT),
    (StaleWriteError, status.HTTP_409_CONFLICT),
    (InvalidInput, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def build_data_store(settings: Settings) -> DataStoreProtocol:
    """Postgres when configured, otherwise the in-memory store (dev/test)."""

    data_store: DataStoreProtocol | None = None
    if settings.database_url:
        try:
            data_store = PostgresDataStore(settings.database_url)
        except Exception as exc:  # pragma: no cover - depends on the environment
            if not settings.database_fallback_to_memory:
                raise
            logger.warning("Postgres unavailable (%s), falling back to in-memory store", exc)
    elif not settings.database_fallback_to_memory:
        raise RuntimeError(
            "DATABASE_URL is not set and in-memory fallback is disabled (DATABASE_FALLBACK_TO_MEMORY=false)"
        )
    if data_store is None:
        logger.warning("Using the in-memory store (dev/test mode). Set DATABASE_URL for Postgres.")
        data_store = InMemoryDataStore()
    return data_store


def load_catalog(settings: Settings) -> QuestCatalog:
    path = Path(settings.quest_catalog_path)
    if not path.is_absolute():
        path = Path.cwd() / path
    return QuestCatalog.from_directory(path)


def create_app(
    *,
    data_store: Optional[DataStoreProtocol] = None,
    catalog: Optional[QuestCatalog] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        data_store: Pre-built store; built from settings when omitted.
        catalog: Pre-loaded quest catalog; loaded from ``QUEST_CATALOG_PATH`` when omitted.

    Returns:
        FastAPI: Application with routes, middleware and services attached.
    """

    _setup_logging()
    settings = get_settings()
    app = FastAPI(
        title="Decision Rooms API",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    setup_observability(app, settings=settings, service_name="decision-rooms")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    store = data_store or build_data_store(settings)
    quests = catalog if catalog is not None else load_catalog(settings)
    badge_engine = BadgeEngine(store, quests)
    if settings.badge_workers > 0:
        dispatcher: BadgeDispatcher | InlineBadgeDispatcher = BadgeDispatcher(
            badge_engine, max_workers=settings.badge_workers
        )
    else:
        dispatcher = InlineBadgeDispatcher(badge_engine)
    generator = ArtifactGenerator(store, quests, badges=dispatcher)

    app.state.data_store = store
    app.state.quest_catalog = quests
    app.state.badge_engine = badge_engine
    app.state.badge_dispatcher = dispatcher
    app.state.matchmaker = Matchmaker(store, quests)
    app.state.decision_session = DecisionSession(store, quests, badges=dispatcher)
    app.state.artifact_generator = generator
    app.state.completion_coordinator = CompletionCoordinator(store, generator)

    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):  # type: ignore[override]
        """Attach a trace id to the request state and echo it in the response headers.

        A new id is generated when the client sends neither `X-Trace-Id` nor `X-Request-Id`.
        """

        incoming = request.headers.get("x-trace-id") or request.headers.get("x-request-id")
        trace_id = incoming or uuid4().hex
        request.state.trace_id = trace_id
        response: Response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        response.headers.setdefault("X-Request-Id", trace_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        return _error_response(request, exc.status_code, "HTTPException", _stringify_detail(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        return _error_response(
            request, status.HTTP_422_UNPROCESSABLE_ENTITY, "ValidationError", _summarize_validation(exc)
        )

    @app.exception_handler(DecisionRoomError)
    @app.exception_handler(DataStoreError)
    async def domain_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        for exc_type, status_code in _DOMAIN_STATUS:
            if isinstance(exc, exc_type):
                return _error_response(request, status_code, type(exc).__name__, str(exc))
        if isinstance(exc, DataIntegrityError):
            logger.exception("Data integrity violation: %s", exc)
        else:
            logger.exception("Unhandled domain error: %s", exc)
        return _error_response(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, type(exc).__name__, "Internal Server Error"
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        logger.exception("Unhandled error: %s", exc)
        return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "InternalError", "Internal Server Error")

    @app.middleware("http")
    async def http_logger(request: Request, call_next):  # type: ignore[override]
        """Log method, path, status and latency together with the trace id."""

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            logging.getLogger("http").info(
                "method=%s path=%s status=%s elapsedMs=%s traceId=%s",
                request.method,
                request.url.path,
                response.status_code if response else 500,
                elapsed_ms,
                getattr(request.state, "trace_id", ""),
            )

    app.include_router(router)

    @app.on_event("shutdown")
    async def _stop_badge_dispatcher() -> None:
        app.state.badge_dispatcher.shutdown(wait=True)

    @app.get("/config", tags=["system"])
    def read_config_version(request: Request) -> dict[str, str]:
        """Report the API version and the active backends."""

        return {
            "apiVersion": settings.api_version,
            "store": store.kind,
            "quests": str(len(quests)),
            "badgeDispatch": "inline" if isinstance(dispatcher, InlineBadgeDispatcher) else "pool",
            "traceId": getattr(request.state, "trace_id", ""),
        }

    return app


def _error_response(request: Request, status_code: int, error: str, message: str) -> Response:
    payload = {
        "code": status_code,
        "error": error,
        "message": message,
        "traceId": getattr(request.state, "trace_id", ""),
    }
    return Response(
        content=json.dumps(payload, ensure_ascii=False),
        status_code=status_code,
        media_type="application/json",
    )


def _setup_logging() -> None:
    """Configure logging from observability/logging.json when the file exists."""

    config_path = Path.cwd() / "observability" / "logging.json"
    if not config_path.exists():
        return
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            logging.config.dictConfig(json.load(fh))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring invalid logging config %s: %s", config_path, exc)


def _stringify_detail(detail: object) -> str:
    if isinstance(detail, (str, int, float)):
        return str(detail)
    if isinstance(detail, (dict, list)):
        return json.dumps(detail, ensure_ascii=False)
    return str(detail)


def _summarize_validation(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Validation error"
    first = errors[0]
    msg = first.get("msg") or "Validation error"
    loc = first.get("loc")
    if loc:
        return f"{msg} at {'.'.join(str(x) for x in loc)}"
    return str(msg)
