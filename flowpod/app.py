from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from flowpod.api.error_handling import _error_response, register_exception_handlers
from flowpod.api.routes import router
from flowpod.logging import get_logger, set_correlation_id
from flowpod.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

# Management endpoints polled by the pool manager
_MANAGEMENT_PATHS = frozenset({"/health", "/activity", "/load-flows", "/unload-flows"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Boot the embedded engine on startup and release the bridge on shutdown."""
    runtime = get_runtime()
    try:
        await runtime.controller.start()
    except Exception as exc:
        logger.error("startup_engine_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        await runtime.controller.shutdown()
        runtime.resolver.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _is_editor_path(path: str, editor_root: str) -> bool:
    return path == editor_root or path.startswith(editor_root + "/")


def create_app() -> FastAPI:
    runtime = get_runtime()
    settings = runtime.settings
    app = FastAPI(title="Flow Pod", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def track_editor_activity(request: Request, call_next):
        # Only editor traffic keeps the pod warm; management polling must not
        if _is_editor_path(request.url.path, settings.editor_root):
            get_runtime().controller.record_interaction()
        return await call_next(request)

    @app.middleware("http")
    async def limit_management_body(request: Request, call_next):
        if request.url.path in ("/load-flows", "/unload-flows"):
            declared = request.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > settings.max_load_bytes:
                logger.warning(
                    "management_body_too_large",
                    path=request.url.path,
                    content_length=int(declared),
                    limit_bytes=settings.max_load_bytes,
                )
                return _error_response(
                    413,
                    "request body too large",
                    {"limit_bytes": settings.max_load_bytes},
                    code="payload_too_large",
                )
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path in _MANAGEMENT_PATHS:
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    # Registered last so it runs outermost and every log line carries the id
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with a correlation id.

        The id is taken from the X-Request-ID header if the caller sent one,
        otherwise generated, and echoed back on the response.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    editor = runtime.engine.editor_router(runtime.controller)
    if editor is not None:
        app.include_router(editor, prefix=settings.editor_root)
        logger.info("editor_mounted", editor_root=settings.editor_root)
    else:
        logger.warning("editor_unavailable", flow_engine=settings.flow_engine.value)

    return app


app = create_app()
