import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from momentful.api import artifacts, generation_limits, jobs, lineages, storage
from momentful.config import Settings, get_settings
from momentful.container import GenerationServices, build_services
from momentful.exceptions import MomentfulError
from momentful.models.database import create_engine_from_settings, create_session_maker, init_db

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Request validation failed"
    first_error = errors[0]
    loc = ".".join(str(x) for x in first_error.get("loc", []) if x != "body")
    msg = first_error.get("msg", "Validation error")
    return f"{loc}: {msg}" if loc else msg


def create_app(services: GenerationServices | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the API. Pass ``services`` to run against a prebuilt container."""
    settings = services.settings if services is not None else (settings or get_settings())
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        owned = app.state.services is None
        if owned:
            engine = create_engine_from_settings(settings)
            await init_db(engine)
            app.state.services = build_services(settings, create_session_maker(engine), engine=engine)
        yield
        # Shutdown
        if owned:
            await app.state.services.aclose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MomentfulError)
    async def momentful_exception_handler(request: Request, exc: MomentfulError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Request validation errors are plain 400s, not FastAPI's default 422."""
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    # Global exception handler to ensure errors return proper JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # Routers
    app.include_router(jobs.router, prefix="/api", tags=["jobs"])
    app.include_router(generation_limits.router, prefix="/api", tags=["generation-limits"])
    app.include_router(artifacts.router, prefix="/api", tags=["artifacts"])
    app.include_router(lineages.router, prefix="/api", tags=["lineages"])
    app.include_router(storage.router, prefix="/api/storage", tags=["storage"])

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "version": settings.app_version, "git_hash": settings.git_hash}

    return app


app = create_app()
