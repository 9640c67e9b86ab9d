"""
CodeIndex - FastAPI application.

Indexes repository checkouts into per-repository vector collections and
serves semantic search over them.
"""

import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from codeindex.config import settings
from codeindex.routes import health, indexing
from codeindex.services.index_manager import (
    ConfigurationError,
    IndexManagerError,
    InvalidQueryError,
    index_registry,
)
from codeindex.utils.logger import get_logger, set_request_id, setup_logging

logger = get_logger("main")


def _vector_store_mode() -> str:
    if settings.vector_store_url:
        return "http"
    return "persistent" if settings.use_persistent_index else "ephemeral"


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(debug=settings.debug)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    logger.info(
        "starting_codeindex",
        version=settings.app_version,
        embedding_provider=settings.embedding_provider,
        vector_store=_vector_store_mode(),
        data_dir=str(settings.data_dir),
    )

    yield

    index_registry.dispose_all()
    logger.info("shutting_down_codeindex")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Semantic code index for repository checkouts",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Tag each request (and its log entries) with X-Request-ID."""
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(health.router)
app.include_router(indexing.router)


@app.exception_handler(IndexManagerError)
async def index_manager_error_handler(request: Request, exc: IndexManagerError):
    # NotInitializedError and in-progress conflicts are both 409
    status_code = 400 if isinstance(exc, (ConfigurationError, InvalidQueryError)) else 409
    logger.warning("index_manager_error", path=request.url.path, error=str(exc), status=status_code)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Always answer with JSON, even for unexpected failures."""
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), traceback=traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal Server Error: {str(exc)}"},
    )


@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("codeindex.main:app", host=settings.host, port=settings.port, reload=settings.debug)
