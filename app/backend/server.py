import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import crawl_engine
from ..crawl_engine.config.settings import load_settings
from ..crawl_engine.core.exceptions import (
    ConditionalCheckFailedError,
    InvalidTransitionError,
    JobNotFoundError,
    QueueItemNotFoundError,
)
from ..crawl_engine.engine import CrawlEngine, create_engine
from ..schema import ErrorResponse, HealthStatus
from .routers.crawl import router as crawl_router


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, detail=detail).model_dump())


async def _not_found(_: Request, exc: Exception) -> JSONResponse:
    return _error(404, "not_found", str(exc))


async def _conflict(_: Request, exc: Exception) -> JSONResponse:
    return _error(409, "conflict", str(exc))


async def _unprocessable(_: Request, exc: Exception) -> JSONResponse:
    return _error(422, "invalid_request", str(exc))


def create_app(engine: Optional[CrawlEngine] = None, run_dispatcher: bool = False) -> FastAPI:
    """
    Build the API application.

    Args:
        engine: Pre-built engine (built from load_settings() when omitted)
        run_dispatcher: Also run the dispatch loop inside the API process
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        # Startup
        current = engine or create_engine(load_settings())
        await current.start()
        app.state.engine = current
        if run_dispatcher:
            current.dispatcher._main_task = asyncio.create_task(current.dispatcher.run())
        yield
        # Shutdown
        if run_dispatcher:
            await current.dispatcher.shutdown()
        await current.stop()
        app.state.engine = None

    app = FastAPI(title="Crawl Engine", version=crawl_engine.__version__, lifespan=lifespan)

    app.include_router(crawl_router, prefix="/api/v1")

    app.add_exception_handler(JobNotFoundError, _not_found)
    app.add_exception_handler(QueueItemNotFoundError, _not_found)
    app.add_exception_handler(InvalidTransitionError, _conflict)
    app.add_exception_handler(ConditionalCheckFailedError, _conflict)
    app.add_exception_handler(ValueError, _unprocessable)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request) -> HealthStatus:
        current: Optional[CrawlEngine] = getattr(request.app.state, "engine", None)
        if current is None:
            return HealthStatus(status="down", version=crawl_engine.__version__)
        dispatcher_status = None
        if run_dispatcher:
            task = current.dispatcher._main_task
            dispatcher_status = "ok" if task is not None and not task.done() else "down"
        return HealthStatus(
            status="ok" if dispatcher_status != "down" else "degraded",
            version=crawl_engine.__version__,
            store=current.settings.store_backend,
            dispatcher=dispatcher_status,
        )

    return app


app = create_app()
