"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atomicswap.config import get_settings
from atomicswap.ledger.database import init_db
from atomicswap.runtime import Runtime, build_runtime


def create_app(runtime: Optional[Runtime] = None, start_supervisor: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        runtime: Pre-built runtime (tests inject one); built from settings otherwise
        start_supervisor: Run the timeout supervisor in the background
    """
    settings = runtime.settings if runtime else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime(settings)
        await init_db(app.state.runtime.db_engine)
        if start_supervisor:
            app.state.runtime.supervisor.start()
        yield
        # Shutdown
        await app.state.runtime.close()

    app = FastAPI(
        title="Atomic Swap API",
        description="Cross-chain atomic swaps over hash time-locked contracts",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.runtime = runtime

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from atomicswap.api.routes import health, swaps

    app.include_router(health.router, tags=["Health"])
    app.include_router(swaps.router, prefix="/api/v1")
    app.include_router(swaps.reports_router, prefix="/api/v1")

    return app
