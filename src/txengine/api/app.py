"""FastAPI application factory."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from txengine.config import get_settings
from txengine.store.database import close_db, init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    await init_db()
    yield
    # Shutdown
    await close_db()


def create_app(manage_db: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        manage_db: Open and close the database with the app lifespan. The
            service entry point manages the database itself.
    """
    settings = get_settings()

    app = FastAPI(
        title="txengine API",
        description="Transaction queue and backend wallet signing service",
        version="0.1.0",
        lifespan=lifespan if manage_db else None,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routes
    from txengine.api.routers import backend_wallet, transactions
    from txengine.api.routes import health

    app.include_router(health.router, tags=["Health"])
    app.include_router(transactions.router)
    app.include_router(backend_wallet.router)

    return app
