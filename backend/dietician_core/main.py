"""
ASGI entry point for the identity core.

Startup order matters: key material and the role/action registry are checked
before the application accepts requests.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dietician_core.core.config import get_settings
from dietician_core.core.crypto.lookup import ensure_lookup_digest_available
from dietician_core.core.encryption import get_field_cipher
from dietician_core.core.exchange_store import close_exchange_store, create_exchange_store
from dietician_core.core.logging import configure_logging, get_logger
from dietician_core.core.security.context import RequestOriginMiddleware
from dietician_core.core.security.registry import validate_action_registry
from dietician_core.db.seed import seed_reference_data
from dietician_core.db.session import close_db, get_session_factory, init_db
from dietician_core.modules.admin.router import router as admin_router
from dietician_core.modules.auth.router import router as auth_router

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Fail startup with ``ConfigurationError`` on bad keys or a drifted registry."""
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
    )

    ensure_lookup_digest_available()
    get_field_cipher()

    await init_db()
    logger.info("database_initialized")

    async with get_session_factory()() as session:
        if settings.seed_reference_data:
            await seed_reference_data(session)
            await session.commit()
        await validate_action_registry(session)

    app.state.exchange_store = create_exchange_store(str(settings.redis_url))

    yield

    await close_exchange_store(app.state.exchange_store)
    app.state.exchange_store = None
    await close_db()
    logger.info("application_shutdown_complete")


def create_application() -> FastAPI:
    """Build the app: request-origin middleware plus the auth and admin routers."""
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=None,
        lifespan=lifespan,
    )

    # Client IP and user agent for the audit trail
    app.add_middleware(RequestOriginMiddleware)

    app.include_router(
        auth_router,
        prefix=f"{settings.api_v1_prefix}/auth",
        tags=["Auth"],
    )
    app.include_router(
        admin_router,
        prefix=f"{settings.api_v1_prefix}/admin",
        tags=["Admin"],
    )

    return app


app = create_application()
