import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

import fitsync.models  # noqa: F401 — register all models with Base.metadata
from fitsync.api.deps import Integrations, build_integrations, get_integrations
from fitsync.api.routes.activities import router as activities_router
from fitsync.api.routes.integrations import router as integrations_router
from fitsync.api.routes.webhooks import router as webhooks_router
from fitsync.config import get_settings
from fitsync.database import Base, async_session, engine
from fitsync.schemas.system import StatusResponse


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Create tables on startup (dev convenience; Alembic for production)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = app.state.integrations.scheduler
    if get_settings().scheduler_enabled:
        await scheduler.start()
    yield
    await scheduler.stop()
    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(
        title="FitSync",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.integrations = build_integrations(async_session, settings)

    app.include_router(activities_router)
    app.include_router(integrations_router)
    app.include_router(webhooks_router)

    @app.get("/api/system/status", response_model=StatusResponse)
    async def system_status(
        integrations: Integrations = Depends(get_integrations),
    ) -> StatusResponse:
        return StatusResponse(
            status="ok",
            providers=integrations.registry.providers,
            scheduler_running=integrations.scheduler.is_running,
        )

    return app


app = create_app()
