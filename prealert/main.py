import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from prealert.config import Settings
from prealert.dependencies import Services, build_services
from prealert.errors import PrealertError
from prealert.routers import alerts, ambulances, auth, channels, hospitals, vitals

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _prealert_error_handler(request: Request, exc: PrealertError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code, "retryable": exc.retryable},
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build an application. Pass ``services`` to reuse an already built container."""
    settings = settings or (services.settings if services else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Pre-Alert...")
        owned = app.state.services is None
        if owned:
            app.state.services = await build_services(settings)
            logger.info("Services initialized")
        yield
        if owned:
            await app.state.services.close()
            app.state.services = None
        logger.info("Pre-Alert shut down")

    app = FastAPI(
        title="Pre-Alert",
        description="Ambulance to hospital pre-alerts with live vitals",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_exception_handler(PrealertError, _prealert_error_handler)

    app.include_router(auth.router)
    app.include_router(hospitals.router)
    app.include_router(alerts.router)
    app.include_router(ambulances.router)
    app.include_router(vitals.router)
    app.include_router(channels.router)

    @app.get("/health")
    async def health():
        ready = app.state.services is not None
        return {"status": "ok" if ready else "starting"}

    return app


app = create_app()
