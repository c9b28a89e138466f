# app/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from slowapi.middleware import SlowAPIMiddleware
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_router_v1
from app.core.config import settings
from app.core.logging import setup_logging
from app.core.rate_limit import limiter
from app.domain.services.verification_flow import VerificationOrchestrator
from app.infra.cache.risk_cache import load_risk_weights
from app.infra.db.repositories import SqlIdentityStore, SqlLedger, SqlNotifier
from app.infra.db.session import AsyncSessionLocal, init_db
from app.infra.detectors.similarity import SimulatedSimilarityProvider

logger = logging.getLogger(__name__)


def create_app(orchestrator: VerificationOrchestrator | None = None) -> FastAPI:
    setup_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Colaboradores SQL + orquestador del flujo de verificacion
    app.state.ledger = SqlLedger(AsyncSessionLocal)
    app.state.identity = SqlIdentityStore(AsyncSessionLocal)
    app.state.notifier = SqlNotifier(AsyncSessionLocal)
    app.state.orchestrator = orchestrator or VerificationOrchestrator(
        app.state.ledger,
        app.state.identity,
        app.state.notifier,
        provider=SimulatedSimilarityProvider(),
    )

    # Routers
    app.include_router(api_router_v1)

    @app.on_event("startup")
    async def on_startup() -> None:
        await init_db()
        async with AsyncSessionLocal() as db:
            await load_risk_weights(db)
        logger.info(f"{settings.PROJECT_NAME} listo ({settings.ENVIRONMENT})")

    @app.get("/")
    async def root():
        return {"service": settings.PROJECT_NAME, "status": "ok"}

    return app


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded", "error": str(exc)},
    )


app = create_app()
