# app/api/v1/endpoints/health.py
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from app.core.config import settings
from app.infra.cache.risk_factor_cache import risk_config
from app.infra.db.session import get_db
from app.schemas.health_schemas import HealthResponse, PageInfo, StatusObject, ComponentStatus

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    t = datetime.utcnow().isoformat() + "Z"

    # DB
    try:
        await db.execute(text("SELECT 1"))
        db_status = ComponentStatus(status="operational", detail="Database connection OK")
    except Exception as e:
        db_status = ComponentStatus(status="major_outage", detail=f"Database error: {e}")

    # Pesos de riesgo
    weights_status = ComponentStatus(
        status="operational",
        detail=f"{len(risk_config.weights)} risk factors ({risk_config.source})",
        last_update=risk_config.loaded_at.isoformat() + "Z" if risk_config.loaded_at else None,
    )

    # Flujos en curso
    orchestrator = request.app.state.orchestrator
    workflows_status = ComponentStatus(
        status="operational",
        detail=f"{len(orchestrator.active_workflows)} active verification workflows",
    )

    if db_status.status != "operational":
        indicator = "major_outage"
        desc = "Database unavailable."
    else:
        indicator = "operational"
        desc = "All systems functional."

    return HealthResponse(
        page=PageInfo(
            name=settings.PROJECT_NAME,
            version=settings.PROJECT_VERSION,
            time=t,
        ),
        status=StatusObject(
            indicator=indicator,
            description=desc,
        ),
        components={
            "database": db_status,
            "risk_weights": weights_status,
            "workflows": workflows_status,
        },
    )
