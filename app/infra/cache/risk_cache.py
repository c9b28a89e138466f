# app/infra/cache/risk_cache.py
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.infra.cache.risk_factor_cache import RiskConfig, risk_config
from app.infra.db.models.risk_factors import RiskFactor

logger = logging.getLogger(__name__)


async def load_risk_weights(db: AsyncSession, config: RiskConfig = risk_config) -> int:
    """
    Sobrescribe los pesos por defecto con los factores habilitados en la tabla
    risk_factors. Devuelve cuantos factores se cargaron.
    """
    result = await db.execute(select(RiskFactor).where(RiskFactor.enabled.is_(True)))
    rows = result.scalars().all()

    config.reset()
    for row in rows:
        config.weights[row.code] = row.weight
        if row.severity == "CRITICAL":
            config.critical.add(row.code)

    if rows:
        config.source = "database"
    config.loaded_at = datetime.utcnow()

    logger.info(f"Pesos de riesgo cargados desde DB: {len(rows)} factores")
    return len(rows)
