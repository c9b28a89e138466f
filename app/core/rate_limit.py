# app/core/rate_limit.py
from slowapi import Limiter
from slowapi.util import get_remote_address

from app.core.config import settings

# Instancia unica: la usan el middleware (app.state) y los decoradores de endpoints
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
