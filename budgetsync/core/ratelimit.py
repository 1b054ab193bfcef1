from slowapi import Limiter
from slowapi.util import get_remote_address

from budgetsync.core.config import settings

# Shared across API workers through Redis
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri or settings.redis_url,
)
