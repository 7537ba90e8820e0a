"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route modules
under api/routes/v1/ (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

DEFAULT_LIMIT comes from Settings.api_rate_limit (API_RATE_LIMIT env var).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

DEFAULT_LIMIT = get_settings().api_rate_limit

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
