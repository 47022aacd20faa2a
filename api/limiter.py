"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount the middleware) and api/routes/v1/auth.py
(to apply per-route limits with @limiter.limit()). A single shared instance
means every route counts against the same in-memory store.

AUTH_LIMIT is the per-IP budget for the credential and one-time-code
endpoints, where brute force is the main threat.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

AUTH_LIMIT = get_settings().auth_rate_limit
