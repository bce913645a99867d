"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

One shared instance means every route counts against the same in-memory
store; separate instances per module would each keep their own counters and
never trip.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    """Limit string for routes that accept a secret (password, reset token, 2FA code).

    Resolved per request by slowapi, so LOGIN_RATE_LIMIT is read from the
    settings singleton rather than frozen at import time.
    """
    return get_settings().login_rate_limit
