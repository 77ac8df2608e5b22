"""
api/limiter.py -- Shared slowapi rate limiter for the credential endpoints.

Login, registration and nonce requests are the brute-force surface of the
service; each of those routes applies a per-IP limit from Settings
(LOGIN_RATE_LIMIT, NONCE_RATE_LIMIT) with @limiter.limit().

One shared instance backs every route, so all limits count against the same
in-memory store. RATE_LIMIT_ENABLED=false turns limiting off (test suites
that log in many times from the same client address).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=get_settings().rate_limit_enabled,
)
