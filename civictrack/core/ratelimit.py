# File: civictrack/core/ratelimit.py
# Project: civictrack-backend

import hashlib

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from civictrack.core.config import settings

COMMAND_LIMIT = "60/minute"
REFRESH_LIMIT = "6/minute"


def client_key(request: Request) -> str:
    # authenticated callers are limited per token, anonymous ones per address
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return "tok:" + hashlib.sha256(auth[7:].encode()).hexdigest()[:16]
    return get_remote_address(request)


limiter = Limiter(key_func=client_key, enabled=settings.rate_limit_enabled)
