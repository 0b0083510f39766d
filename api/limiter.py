"""
api/limiter.py -- The one slowapi Limiter shared by the app and its routers.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware);
api/routes/v1/auth.py applies the login limit with @limiter.limit().
Counters live in process memory and are keyed by client IP, so a second
Limiter instance would keep its own counters and never see the first's hits.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
