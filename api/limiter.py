"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means every route shares one counter store. The
storage URI comes from RATE_LIMIT_STORAGE_URI ("memory://" for a single
process, "redis://..." when several workers must share counters), separate
from the revocation store so the two can be scaled independently.

moving-window: a burst straddling a window boundary cannot double the limit.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().rate_limit_storage_uri,
    strategy="moving-window",
)
