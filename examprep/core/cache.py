"""
Admin e-mail allowlist.

The list comes from configuration and rarely changes, so lookups go through
a short-lived TTLCache. One AdminEmailCache is built at startup and handed
to the auth dependency through app.state; invalidate() forces a re-read.
"""
import logging
from threading import Lock
from typing import Callable, FrozenSet, Iterable, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

_KEY = "admin_emails"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class AdminEmailCache:
    def __init__(self, source: Callable[[], Iterable[str]], ttl: float = 300, timer=None):
        kwargs = {"timer": timer} if timer is not None else {}
        self._source = source
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl, **kwargs)
        self._lock = Lock()

    def emails(self) -> FrozenSet[str]:
        with self._lock:
            cached = self._cache.get(_KEY)
            if cached is None:
                cached = frozenset(e for e in (normalize_email(x) for x in self._source()) if e)
                self._cache[_KEY] = cached
                logger.debug("Loaded %d admin e-mails", len(cached))
            return cached

    def is_admin(self, email: Optional[str]) -> bool:
        email = normalize_email(email)
        return bool(email) and email in self.emails()

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()
