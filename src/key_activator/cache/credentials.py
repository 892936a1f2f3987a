"""Proxy credential cache.

Credentials for the egress proxies are issued by the backend and expire.
One fetch is shared by every concurrent caller; a 407 from a proxy
invalidates the cached pair so the next caller fetches a fresh one.
"""

import logging
from typing import TYPE_CHECKING, Optional

from ..config import get_settings
from ..models import ProxyCredentials
from ..models.product import utcnow
from .ttl import TTLCache

if TYPE_CHECKING:
    from ..clients.backend_client import BackendClient

logger = logging.getLogger(__name__)

_CACHE_KEY = "proxy"


class CredentialCache:
    """Single-flight, TTL-cached access to ProxyCredentials."""

    def __init__(
        self,
        backend: "BackendClient",
        cache: TTLCache,
        session_token: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.backend = backend
        self.cache = cache
        self.session_token = session_token
        self.ttl_seconds = ttl_seconds or get_settings().credentials_cache_ttl_seconds
        self._memo: Optional[ProxyCredentials] = None

    async def get(self) -> ProxyCredentials:
        """Return valid proxy credentials, fetching them when needed.

        Concurrent callers during a fetch receive the identical object.
        """
        payload = await self.cache.get_or_fetch(_CACHE_KEY, self._fetch)
        credentials = ProxyCredentials.model_validate(payload)
        if self._memo is None or self._memo.model_dump() != credentials.model_dump():
            self._memo = credentials
        return self._memo

    async def _fetch(self) -> tuple[dict, float]:
        credentials = await self.backend.get_proxy_credentials(self.session_token)
        remaining = (credentials.expires_at - utcnow()).total_seconds()
        ttl = min(float(self.ttl_seconds), remaining)
        logger.info(
            "Fetched proxy credentials for %s (valid %.0fs)",
            credentials.masked_username(),
            max(ttl, 0),
        )
        self._memo = credentials
        return credentials.model_dump(mode="json", by_alias=True), ttl

    async def invalidate(self) -> None:
        """Drop cached credentials after a proxy authentication failure."""
        logger.warning("Invalidating cached proxy credentials")
        self._memo = None
        await self.cache.invalidate(_CACHE_KEY)
