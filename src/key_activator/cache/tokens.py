"""Identity token cache keyed by device identity."""

import logging
from datetime import timedelta
from typing import Optional

from ..models import IdentityToken
from ..models.product import utcnow
from .ttl import TTLCache

logger = logging.getLogger(__name__)


class TokenCache:
    """Holds the captured identity token until it expires or is cleared."""

    def __init__(self, cache: TTLCache, device_id: str, ttl_seconds: int = 3600):
        self.cache = cache
        self.device_id = device_id
        self.ttl_seconds = ttl_seconds

    async def get(self) -> Optional[IdentityToken]:
        payload = await self.cache.get(self.device_id)
        if payload is None:
            return None
        token = IdentityToken.model_validate(payload)
        if token.is_expired():
            await self.clear()
            return None
        return token

    async def store(self, value: str) -> IdentityToken:
        """Cache a freshly captured token for the configured lifetime."""
        token = IdentityToken(
            value=value,
            expires_at=utcnow() + timedelta(seconds=self.ttl_seconds),
        )
        await self.cache.set(
            self.device_id, token.model_dump(mode="json"), self.ttl_seconds
        )
        return token

    async def clear(self) -> None:
        logger.info("Clearing cached identity token for device %s", self.device_id)
        await self.cache.invalidate(self.device_id)
