"""Account subscription and region checks."""

import logging
from typing import Optional

from ..browser.port import BrowserAutomationPort, Surface
from ..browser.scripts import ACCOUNT_REGION_SCRIPT, ACTIVE_SUBSCRIPTIONS_SCRIPT
from ..config import Settings, get_settings
from ..errors import ActivationError, ErrorCode
from ..models import ActiveSubscription
from ..regions import RegionRegistry
from .token_capture import ensure_identity_page

logger = logging.getLogger(__name__)


class SubscriptionChecker:
    """Reads the consumer's active subscriptions and account region."""

    def __init__(
        self,
        port: BrowserAutomationPort,
        registry: Optional[RegionRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.port = port
        self.registry = registry or RegionRegistry()
        self.settings = settings or get_settings()

    async def _run(self, source: str):
        try:
            await ensure_identity_page(self.port, self.settings)
            return await self.port.inject_script(source, Surface.PRIMARY)
        except ActivationError:
            raise
        except Exception as e:
            raise ActivationError(ErrorCode.NETWORK_ERROR, detail=str(e)) from e

    async def find_active_subscription(self) -> Optional[ActiveSubscription]:
        """First active subscription matching a configured product id, if any."""
        result = await self._run(ACTIVE_SUBSCRIPTIONS_SCRIPT)
        wanted = set(self.settings.subscription_product_ids)
        for item in result or []:
            subscription = ActiveSubscription.model_validate(item)
            if subscription.product_id in wanted:
                logger.info("Found active subscription %s", subscription.product_id)
                return subscription
        return None

    async def account_region(self) -> Optional[str]:
        """Normalized account country, or None when the profile has none."""
        result = await self._run(ACCOUNT_REGION_SCRIPT)
        if not isinstance(result, str):
            return None
        return self.registry.normalize(result)

    def regions_match(self, account_region: Optional[str], key_region: str) -> bool:
        # Global keys work anywhere; an unknown account region is not held against the key.
        if self.registry.is_global(key_region) or not account_region:
            return True
        return self.registry.normalize(account_region) == self.registry.normalize(key_region)
