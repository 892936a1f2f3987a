# Author: AgentRange Inc.
# Donated to IAB Tech Lab

"""Key Activation Flow - Redeem purchased license keys on the consumer's account.

This flow handles:
- Resolving the activation session into a product
- Pre-flight checks (digital account, vendor, expiry, redeemed status)
- Subscription conflict and account region checks
- Identity token capture through the browser
- Single-key and bundle redemption, including the consent sub-flow
- Reporting the outcome to the backend exactly once per run
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from ..browser.port import BrowserAutomationPort
from ..cache import CredentialCache, TokenCache, TTLCache
from ..clients import BackendClient, VendorRedemptionClient
from ..config import Settings, get_settings
from ..errors import ActivationError, ErrorCode, analyze_error
from ..models import (
    ACTIVATED_OUTCOMES,
    ActivationMethod,
    ActivationOutcome,
    ActivationState,
    ActiveSubscriptionConflictOutcome,
    AlreadyOwnedOutcome,
    AlreadyRedeemedOutcome,
    BundleProgress,
    BundleTracker,
    DiagnosticResults,
    ErrorOutcome,
    ExpiredSessionOutcome,
    IdentityToken,
    KeyState,
    KeyStatus,
    PartialSuccessOutcome,
    Product,
    RegionMismatchOutcome,
    RequiresDigitalAccountOutcome,
    RunState,
    StateChange,
    SuccessOutcome,
)
from ..models.product import utcnow
from ..regions import RegionRegistry
from ..retry import cancellable_sleep
from ..services import (
    ConversionController,
    DiagnosticsService,
    SubscriptionChecker,
    TokenCaptureService,
)
from ..storage import StorageBackend, get_storage_backend

logger = logging.getLogger(__name__)

StateListener = Callable[[RunState, StateChange], None]


class KeyActivationOrchestrator:
    """State machine driving one activation run at a time.

    Starting a run cancels the previous one: its pending browser waits fail
    with `cancelled` and it stops at its next state change without
    reporting to the backend.

    Usage:
        async with build_orchestrator(port) as orchestrator:
            orchestrator.add_listener(on_change)
            outcome = await orchestrator.start(session_token)
    """

    def __init__(
        self,
        backend: BackendClient,
        vendor: VendorRedemptionClient,
        token_capture: TokenCaptureService,
        subscriptions: SubscriptionChecker,
        port: BrowserAutomationPort,
        conversion: Optional[ConversionController] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        storage: Optional[StorageBackend] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.backend = backend
        self.vendor = vendor
        self.token_capture = token_capture
        self.subscriptions = subscriptions
        self.port = port
        self.conversion = conversion
        self.storage = storage
        self.settings = settings or get_settings()
        self.diagnostics = diagnostics or DiagnosticsService(port, subscriptions, self.settings)
        self._sleep = sleep
        self._uniform = uniform

        self._run: Optional[RunState] = None
        self._run_counter = 0
        self._stop = asyncio.Event()
        self._trackers: dict[str, BundleTracker] = {}
        self._listeners: list[StateListener] = []

    async def __aenter__(self) -> "KeyActivationOrchestrator":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Connect cache storage and the backend client."""
        if self.storage is not None:
            await self.storage.connect()
        await self.backend.connect()

    async def disconnect(self) -> None:
        self.cancel()
        await self.vendor.release()
        await self.backend.disconnect()
        if self.storage is not None:
            await self.storage.disconnect()

    # =========================================================================
    # Observation
    # =========================================================================

    @property
    def state(self) -> Optional[RunState]:
        """State of the current (or last) run."""
        return self._run

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def bundle_tracker(self, session_token: str) -> Optional[BundleTracker]:
        return self._trackers.get(session_token)

    def _set_status(self, run: RunState, status: ActivationState, progress: float) -> None:
        run.status = status
        run.progress = progress
        change = StateChange(state=status, progress=progress)
        run.history.append(change)
        if run is not self._run:
            return
        for listener in list(self._listeners):
            try:
                listener(run, change)
            except Exception:
                logger.exception("State listener failed on %s", status.value)

    @staticmethod
    def _ensure_active(run: RunState) -> None:
        if run.cancelled:
            raise ActivationError(ErrorCode.CANCELLED)

    def _transition(
        self, run: RunState, status: ActivationState, progress: Optional[float] = None
    ) -> None:
        """Move run to status. A superseded run stops here."""
        self._ensure_active(run)
        self._set_status(run, status, run.progress if progress is None else progress)

    async def run_diagnostics(self) -> DiagnosticResults:
        """Check network, cookies, sign-in, account region and subscription."""
        return await self.diagnostics.run()

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    def cancel(self) -> None:
        """Cancel the current run, failing its pending browser waits and delays."""
        self._stop.set()
        self.token_capture.cancel()
        self.port.messages.cancel_all()
        if self._run is not None and not self._run.status.is_terminal:
            logger.info("Cancelling activation run %d", self._run.run_id)
            self._run.cancelled = True

    async def start(self, session_token: str) -> ActivationOutcome:
        """Run activation for a session and return its terminal outcome."""
        self.cancel()
        self._stop = asyncio.Event()
        self._run_counter += 1
        run = RunState(run_id=self._run_counter, session_token=session_token)
        self._run = run
        logger.info("Starting activation run %d", run.run_id)

        try:
            outcome = await self._execute(run)
        except ActivationError as e:
            outcome = await self._outcome_for_error(e)
            run.errors.append(e.message)
        except Exception as e:
            logger.exception("Unexpected error during activation run %d", run.run_id)
            outcome = ErrorOutcome(reason=str(e) or e.__class__.__name__)
            run.errors.append(outcome.reason)

        return await self._finalize(run, outcome)

    async def _execute(self, run: RunState) -> ActivationOutcome:
        self._transition(run, ActivationState.INITIALIZING, 0.05)

        self._transition(run, ActivationState.FETCHING_PRODUCT, 0.1)
        product = await self.backend.get_session(run.session_token)
        run.product = product

        if product.activation_method == ActivationMethod.DIGITAL_ACCOUNT:
            return await self._digital_account_outcome(run, product)

        if not self._vendor_accepted(product.vendor):
            return ErrorOutcome(
                reason=f"Unsupported vendor: {product.vendor}",
                code=ErrorCode.VENDOR_MISMATCH.value,
            )

        self._transition(run, ActivationState.VALIDATING_KEY, 0.2)
        if product.is_expired():
            return ExpiredSessionOutcome()
        if product.is_redeemed():
            return AlreadyRedeemedOutcome()

        if product.is_subscription:
            self._transition(run, ActivationState.CHECKING_SUBSCRIPTION, 0.25)
            conflict = await self._check_subscription(product)
            if conflict is not None:
                return conflict

        self._transition(run, ActivationState.CAPTURING_TOKEN, 0.3)
        token = await self.token_capture.capture()

        if product.is_bundle:
            return await self._activate_bundle(run, product, token)
        return await self._activate_single(run, product, token)

    async def _finalize(self, run: RunState, outcome: ActivationOutcome) -> ActivationOutcome:
        run.outcome = outcome
        run.completed_at = utcnow()

        if run.cancelled:
            logger.info("Activation run %d was superseded", run.run_id)
            return outcome

        self._set_status(run, ActivationState.for_outcome(outcome.kind), 1.0)
        try:
            await self.backend.mark_activated(
                run.session_token, success=outcome.kind in ACTIVATED_OUTCOMES
            )
            run.reported = True
        except Exception as e:
            logger.warning("Failed to report activation for run %d: %s", run.run_id, e)
            run.warnings.append(f"mark_activated failed: {e}")

        await self.vendor.release()
        logger.info("Activation run %d finished: %s", run.run_id, outcome.kind.value)
        return outcome

    async def _outcome_for_error(self, error: ActivationError) -> ActivationOutcome:
        if error.code == ErrorCode.AUTHENTICATION_FAILED:
            await self.token_capture.invalidate()
        if error.code == ErrorCode.ALREADY_REDEEMED:
            return AlreadyRedeemedOutcome()
        if error.code == ErrorCode.ALREADY_OWNED:
            return AlreadyOwnedOutcome(products=list(error.products))
        return ErrorOutcome(reason=error.message, code=error.code.value)

    # =========================================================================
    # Pre-flight checks
    # =========================================================================

    async def _digital_account_outcome(
        self, run: RunState, product: Product
    ) -> RequiresDigitalAccountOutcome:
        portal_url = product.portal_url
        if not portal_url:
            try:
                portal_url = await self.backend.create_portal_url(product)
            except ActivationError as e:
                logger.warning("Could not create portal URL for order %s: %s", product.order_id, e)
                run.warnings.append(e.message)
        return RequiresDigitalAccountOutcome(portal_url=portal_url)

    def _vendor_accepted(self, vendor: Optional[str]) -> bool:
        if not vendor or not vendor.strip():
            return True
        accepted = {name.lower() for name in self.settings.accepted_vendors}
        return vendor.strip().lower() in accepted

    async def _check_subscription(self, product: Product) -> Optional[ActivationOutcome]:
        subscription = await self.subscriptions.find_active_subscription()
        if subscription is not None:
            return ActiveSubscriptionConflictOutcome(subscription=subscription)

        account_region = await self.subscriptions.account_region()
        if not self.subscriptions.regions_match(account_region, product.region):
            return RegionMismatchOutcome(
                account_region=account_region, key_region=product.region
            )
        return None

    # =========================================================================
    # Redemption
    # =========================================================================

    async def _redeem(
        self,
        run: RunState,
        product: Product,
        key: str,
        token: IdentityToken,
        market: str,
        key_state: KeyState,
        resume: ActivationState,
        tracker: Optional[BundleTracker] = None,
    ) -> None:
        """Redeem one key, running the consent sub-flow when the vendor asks."""
        try:
            await self.vendor.redeem(
                key, token, product.region, product=product, market=market, key_state=key_state
            )
        except ActivationError as e:
            if e.code != ErrorCode.CONVERSION_REQUIRED or self.conversion is None:
                raise
            if tracker is not None:
                tracker.mark_conversion_required(key)
            else:
                key_state.transition(KeyStatus.CONVERSION_REQUIRED)
            self._transition(run, ActivationState.HANDLING_CONVERSION)
            await self.conversion.convert(key)
            self._transition(run, resume)

    async def _activate_single(
        self, run: RunState, product: Product, token: IdentityToken
    ) -> ActivationOutcome:
        key = product.primary_key
        key_state = KeyState(key=key)
        self._transition(run, ActivationState.ACTIVATING, 0.5)
        key_state.transition(KeyStatus.VALIDATING)

        validation = await self.vendor.validate(key, token, product.region, key_state=key_state)
        if validation.already_redeemed:
            return AlreadyRedeemedOutcome()
        if not validation.valid:
            raise ActivationError(ErrorCode.KEY_STATE_INVALID, detail=validation.token_state)

        self._transition(run, ActivationState.ACTIVATING, 0.7)
        key_state.transition(KeyStatus.REDEEMING)
        await self._redeem(
            run, product, key, token, validation.market, key_state, ActivationState.ACTIVATING
        )
        key_state.transition(KeyStatus.SUCCEEDED)
        return SuccessOutcome(product_name=product.product_name, keys=[key])

    def _tracker_for(self, session_token: str, product: Product) -> BundleTracker:
        tracker = self._trackers.get(session_token)
        if tracker is None or tracker.keys != list(dict.fromkeys(product.keys)):
            tracker = BundleTracker(product.keys)
            self._trackers[session_token] = tracker
        else:
            tracker.prepare_rerun()
        return tracker

    async def _activate_bundle(
        self, run: RunState, product: Product, token: IdentityToken
    ) -> ActivationOutcome:
        tracker = self._tracker_for(run.session_token, product)
        keys = tracker.keys
        progress = BundleProgress(total=len(keys))
        run.bundle_progress = progress
        self._transition(run, ActivationState.ACTIVATING_BUNDLE, 0.4)
        # Read right after the active check, so this is still the event of this run.
        stop = self._stop

        for index, key in enumerate(keys):
            self._ensure_active(run)
            progress.current_key = key
            progress.current_index = index

            if tracker.is_settled(key):
                logger.info("Skipping key %d/%d, already %s", index + 1, len(keys),
                            tracker.state(key).status.value)
                self._count(progress, tracker.state(key))
                continue

            await self._activate_bundle_key(run, product, token, tracker, key)
            self._count(progress, tracker.state(key))
            self._transition(
                run, ActivationState.ACTIVATING_BUNDLE, 0.4 + 0.5 * (index + 1) / len(keys)
            )

            if index < len(keys) - 1:
                await cancellable_sleep(self._sleep, self._inter_key_delay(tracker), stop)
                self._ensure_active(run)

        result = tracker.result()
        logger.info(
            "Bundle finished: %d/%d keys activated", result.succeeded_count, result.total
        )
        if result.is_complete_success:
            return SuccessOutcome(product_name=product.product_name, keys=result.succeeded)
        if not result.succeeded:
            return ErrorOutcome(
                reason="No keys in the bundle could be activated",
                failures=result.failed,
            )
        return PartialSuccessOutcome(
            succeeded=result.succeeded_count,
            total=result.total,
            failures=result.failed,
        )

    async def _activate_bundle_key(
        self,
        run: RunState,
        product: Product,
        token: IdentityToken,
        tracker: BundleTracker,
        key: str,
    ) -> None:
        key_state = tracker.start_validating(key)
        try:
            validation = await self.vendor.validate(
                key, token, product.region, key_state=key_state
            )
            if validation.already_redeemed:
                tracker.mark_already_redeemed(key)
                return
            if not validation.valid:
                tracker.mark_failed(key, f"Key state is {validation.token_state}")
                return

            tracker.start_redeeming(key)
            self._ensure_active(run)
            await self._redeem(
                run,
                product,
                key,
                token,
                validation.market,
                key_state,
                ActivationState.ACTIVATING_BUNDLE,
                tracker=tracker,
            )
            tracker.mark_succeeded(key)
        except Exception as e:
            if isinstance(e, ActivationError) and e.code == ErrorCode.CANCELLED:
                raise
            analysis = analyze_error(e)
            logger.warning("Bundle key %s failed: %s", key[:5], analysis.message)
            if analysis.code == ErrorCode.AUTHENTICATION_FAILED:
                await self.token_capture.invalidate()

            if analysis.is_already_owned:
                tracker.mark_already_owned(key, analysis.owned_products)
            elif analysis.is_already_redeemed:
                tracker.mark_already_redeemed(key)
            elif key_state.status == KeyStatus.CONVERSION_REQUIRED:
                tracker.mark_failed(key, analysis.message, recoverable=False)
            else:
                tracker.mark_failed(key, analysis.message, recoverable=analysis.is_recoverable)
            if run.status == ActivationState.HANDLING_CONVERSION:
                self._transition(run, ActivationState.ACTIVATING_BUNDLE)

    @staticmethod
    def _count(progress: BundleProgress, key_state: KeyState) -> None:
        progress.completed += 1
        if key_state.status == KeyStatus.SUCCEEDED:
            progress.succeeded += 1
        else:
            progress.failed += 1

    def _inter_key_delay(self, tracker: BundleTracker) -> float:
        settings = self.settings
        delay = settings.bundle_key_delay_seconds
        if tracker.has_failures():
            delay += settings.bundle_failure_penalty_seconds
        jitter = settings.bundle_delay_jitter_seconds
        delay += self._uniform(-jitter, jitter)
        return max(settings.bundle_min_delay_seconds, delay)


def build_orchestrator(
    port: BrowserAutomationPort,
    settings: Optional[Settings] = None,
    storage: Optional[StorageBackend] = None,
    backend: Optional[BackendClient] = None,
) -> KeyActivationOrchestrator:
    """Wire an orchestrator with the default collaborators.

    The returned orchestrator must be connected (`async with`) before use.
    """
    settings = settings or get_settings()
    storage = storage or get_storage_backend(
        settings.storage_type, settings.database_url, settings.redis_url
    )
    registry = RegionRegistry()
    backend = backend or BackendClient(registry=registry)

    credentials = CredentialCache(
        backend,
        TTLCache(storage, namespace="proxy_credentials"),
        ttl_seconds=settings.credentials_cache_ttl_seconds,
    )
    subscriptions = SubscriptionChecker(port, registry, settings)
    token_cache = TokenCache(
        TTLCache(storage, namespace="identity_tokens"),
        device_id=settings.device_id,
        ttl_seconds=settings.token_cache_ttl_seconds,
    )

    return KeyActivationOrchestrator(
        backend=backend,
        vendor=VendorRedemptionClient(settings, registry, credentials),
        token_capture=TokenCaptureService(port, token_cache, settings),
        subscriptions=subscriptions,
        port=port,
        conversion=ConversionController(port, settings),
        diagnostics=DiagnosticsService(port, subscriptions, settings),
        storage=storage,
        settings=settings,
    )
