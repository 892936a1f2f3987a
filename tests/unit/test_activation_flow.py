# Author: AgentRange Inc.
# Donated to IAB Tech Lab

"""Tests for the key activation flow."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from key_activator.browser.scripts import TOKEN_CAPTURE_SCRIPT
from key_activator.clients import BackendClient
from key_activator.flows import build_orchestrator
from key_activator.models import (
    ActivationState,
    KeyStatus,
    OutcomeKind,
)
from key_activator.services import DiagnosticsService
from key_activator.storage import MemoryBackend

KEY = "AAAAA-BBBBB-CCCCC-DDDDD-EEEEE"
BUNDLE = [
    "11111-11111-11111-11111-11111",
    "22222-22222-22222-22222-22222",
    "33333-33333-33333-33333-33333",
]


class TestSingleKeyActivation:
    """Tests for single-key runs."""

    @pytest.mark.asyncio
    async def test_success(self, orchestrator, backend_stub, vendor_stub):
        """Test a successful activation reports once and releases transports."""
        backend_stub.add_session("sess-1")

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.keys == [KEY]
        assert backend_stub.marks == [{"session_token": "sess-1", "success": True}]
        assert orchestrator.state.status == ActivationState.SUCCESS
        assert orchestrator.state.reported
        assert [c["op"] for c in vendor_stub.calls] == ["validate", "redeem"]
        assert orchestrator.vendor._transports == {}

    @pytest.mark.asyncio
    async def test_listener_sees_every_state(self, orchestrator, backend_stub):
        """Test state change notifications for a run."""
        backend_stub.add_session("sess-1")
        seen = []
        orchestrator.add_listener(lambda run, change: seen.append(change.state))

        def broken(run, change):
            raise RuntimeError("listener bug")

        orchestrator.add_listener(broken)

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert seen == [
            ActivationState.INITIALIZING,
            ActivationState.FETCHING_PRODUCT,
            ActivationState.VALIDATING_KEY,
            ActivationState.CAPTURING_TOKEN,
            ActivationState.ACTIVATING,
            ActivationState.ACTIVATING,
            ActivationState.SUCCESS,
        ]
        assert [c.state for c in orchestrator.state.history] == seen

    @pytest.mark.asyncio
    async def test_already_redeemed_on_redeem(self, orchestrator, backend_stub, vendor_stub):
        """Test a 409 on redemption."""
        backend_stub.add_session("sess-1")
        vendor_stub.redeem_responses[KEY] = [(409, {})]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ALREADY_REDEEMED
        assert len(vendor_stub.ops("redeem")) == 1
        assert backend_stub.marks == [{"session_token": "sess-1", "success": False}]

    @pytest.mark.asyncio
    async def test_redeemed_on_validation(self, orchestrator, backend_stub, vendor_stub):
        """Test a key the vendor already reports as redeemed."""
        backend_stub.add_session("sess-1")
        vendor_stub.validate_responses[KEY] = [(200, {"tokenState": "Redeemed"})]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ALREADY_REDEEMED
        assert vendor_stub.ops("redeem") == []

    @pytest.mark.asyncio
    async def test_already_owned(self, orchestrator, backend_stub, vendor_stub):
        """Test a single key whose content is already owned."""
        backend_stub.add_session("sess-1")
        vendor_stub.redeem_responses[KEY] = [
            (403, {"code": "UserAlreadyOwnsContent", "data": ["9NBLGGH4R315"]})
        ]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ALREADY_OWNED
        assert outcome.products == ["9NBLGGH4R315"]

    @pytest.mark.asyncio
    async def test_token_timeout(self, orchestrator, backend_stub, port, vendor_stub):
        """Test that a token that never arrives ends the run in error."""
        backend_stub.add_session("sess-1")
        port.token = None

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.code == "token_timeout"
        assert port.scripts_named(TOKEN_CAPTURE_SCRIPT) == 3
        assert vendor_stub.calls == []
        assert backend_stub.marks == [{"session_token": "sess-1", "success": False}]

    @pytest.mark.asyncio
    async def test_authentication_failure_clears_token(
        self, orchestrator, backend_stub, vendor_stub, token_cache
    ):
        """Test that a rejected identity token is dropped from the cache."""
        backend_stub.add_session("sess-1")
        vendor_stub.validate_responses[KEY] = [(401, {})]

        outcome = await orchestrator.start("sess-1")

        assert outcome.code == "authentication_failed"
        assert await token_cache.get() is None

    @pytest.mark.asyncio
    async def test_conversion_sub_flow(self, orchestrator, backend_stub, vendor_stub, port):
        """Test a consent requirement handled through the conversion surface."""
        backend_stub.add_session("sess-1")
        vendor_stub.redeem_responses[KEY] = [(412, {"code": "ConversionConsentRequired"})]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS
        states = [c.state for c in orchestrator.state.history]
        assert ActivationState.HANDLING_CONVERSION in states
        index = states.index(ActivationState.HANDLING_CONVERSION)
        assert states[index + 1] == ActivationState.ACTIVATING

    @pytest.mark.asyncio
    async def test_conversion_failure(self, orchestrator, backend_stub, vendor_stub, port):
        """Test a conversion the page reports as failed."""
        backend_stub.add_session("sess-1")
        vendor_stub.redeem_responses[KEY] = [(412, {"code": "ConversionConsentRequired"})]
        port.conversion = "failed"

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.code == "conversion_failed"

    @pytest.mark.asyncio
    async def test_mark_activated_failure_keeps_outcome(self, orchestrator, backend_stub):
        """Test that a failed report is only a warning."""
        backend_stub.add_session("sess-1")
        backend_stub.mark_status = 500

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert not orchestrator.state.reported
        assert orchestrator.state.warnings


class TestPreflightChecks:
    """Tests for checks that end a run before redemption."""

    @pytest.mark.asyncio
    async def test_session_not_found(self, orchestrator, backend_stub):
        """Test an unknown session token."""
        outcome = await orchestrator.start("missing")
        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.code == "session_not_found"

    @pytest.mark.asyncio
    async def test_digital_account(self, orchestrator, backend_stub, port):
        """Test that digital-account orders get a portal link instead."""
        backend_stub.add_session("sess-1")
        backend_stub.readiness[("order-1", "line-1")] = {"activation_method": "digital_account"}

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.REQUIRES_DIGITAL_ACCOUNT
        assert outcome.portal_url == "https://portal.test/activate/abc"
        assert port.scripts == []

    @pytest.mark.asyncio
    async def test_digital_account_without_portal(self, orchestrator, backend_stub):
        """Test that a portal failure still yields the digital-account outcome."""
        backend_stub.add_session("sess-1")
        backend_stub.readiness[("order-1", "line-1")] = {"activation_method": "Digital Account"}
        backend_stub.portal_url = None

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.REQUIRES_DIGITAL_ACCOUNT
        assert outcome.portal_url is None
        assert orchestrator.state.warnings

    @pytest.mark.asyncio
    async def test_vendor_mismatch(self, orchestrator, backend_stub, port):
        """Test that non-store vendors are rejected."""
        backend_stub.add_session("sess-1", vendor="Steam")

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.code == "vendor_mismatch"
        assert port.scripts == []

    @pytest.mark.asyncio
    async def test_expired_session(self, orchestrator, backend_stub):
        """Test a session past its expiry."""
        expired = datetime.now(timezone.utc) - timedelta(days=1)
        backend_stub.add_session("sess-1", expires_at=expired.isoformat())

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.EXPIRED_SESSION

    @pytest.mark.asyncio
    async def test_redeemed_status(self, orchestrator, backend_stub, vendor_stub):
        """Test a session whose status is already redeemed."""
        backend_stub.add_session("sess-1", status="AlreadyRedeemed")

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ALREADY_REDEEMED
        assert vendor_stub.calls == []

    @pytest.mark.asyncio
    async def test_subscription_conflict(self, orchestrator, backend_stub, port):
        """Test that an active subscription blocks a subscription key."""
        backend_stub.add_session("sess-1", product_id="CFQ7TTC0KHS0")
        port.subscriptions = [{"name": "Game Pass Ultimate", "productId": "CFQ7TTC0KHS0"}]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ACTIVE_SUBSCRIPTION_CONFLICT
        assert outcome.subscription.name == "Game Pass Ultimate"
        assert ActivationState.CHECKING_SUBSCRIPTION in [
            c.state for c in orchestrator.state.history
        ]

    @pytest.mark.asyncio
    async def test_region_mismatch(self, orchestrator, backend_stub, port, vendor_stub):
        """Test that a subscription key must match the account region."""
        backend_stub.add_session("sess-1", product_id="CFQ7TTC0KHS0")
        port.account_country = "United States"

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.REGION_MISMATCH
        assert outcome.account_region == "US"
        assert outcome.key_region == "DE"
        assert vendor_stub.calls == []

    @pytest.mark.asyncio
    async def test_subscription_key_matching_region(self, orchestrator, backend_stub, port):
        """Test that a subscription key in the account's region activates."""
        backend_stub.add_session("sess-1", product_id="CFQ7TTC0KHS0")
        port.account_country = "DE"

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS


class TestBundleActivation:
    """Tests for multi-key runs."""

    @pytest.mark.asyncio
    async def test_partial_success(self, orchestrator, backend_stub, vendor_stub, sleep):
        """Test a bundle where one key's content is already owned."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE)
        vendor_stub.redeem_responses[BUNDLE[1]] = [
            (403, {"code": "UserAlreadyOwnsContent", "data": ["9NBLGGH4R315"]})
        ]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.PARTIAL_SUCCESS
        assert outcome.succeeded == 2
        assert outcome.total == 3
        assert [f.key for f in outcome.failures] == [BUNDLE[1]]
        assert outcome.failures[0].status == KeyStatus.ALREADY_OWNED
        # Base delay after the first key, base plus failure penalty after the second.
        assert sleep.delays == [3.0, 5.0]

        progress = orchestrator.state.bundle_progress
        assert (progress.completed, progress.succeeded, progress.failed) == (3, 2, 1)
        assert backend_stub.marks == [{"session_token": "sess-1", "success": True}]

    @pytest.mark.asyncio
    async def test_all_keys_succeed(self, orchestrator, backend_stub):
        """Test a fully activated bundle."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE)

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.keys == BUNDLE

    @pytest.mark.asyncio
    async def test_no_key_succeeds(self, orchestrator, backend_stub, vendor_stub):
        """Test a bundle where every key fails."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE[:2])
        for key in BUNDLE[:2]:
            vendor_stub.redeem_responses[key] = [(409, {})]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.code is None
        assert [f.status for f in outcome.failures] == [KeyStatus.ALREADY_REDEEMED] * 2
        assert backend_stub.marks[-1]["success"] is False

    @pytest.mark.asyncio
    async def test_rerun_skips_settled_keys(self, orchestrator, backend_stub, vendor_stub):
        """Test that a second run only retries keys that have not settled."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE)
        vendor_stub.validate_responses[BUNDLE[1]] = [(503, {})] * 3

        first = await orchestrator.start("sess-1")

        assert first.kind == OutcomeKind.PARTIAL_SUCCESS
        tracker = orchestrator.bundle_tracker("sess-1")
        assert tracker.recoverable_failures() == [BUNDLE[1]]

        second = await orchestrator.start("sess-1")

        assert second.kind == OutcomeKind.SUCCESS
        assert len(vendor_stub.ops("validate", BUNDLE[0])) == 1
        assert len(vendor_stub.ops("validate", BUNDLE[1])) == 4
        assert tracker.state(BUNDLE[1]).status == KeyStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_conversion_within_bundle(self, orchestrator, backend_stub, vendor_stub):
        """Test a bundle key that needs the consent page and then succeeds."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE)
        vendor_stub.redeem_responses[BUNDLE[1]] = [(412, {"code": "ConversionConsentRequired"})]

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.keys == BUNDLE
        tracker = orchestrator.bundle_tracker("sess-1")
        assert tracker.state(BUNDLE[1]).status == KeyStatus.SUCCEEDED
        states = [c.state for c in orchestrator.state.history]
        index = states.index(ActivationState.HANDLING_CONVERSION)
        assert states[index + 1] == ActivationState.ACTIVATING_BUNDLE

    @pytest.mark.asyncio
    async def test_conversion_failure_within_bundle(
        self, orchestrator, backend_stub, vendor_stub, port
    ):
        """Test that a failed consent page fails only that key, for good."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE)
        vendor_stub.redeem_responses[BUNDLE[1]] = [(412, {"code": "ConversionConsentRequired"})]
        port.conversion = "failed"

        outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.PARTIAL_SUCCESS
        assert (outcome.succeeded, outcome.total) == (2, 3)
        assert [f.key for f in outcome.failures] == [BUNDLE[1]]
        assert outcome.failures[0].status == KeyStatus.FAILED
        state = orchestrator.bundle_tracker("sess-1").state(BUNDLE[1])
        assert state.status == KeyStatus.FAILED
        assert state.recoverable is False
        assert len(vendor_stub.ops("redeem", BUNDLE[2])) == 1

    @pytest.mark.asyncio
    async def test_cancel_during_key_delay(self, orchestrator, backend_stub, vendor_stub):
        """Test that cancelling between keys stops before the next key is touched."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE[:2])
        entered = asyncio.Event()

        async def blocking_sleep(delay):
            entered.set()
            await asyncio.Event().wait()

        orchestrator._sleep = blocking_sleep
        task = asyncio.create_task(orchestrator.start("sess-1"))
        await entered.wait()

        orchestrator.cancel()
        outcome = await task

        assert outcome.kind == OutcomeKind.ERROR
        assert outcome.code == "cancelled"
        assert vendor_stub.ops("validate", BUNDLE[1]) == []
        assert vendor_stub.ops("redeem", BUNDLE[1]) == []
        assert backend_stub.marks == []
        tracker = orchestrator.bundle_tracker("sess-1")
        assert tracker.state(BUNDLE[0]).status == KeyStatus.SUCCEEDED
        assert tracker.state(BUNDLE[1]).status == KeyStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_as_key_delay_ends(self, orchestrator, backend_stub, vendor_stub):
        """Test that a cancel landing as the delay finishes still stops the bundle."""
        backend_stub.add_session("sess-1", license_keys=BUNDLE[:2])

        async def cancelling_sleep(delay):
            orchestrator.cancel()

        orchestrator._sleep = cancelling_sleep

        outcome = await orchestrator.start("sess-1")

        assert outcome.code == "cancelled"
        assert vendor_stub.ops("validate", BUNDLE[1]) == []
        assert backend_stub.marks == []


class TestRunLifecycle:
    """Tests for cancellation and wiring."""

    @pytest.mark.asyncio
    async def test_restart_cancels_previous_run(self, orchestrator, backend_stub, port):
        """Test that starting a new run supersedes the pending one."""
        backend_stub.add_session("sess-1")
        backend_stub.add_session("sess-2")
        port.token = None

        first = asyncio.create_task(orchestrator.start("sess-1"))
        while port.messages.pending_count == 0:
            await asyncio.sleep(0)

        port.token = "identity-token"
        second = await orchestrator.start("sess-2")
        superseded = await first

        assert second.kind == OutcomeKind.SUCCESS
        assert superseded.kind == OutcomeKind.ERROR
        assert superseded.code == "cancelled"
        assert backend_stub.marks == [{"session_token": "sess-2", "success": True}]
        assert orchestrator.state.run_id == 2

    @pytest.mark.asyncio
    async def test_build_orchestrator(self, settings, registry, backend_stub, port):
        """Test default wiring through connect and disconnect."""
        backend_stub.add_session("sess-1")
        backend_stub.readiness[("order-1", "line-1")] = {"activation_method": "digital_account"}
        backend = BackendClient(
            settings.backend_url,
            settings.backend_api_key,
            registry=registry,
            transport=httpx.MockTransport(backend_stub),
        )

        async with build_orchestrator(port, settings, MemoryBackend(), backend) as orchestrator:
            assert orchestrator.diagnostics.subscriptions is orchestrator.subscriptions
            outcome = await orchestrator.start("sess-1")

        assert outcome.kind == OutcomeKind.REQUIRES_DIGITAL_ACCOUNT
        assert backend_stub.marks == [{"session_token": "sess-1", "success": False}]

    @pytest.mark.asyncio
    async def test_run_diagnostics(self, orchestrator, port):
        """Test the diagnostics hook against the orchestrator's browser."""
        port.account_country = "Germany"
        port.logged_in = False
        orchestrator.diagnostics = DiagnosticsService(
            port,
            orchestrator.subscriptions,
            orchestrator.settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )

        results = await orchestrator.run_diagnostics()

        assert results.account_region == "DE"
        assert results.problems == ["Not logged in to Microsoft account"]
        assert orchestrator.state is None
