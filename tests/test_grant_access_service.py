"""Tests for GrantAccessService: request, decide, summary, payment intent, admin overview."""

from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from premarket_platform.domain.errors import (
    BadRequest,
    Conflict,
    Forbidden,
    NotFound,
    UpstreamUnavailable,
)
from premarket_platform.domain.models import AccessEvent, GrantAccessRequest
from premarket_platform.services.grant_access_service import GrantAccessService

SETTINGS = SimpleNamespace(
    payment_currency="usd",
    max_payment_attempts=3,
    default_referral_agent_id="",
)


@pytest.fixture
def service(db_session, gateway_mock, notifier_mock):
    return GrantAccessService(db_session, gateway_mock, notifier_mock, SETTINGS)


@pytest.fixture
async def admin(make_user):
    return await make_user(role="admin", name="Ada Admin")


async def _count_records(db_session, request_id):
    return await db_session.scalar(
        select(func.count(GrantAccessRequest.id)).where(GrantAccessRequest.request_id == request_id)
    )


# ---------------------------------------------------------------------------
# request_access
# ---------------------------------------------------------------------------


class TestRequestAccess:

    async def test_creates_pending_record(self, service, db_session, notifier_mock, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()

        record = await service.request_access(agent.user_id, request.id)

        assert record.status == "pending"
        assert record.agent_id == agent.user_id
        notifier_mock.admin_access_requested.assert_awaited_once_with(record)
        event_types = (await db_session.execute(
            select(AccessEvent.event_type).where(AccessEvent.access_record_id == record.id)
        )).scalars().all()
        assert event_types == ["access_requested"]

    async def test_second_request_returns_same_record(self, service, db_session, notifier_mock, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()

        first = await service.request_access(agent.user_id, request.id)
        second = await service.request_access(agent.user_id, request.id)

        assert first.id == second.id
        assert await _count_records(db_session, request.id) == 1
        assert notifier_mock.admin_access_requested.await_count == 1

    async def test_approved_record_is_returned(self, service, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        existing = await make_charged_record(agent.user_id, request.id)

        record = await service.request_access(agent.user_id, request.id)
        assert record.id == existing.id

    @pytest.mark.parametrize("status", ["free", "paid"])
    async def test_granted_record_conflicts(self, service, make_agent, make_request, make_access_record, status):
        agent = await make_agent()
        request = await make_request()
        await make_access_record(agent.user_id, request.id, status=status)

        with pytest.raises(Conflict, match="already have access"):
            await service.request_access(agent.user_id, request.id)

    async def test_rejected_record_conflicts(self, service, make_agent, make_request, make_access_record):
        agent = await make_agent()
        request = await make_request()
        await make_access_record(agent.user_id, request.id, status="rejected")

        with pytest.raises(Conflict, match="rejected"):
            await service.request_access(agent.user_id, request.id)

    async def test_missing_request(self, service, make_agent):
        agent = await make_agent()
        with pytest.raises(NotFound):
            await service.request_access(agent.user_id, "missing")

    async def test_inactive_request(self, service, make_agent, make_request):
        agent = await make_agent()
        request = await make_request(is_active=False)
        with pytest.raises(Conflict, match="no longer active"):
            await service.request_access(agent.user_id, request.id)

    async def test_invisible_request(self, service, make_agent, make_request):
        referrer = await make_agent()
        agent = await make_agent()
        request = await make_request(visibility="PRIVATE", referral_agent_id=referrer.user_id)
        with pytest.raises(Forbidden):
            await service.request_access(agent.user_id, request.id)


# ---------------------------------------------------------------------------
# admin_decide_access
# ---------------------------------------------------------------------------


class TestAdminDecideAccess:

    async def test_charge_scenario(self, service, notifier_mock, admin, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()
        record = await service.request_access(agent.user_id, request.id)

        record = await service.admin_decide_access(record.id, "charge", admin.id, charge_amount=50)

        assert record.status == "approved"
        assert record.payment_status == "pending"
        assert record.payment_currency == "USD"
        assert Decimal(str(record.payment_amount)) == Decimal("50.00")
        notifier_mock.agent_payment_link.assert_awaited_once()

        summary = await service.get_agent_access_summary(agent.user_id, request.id)
        assert summary.access_type == "none"
        assert summary.can_request_access is False
        assert summary.charge_amount == 50.0
        assert summary.payment["status"] == "pending"

    async def test_approve_free(self, service, notifier_mock, admin, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()
        record = await service.request_access(agent.user_id, request.id)

        record = await service.admin_decide_access(record.id, "approve", admin.id, is_free=True)

        assert record.status == "free"
        assert record.is_free is True
        assert record.payment_status is None
        assert record.decided_by == admin.id
        notifier_mock.agent_access_approved.assert_awaited_once()

        summary = await service.get_agent_access_summary(agent.user_id, request.id)
        assert summary.access_type == "free"
        assert summary.can_see_renter_info is True

    async def test_approve_with_amount_charges(self, service, admin, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()
        record = await service.request_access(agent.user_id, request.id)

        record = await service.admin_decide_access(record.id, "approve", admin.id, charge_amount="75")
        assert record.status == "approved"
        assert record.payment_status == "pending"

    async def test_reject(self, service, notifier_mock, admin, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()
        record = await service.request_access(agent.user_id, request.id)

        record = await service.admin_decide_access(record.id, "reject", admin.id, notes="Not a fit")

        assert record.status == "rejected"
        assert record.admin_notes == "Not a fit"
        notifier_mock.agent_access_rejected.assert_awaited_once()

    async def test_override_approved_to_rejected(self, service, admin, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_charged_record(agent.user_id, request.id)

        record = await service.admin_decide_access(record.id, "reject", admin.id)
        assert record.status == "rejected"

    async def test_override_paid_is_allowed_and_logged(
        self, service, admin, make_agent, make_request, make_access_record, caplog,
    ):
        agent = await make_agent()
        request = await make_request()
        record = await make_access_record(agent.user_id, request.id, status="paid", payment_status="succeeded")

        with caplog.at_level("WARNING"):
            record = await service.admin_decide_access(record.id, "reject", admin.id)

        assert record.status == "rejected"
        assert "overriding paid" in caplog.text

    async def test_recharge_resets_payment(self, service, admin, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_charged_record(
            agent.user_id, request.id, payment_status="failed", payment_failure_count=2,
            payment_failed_at=["2026-01-01T00:00:00+00:00", "2026-01-02T00:00:00+00:00"],
        )

        record = await service.admin_decide_access(record.id, "charge", admin.id, charge_amount=30)

        assert record.payment_failure_count == 0
        assert record.payment_failed_at == []
        assert record.stripe_payment_intent_id is None
        assert record.payment_status == "pending"

    async def test_invalid_charge(self, service, admin, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()
        record = await service.request_access(agent.user_id, request.id)
        with pytest.raises(BadRequest):
            await service.admin_decide_access(record.id, "charge", admin.id, charge_amount=0)

    async def test_missing_record(self, service, admin):
        with pytest.raises(NotFound):
            await service.admin_decide_access("missing", "approve", admin.id)


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


class TestAgentAccessSummary:

    async def test_available(self, service, make_agent, make_request):
        agent = await make_agent()
        request = await make_request()
        summary = await service.get_agent_access_summary(agent.user_id, request.id)
        assert summary.grant_access_status == "Available"
        assert summary.can_request_access is True

    async def test_blanket_access(self, service, make_agent, make_request, make_access_record):
        agent = await make_agent(has_grant_access=True)
        request = await make_request()
        await make_access_record(agent.user_id, request.id, status="rejected")

        summary = await service.get_agent_access_summary(agent.user_id, request.id)
        assert summary.access_type == "admin-granted"
        assert summary.can_request_access is False
        assert summary.can_see_renter_info is True


# ---------------------------------------------------------------------------
# create_payment_intent
# ---------------------------------------------------------------------------


class TestCreatePaymentIntent:

    async def test_creates_intent(self, service, gateway_mock, db_session, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_charged_record(agent.user_id, request.id, intent_id=None)

        result = await service.create_payment_intent(record.id, agent.user_id)

        assert result == {
            "client_secret": "pi_test_123_secret_abc",
            "amount": 50.0,
            "currency": "usd",
            "intent_id": "pi_test_123",
        }
        call = gateway_mock.create_intent.await_args
        assert call.kwargs["metadata"] == {
            "grant_access_id": record.id,
            "agent_id": agent.user_id,
            "request_id": request.id,
        }
        assert call.kwargs["idempotency_key"] == f"grant-access-{record.id}-0-5000"

        await db_session.refresh(record)
        assert record.stripe_payment_intent_id == "pi_test_123"
        assert record.payment_status == "pending"

    async def test_other_agent_forbidden(self, service, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        other = await make_agent()
        request = await make_request()
        record = await make_charged_record(agent.user_id, request.id)
        with pytest.raises(Forbidden):
            await service.create_payment_intent(record.id, other.user_id)

    async def test_pending_record_rejected(self, service, make_agent, make_request, make_access_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_access_record(agent.user_id, request.id, status="pending")
        with pytest.raises(BadRequest, match="Invalid payment status"):
            await service.create_payment_intent(record.id, agent.user_id)

    async def test_paid_record_conflicts(self, service, make_agent, make_request, make_access_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_access_record(agent.user_id, request.id, status="paid")
        with pytest.raises(Conflict):
            await service.create_payment_intent(record.id, agent.user_id)

    async def test_max_attempts(self, service, gateway_mock, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_charged_record(
            agent.user_id, request.id, payment_status="failed", payment_failure_count=3,
        )
        with pytest.raises(Conflict, match="Maximum payment attempts"):
            await service.create_payment_intent(record.id, agent.user_id)
        gateway_mock.create_intent.assert_not_awaited()

    async def test_retry_after_failure_uses_new_key(self, service, gateway_mock, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_charged_record(
            agent.user_id, request.id, payment_status="failed", payment_failure_count=1,
        )
        await service.create_payment_intent(record.id, agent.user_id)
        assert gateway_mock.create_intent.await_args.kwargs["idempotency_key"].endswith("-1-5000")

    async def test_gateway_failure_leaves_record(self, service, gateway_mock, db_session, make_agent, make_request, make_charged_record):
        agent = await make_agent()
        request = await make_request()
        record = await make_charged_record(agent.user_id, request.id, intent_id=None)
        gateway_mock.create_intent.side_effect = UpstreamUnavailable("Payment provider is unavailable")

        with pytest.raises(UpstreamUnavailable):
            await service.create_payment_intent(record.id, agent.user_id)

        await db_session.refresh(record)
        assert record.stripe_payment_intent_id is None


# ---------------------------------------------------------------------------
# Admin overview
# ---------------------------------------------------------------------------


class TestAdminOverview:

    async def test_list_and_stats(self, service, make_agent, make_request, make_access_record, make_charged_record):
        agent = await make_agent()
        requests = [await make_request() for _ in range(4)]
        await make_access_record(agent.user_id, requests[0].id, status="pending")
        await make_charged_record(agent.user_id, requests[1].id, intent_id="pi_a")
        await make_charged_record(
            agent.user_id, requests[2].id, intent_id="pi_b", payment_status="failed", payment_failure_count=2,
        )
        await make_access_record(
            agent.user_id, requests[3].id, status="paid", is_free=False,
            charge_amount=Decimal("80.00"), payment_amount=Decimal("80.00"),
            payment_status="succeeded", payment_failure_count=1,
        )

        records, total = await service.list_access_records(status="approved")
        assert total == 2
        assert {r.status for r in records} == {"approved"}

        payments, total = await service.list_payments(payment_status="failed")
        assert total == 1
        assert payments[0].stripe_payment_intent_id == "pi_b"

        payments, total = await service.list_payments(page=1, per_page=2)
        assert total == 3
        assert len(payments) == 2

        stats = await service.payment_stats()
        assert stats["total_requests"] == 4
        assert stats["by_status"]["approved"] == 2
        assert stats["by_status"]["rejected"] == 0
        assert stats["by_payment_status"] == {"pending": 1, "succeeded": 1, "failed": 1}
        assert stats["total_revenue"] == 80.0
        assert stats["total_failures"] == 3
