# --------------------------- tests/integration/test_operator.py ----------------------------
"""
Quote Intake · Operator Actions & Dashboard Read Model Tests
"""

from datetime import timedelta

import pytest

from quote_intake.errors import InvalidTransitionError, NotFoundError, PersistenceError
from quote_intake.models import ExternalQuotation, QuotationStatus, RFQStatus, utcnow
from quote_intake.services import DashboardReadModel, OperatorActions
from quote_intake.services.operator import apply_rfq_update


@pytest.fixture
def operator(repository, state_machine, mailer, composer):
    return OperatorActions(repository, state_machine, mailer, composer)


@pytest.fixture
def sent_rfq(repository, stored_request):
    return repository.create_rfq(ExternalQuotation(
        request_id=stored_request.id, provider_name="Anodizados Madrid", service_type="anodizado",
        provider_email="ventas@anodizados-madrid.es", provider_place_id="place-1", status=RFQStatus.SENT,
    ))


def waiting_request(state_machine, request):
    request = state_machine.transition(request, QuotationStatus.GATHERING_INFO)
    return state_machine.transition(request, QuotationStatus.WAITING_PROVIDERS)


# ===============================================================================
# RFQ UPDATES
# ===============================================================================

class TestRFQUpdate:
    """update_rfq endpoint contract."""

    def test_received_with_response(self, operator, repository, sent_rfq):
        body, status = operator.update_rfq({
            "rfqId": sent_rfq.id, "status": "received",
            "providerResponse": {"price": "180.50", "leadTimeDays": 5, "notes": "Anodizado negro"},
        })

        assert status == 200
        assert body["changed"] is True
        stored = repository.get_rfq(sent_rfq.id)
        assert stored.status == RFQStatus.RECEIVED
        assert stored.provider_response.price == 180.5
        assert stored.received_at is not None

    def test_identical_update_is_a_no_op(self, operator, sent_rfq):
        update = {"rfqId": sent_rfq.id, "status": "received", "providerResponse": {"price": 99}}

        operator.update_rfq(update)
        body, status = operator.update_rfq(update)

        assert status == 200
        assert body["changed"] is False

    def test_backwards_move_is_rejected(self, operator, repository, sent_rfq):
        body, status = operator.update_rfq({"rfqId": sent_rfq.id, "status": "pending"})

        assert status == 400
        assert body["field"] == "status"
        assert repository.get_rfq(sent_rfq.id).status == RFQStatus.SENT

    def test_decline_after_receiving(self, operator, repository, sent_rfq):
        operator.update_rfq({"rfqId": sent_rfq.id, "status": "received"})
        body, status = operator.update_rfq({"rfqId": sent_rfq.id, "status": "declined"})

        assert status == 200
        assert repository.get_rfq(sent_rfq.id).status == RFQStatus.DECLINED

    @pytest.mark.parametrize("payload,field", [
        ({"status": "received"}, "rfqId"),
        ({"rfqId": "x", "status": "lost"}, "status"),
        ({"rfqId": "x", "status": "received", "providerResponse": {"price": -1}}, "providerResponse.price"),
        ({"rfqId": "x", "status": "received", "providerResponse": {"leadTimeDays": "soon"}}, "providerResponse"),
    ])
    def test_invalid_payloads(self, operator, payload, field):
        body, status = operator.update_rfq(payload)

        assert status == 400
        assert body["field"] == field

    def test_unknown_rfq(self, operator):
        body, status = operator.update_rfq({"rfqId": "missing", "status": "received"})

        assert status == 404
        assert body["success"] is False

    def test_datastore_failure(self, operator, repository, sent_rfq, monkeypatch):
        def broken(rfq):
            raise PersistenceError("external_quotations", "update", "connection reset")

        monkeypatch.setattr(repository, "update_rfq", broken)

        body, status = operator.update_rfq({"rfqId": sent_rfq.id, "status": "received"})

        assert status == 500

    def test_received_at_stamped_once(self):
        rfq = ExternalQuotation(request_id="r", provider_name="A", service_type="temple", status=RFQStatus.SENT)

        apply_rfq_update(rfq, RFQStatus.RECEIVED)
        first = rfq.received_at
        apply_rfq_update(rfq, RFQStatus.DECLINED)

        assert rfq.received_at == first


# ===============================================================================
# REQUEST HAND-OFF
# ===============================================================================

class TestRequestHandOff:
    """Operator-driven end of the lifecycle."""

    @pytest.mark.asyncio
    async def test_ready_for_human_notifies_reviewer(self, operator, state_machine, mailer, stored_request, sent_rfq):
        waiting_request(state_machine, stored_request)

        request = await operator.mark_ready_for_human(stored_request.id)

        assert request.status == QuotationStatus.READY_FOR_HUMAN
        message = mailer.send.await_args.args[0]
        assert message.to == ["revision@taller.test"]
        assert "Anodizados Madrid / anodizado: sent" in message.body

    @pytest.mark.asyncio
    async def test_quoted_only_after_ready(self, operator, state_machine, stored_request):
        waiting_request(state_machine, stored_request)

        with pytest.raises(InvalidTransitionError):
            await operator.mark_quoted(stored_request.id)
        await operator.mark_ready_for_human(stored_request.id)
        request = await operator.mark_quoted(stored_request.id)

        assert request.status == QuotationStatus.QUOTED


# ===============================================================================
# DASHBOARD
# ===============================================================================

class TestDashboardReadModel:
    """Read-only views."""

    def test_request_rows_render_missing_values(self, repository, stored_request):
        rows = DashboardReadModel(repository).list_requests()["rows"]

        assert rows[0]["customer_name"] == "N/A"
        assert rows[0]["quantity"] == 100
        assert rows[0]["missing_info"] == "-"

    def test_request_detail(self, repository, state_machine, stored_request, sent_rfq):
        state_machine.transition(stored_request, QuotationStatus.GATHERING_INFO)

        detail = DashboardReadModel(repository).request_detail(stored_request.id)

        assert [i["type"] for i in detail["interactions"]] == ["status_change"]
        assert detail["rfqs"][0]["price"] == "N/A"
        assert detail["errors"] == {}

    def test_unknown_request_detail(self, repository):
        with pytest.raises(NotFoundError):
            DashboardReadModel(repository).request_detail("missing")

    def test_rfq_views(self, repository, stored_request, sent_rfq):
        repository.create_rfq(ExternalQuotation(
            request_id=stored_request.id, provider_name="Temples Centro", service_type="temple",
            status=RFQStatus.RECEIVED,
        ))
        model = DashboardReadModel(repository)
        later = utcnow() + timedelta(days=8)

        assert len(model.list_rfqs()["rows"]) == 2
        assert [r["provider_name"] for r in model.list_rfqs("pending")["rows"]] == ["Anodizados Madrid"]
        assert [r["provider_name"] for r in model.list_rfqs("received")["rows"]] == ["Temples Centro"]
        assert model.list_rfqs("expired")["rows"] == []
        assert [r["provider_name"] for r in model.list_rfqs("expired", now=later)["rows"]] == ["Anodizados Madrid"]
        assert [r.id for r in model.stale_rfqs(now=later)["rfqs"]] == [sent_rfq.id]

    def test_unknown_rfq_view(self, repository):
        with pytest.raises(ValueError):
            DashboardReadModel(repository).list_rfqs("archived")

    def test_failed_fetch_is_marked(self, repository, monkeypatch):
        def broken(status=None):
            raise PersistenceError("quotation_requests", "select", "timeout")

        monkeypatch.setattr(repository, "list_requests", broken)

        result = DashboardReadModel(repository).list_requests()

        assert result["rows"] == []
        assert "timeout" in result["error"]

    def test_failed_request_fetch_in_detail_is_marked(self, repository, monkeypatch):
        def broken(request_id):
            raise PersistenceError("quotation_requests", "select", "timeout")

        monkeypatch.setattr(repository, "get_request", broken)

        detail = DashboardReadModel(repository).request_detail("r-1")

        assert detail["request"] is None
        assert detail["interactions"] == [] and detail["rfqs"] == []
        assert "timeout" in detail["errors"]["request"]

    def test_failed_stale_rfq_fetch_is_marked(self, repository, monkeypatch):
        def broken(request_id=None, statuses=None):
            raise PersistenceError("external_quotations", "select", "timeout")

        monkeypatch.setattr(repository, "list_rfqs", broken)

        result = DashboardReadModel(repository).stale_rfqs()

        assert result["rfqs"] == []
        assert "timeout" in result["error"]
