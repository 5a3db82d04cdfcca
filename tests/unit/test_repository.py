# --------------------------- tests/unit/test_repository.py ----------------------------
"""
Quote Intake · Repository Tests
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from quote_intake.errors import PersistenceError
from quote_intake.models import (
    Direction, ExternalQuotation, Interaction, InteractionType, ProviderResponse, QuotationRequest,
    QuotationStatus, RFQStatus, utcnow,
)
from quote_intake.services.repository import SupabaseRepository
from tests.conftest import build_provider


def new_request(thread_id="<t@mail>", **fields) -> QuotationRequest:
    return QuotationRequest(customer_email="laura@metalicas-norte.es", thread_id=thread_id, **fields)


class TestRequests:
    """quotation_requests table."""

    def test_reads_return_copies(self, repository):
        stored = repository.create_request(new_request(material="latón"))
        stored.material = "acero"

        assert repository.get_request(stored.id).material == "latón"

    def test_duplicate_id_is_rejected(self, repository):
        request = new_request()
        repository.create_request(request)

        with pytest.raises(PersistenceError):
            repository.create_request(request)

    def test_update_of_unknown_request_fails(self, repository):
        with pytest.raises(PersistenceError):
            repository.update_request(new_request())

    def test_thread_lookup_and_status_filter(self, repository):
        first = repository.create_request(new_request("<a@mail>"))
        repository.create_request(new_request("<b@mail>", status=QuotationStatus.ESCALATED))

        assert repository.find_request_by_thread("<a@mail>").id == first.id
        assert repository.find_request_by_thread("<c@mail>") is None
        assert [r.thread_id for r in repository.list_requests(QuotationStatus.ESCALATED)] == ["<b@mail>"]


class TestInteractions:
    """Append-only log ordering."""

    def test_sequence_and_timestamps_never_decrease(self, repository):
        later = Interaction("r-1", InteractionType.EMAIL_RECEIVED, Direction.INBOUND)
        earlier = Interaction("r-1", InteractionType.EMAIL_SENT, Direction.OUTBOUND,
                              created_at=later.created_at - timedelta(minutes=5))

        repository.append_interaction(later)
        repository.append_interaction(earlier)

        log = repository.list_interactions("r-1")
        assert [i.sequence for i in log] == [1, 2]
        assert log[1].created_at >= log[0].created_at


class TestRFQsAndRegistry:
    """external_quotations and provider_contacts tables."""

    def test_find_rfq_by_provider_and_service(self, repository):
        rfq = repository.create_rfq(ExternalQuotation(
            request_id="r-1", provider_name="Anodizados Madrid", service_type="anodizado",
            provider_place_id="place-1",
        ))

        assert repository.find_rfq("r-1", "place-1", "anodizado").id == rfq.id
        assert repository.find_rfq("r-1", "place-1", "temple") is None

    def test_provider_response_round_trips(self, repository):
        rfq = repository.create_rfq(ExternalQuotation(request_id="r-1", provider_name="A", service_type="temple"))
        rfq.status = RFQStatus.RECEIVED
        rfq.provider_response = ProviderResponse(price=120.5, lead_time_days=4)

        repository.update_rfq(rfq)

        stored = repository.list_rfqs(statuses=[RFQStatus.RECEIVED])[0]
        assert stored.provider_response.price == 120.5

    def test_rfq_expiry_defaults_to_seven_days(self):
        rfq = ExternalQuotation(request_id="r", provider_name="A", service_type="temple")

        assert rfq.expires_at - rfq.created_at == timedelta(days=7)
        assert not rfq.is_expired(rfq.created_at)
        assert rfq.is_expired(utcnow() + timedelta(days=8))

    def test_upsert_merges_by_place_id(self, repository):
        repository.upsert_provider(build_provider("Anodizados Madrid", email="a@anod.es", place_id="p1",
                                                  rating=4.5), service="anodizado")
        repository.upsert_provider(build_provider("Anodizados Madrid", place_id="p1", rating=4.0), service="cromado")

        (provider,) = repository.search_registry("cromado")
        assert provider.services == ["anodizado", "cromado"]
        assert provider.email == "a@anod.es"
        assert provider.reliability_score == pytest.approx(0.8)


class FakeProviderTable:
    """provider_contacts stand-in: equality selects and upserts keyed by google_place_id."""

    def __init__(self, rows):
        self.rows = rows
        self.upserts = []

    def select(self, columns="*"):
        self._op, self._filters = "select", {}
        return self

    def eq(self, column, value):
        self._filters[column] = value
        return self

    def limit(self, count):
        return self

    def upsert(self, record, on_conflict=None):
        self._op, self._record = "upsert", dict(record)
        self.upserts.append((self._record, on_conflict))
        return self

    def execute(self):
        if self._op == "select":
            return SimpleNamespace(data=[dict(r) for r in self.rows.values()
                                         if all(r.get(k) == v for k, v in self._filters.items())])
        self.rows[self._record["google_place_id"]] = self._record
        return SimpleNamespace(data=[dict(self._record)])


class TestSupabaseRegistry:
    """Registry upserts against the Supabase client."""

    def test_upsert_unions_services_like_in_memory(self):
        rows = {}
        table = FakeProviderTable(rows)
        client = Mock()
        client.table = Mock(return_value=table)
        repository = SupabaseRepository(client=client)

        repository.upsert_provider(build_provider("Anodizados Madrid", email="a@anod.es", place_id="p1",
                                                  rating=4.5), service="anodizado")
        provider = repository.upsert_provider(build_provider("Anodizados Madrid", place_id="p1", rating=4.0),
                                              service="cromado")

        assert provider.services == ["anodizado", "cromado"]
        assert rows["p1"]["services"] == ["anodizado", "cromado"]
        assert rows["p1"]["email"] == "a@anod.es"
        assert provider.reliability_score == pytest.approx(0.8)
        assert all(on_conflict == "google_place_id" for _, on_conflict in table.upserts)
