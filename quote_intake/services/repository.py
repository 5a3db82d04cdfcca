# --------------------------- quote_intake/services/repository.py ----------------------------
"""
Quote Intake · Persistence Layer

OVERVIEW:
One repository interface, two implementations:
- SupabaseRepository: production datastore (Supabase / PostgREST)
- InMemoryRepository: local runs and tests, same record shapes

TABLES:
- quotation_requests: one row per customer request, never hard-deleted
- interactions: append-only communication log, ordered by ``sequence``
- external_quotations: RFQs, one per (request, provider, service)
- provider_contacts: provider registry, upserted by google_place_id
- guardrails_log: immutable classification audit trail

BUSINESS LOGIC:
- Every write failure surfaces as PersistenceError so callers can decide
  whether to continue (audit writes) or fail the item (request creation)
- Interactions get a per-request sequence number and a non-decreasing
  timestamp, keeping the log strictly append-ordered
- Registry writes are upserts keyed by the stable directory id, so concurrent
  discoveries of the same provider converge on one row
"""

import copy
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv
from supabase import create_client, Client

from quote_intake.errors import PersistenceError
from quote_intake.models import (
    ExternalQuotation, Interaction, ProviderCandidate, QuotationRequest,
    QuotationStatus, RFQStatus, new_id, utcnow,
)

load_dotenv()

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "quotation_requests"
INTERACTIONS_TABLE = "interactions"
RFQS_TABLE = "external_quotations"
PROVIDERS_TABLE = "provider_contacts"
GUARDRAILS_TABLE = "guardrails_log"


class QuotationRepository:
    """Datastore interface used by the state machine, orchestrators and read models."""

    # quotation requests
    def create_request(self, request: QuotationRequest) -> QuotationRequest:
        raise NotImplementedError

    def get_request(self, request_id: str) -> Optional[QuotationRequest]:
        raise NotImplementedError

    def find_request_by_thread(self, thread_id: str) -> Optional[QuotationRequest]:
        raise NotImplementedError

    def update_request(self, request: QuotationRequest) -> QuotationRequest:
        raise NotImplementedError

    def list_requests(self, status: Optional[QuotationStatus] = None) -> List[QuotationRequest]:
        raise NotImplementedError

    # interactions
    def append_interaction(self, interaction: Interaction) -> Interaction:
        raise NotImplementedError

    def list_interactions(self, request_id: str) -> List[Interaction]:
        raise NotImplementedError

    # RFQs
    def create_rfq(self, rfq: ExternalQuotation) -> ExternalQuotation:
        raise NotImplementedError

    def get_rfq(self, rfq_id: str) -> Optional[ExternalQuotation]:
        raise NotImplementedError

    def update_rfq(self, rfq: ExternalQuotation) -> ExternalQuotation:
        raise NotImplementedError

    def list_rfqs(self, request_id: Optional[str] = None,
                  statuses: Optional[Iterable[RFQStatus]] = None) -> List[ExternalQuotation]:
        raise NotImplementedError

    def find_rfq(self, request_id: str, provider_key: str, service_type: str) -> Optional[ExternalQuotation]:
        for rfq in self.list_rfqs(request_id=request_id):
            if rfq.provider_key == provider_key and rfq.service_type == service_type:
                return rfq
        return None

    # provider registry
    def search_registry(self, service: str, material: Optional[str] = None,
                        limit: int = 10) -> List[ProviderCandidate]:
        raise NotImplementedError

    def upsert_provider(self, candidate: ProviderCandidate, service: Optional[str] = None) -> ProviderCandidate:
        raise NotImplementedError

    # guardrail audit trail
    def log_classification(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError


def _filter_material(candidates: List[ProviderCandidate], material: Optional[str]) -> List[ProviderCandidate]:
    if not material:
        return candidates
    material = material.lower()
    return [c for c in candidates if not c.materials or any(material in m.lower() or m.lower() in material
                                                            for m in c.materials)]


def merge_registry_record(existing: Optional[Dict[str, Any]], record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Registry upsert merge shared by every backend: non-None fields override the
    stored row and the service lists are unioned, so a provider found for a new
    service stays findable for the old ones.
    """
    updates = {k: v for k, v in record.items() if v is not None}
    if not existing:
        return updates
    services = list(dict.fromkeys((existing.get("services") or []) + (record.get("services") or [])))
    merged = {**existing, **updates, "services": services}
    if existing.get("id"):
        merged["id"] = existing["id"]
    return merged


# ===============================================================================
# IN-MEMORY REPOSITORY
# ===============================================================================

class InMemoryRepository(QuotationRepository):
    """
    Dictionary-backed repository.

    Stores flat records (exactly what Supabase would store) and rebuilds
    entities on read, so callers never share mutable state with the store.
    """

    def __init__(self):
        self.requests: Dict[str, dict] = {}
        self.interactions: Dict[str, List[dict]] = {}
        self.rfqs: Dict[str, dict] = {}
        self.providers: Dict[str, dict] = {}
        self.guardrails_log: List[dict] = []

    def create_request(self, request: QuotationRequest) -> QuotationRequest:
        if request.id in self.requests:
            raise PersistenceError(REQUESTS_TABLE, "insert", f"duplicate id {request.id}")
        self.requests[request.id] = request.to_record()
        return QuotationRequest.from_record(self.requests[request.id])

    def get_request(self, request_id: str) -> Optional[QuotationRequest]:
        record = self.requests.get(request_id)
        return QuotationRequest.from_record(record) if record else None

    def find_request_by_thread(self, thread_id: str) -> Optional[QuotationRequest]:
        matches = [r for r in self.requests.values() if r["thread_id"] == thread_id]
        if not matches:
            return None
        return QuotationRequest.from_record(min(matches, key=lambda r: r["created_at"]))

    def update_request(self, request: QuotationRequest) -> QuotationRequest:
        if request.id not in self.requests:
            raise PersistenceError(REQUESTS_TABLE, "update", f"unknown id {request.id}")
        request.updated_at = utcnow()
        self.requests[request.id] = request.to_record()
        return QuotationRequest.from_record(self.requests[request.id])

    def list_requests(self, status: Optional[QuotationStatus] = None) -> List[QuotationRequest]:
        records = sorted(self.requests.values(), key=lambda r: r["created_at"], reverse=True)
        return [QuotationRequest.from_record(r) for r in records
                if status is None or r["status"] == status.value]

    def append_interaction(self, interaction: Interaction) -> Interaction:
        log = self.interactions.setdefault(interaction.request_id, [])
        if log:
            last = Interaction.from_record(log[-1])
            interaction.sequence = last.sequence + 1
            if interaction.created_at < last.created_at:
                interaction.created_at = last.created_at
        else:
            interaction.sequence = 1
        log.append(interaction.to_record())
        return Interaction.from_record(log[-1])

    def list_interactions(self, request_id: str) -> List[Interaction]:
        return [Interaction.from_record(r) for r in self.interactions.get(request_id, [])]

    def create_rfq(self, rfq: ExternalQuotation) -> ExternalQuotation:
        if rfq.id in self.rfqs:
            raise PersistenceError(RFQS_TABLE, "insert", f"duplicate id {rfq.id}")
        self.rfqs[rfq.id] = rfq.to_record()
        return ExternalQuotation.from_record(self.rfqs[rfq.id])

    def get_rfq(self, rfq_id: str) -> Optional[ExternalQuotation]:
        record = self.rfqs.get(rfq_id)
        return ExternalQuotation.from_record(record) if record else None

    def update_rfq(self, rfq: ExternalQuotation) -> ExternalQuotation:
        if rfq.id not in self.rfqs:
            raise PersistenceError(RFQS_TABLE, "update", f"unknown id {rfq.id}")
        rfq.updated_at = utcnow()
        self.rfqs[rfq.id] = rfq.to_record()
        return ExternalQuotation.from_record(self.rfqs[rfq.id])

    def list_rfqs(self, request_id: Optional[str] = None,
                  statuses: Optional[Iterable[RFQStatus]] = None) -> List[ExternalQuotation]:
        wanted = {s.value for s in statuses} if statuses else None
        records = sorted(self.rfqs.values(), key=lambda r: r["created_at"], reverse=True)
        return [ExternalQuotation.from_record(r) for r in records
                if (request_id is None or r["request_id"] == request_id)
                and (wanted is None or r["status"] in wanted)]

    def search_registry(self, service: str, material: Optional[str] = None,
                        limit: int = 10) -> List[ProviderCandidate]:
        records = [r for r in self.providers.values() if r.get("is_active") and service in (r.get("services") or [])]
        records.sort(key=lambda r: r.get("reliability_score") or 0, reverse=True)
        candidates = [ProviderCandidate.from_registry_record(r) for r in records[:limit]]
        return _filter_material(candidates, material)

    def upsert_provider(self, candidate: ProviderCandidate, service: Optional[str] = None) -> ProviderCandidate:
        record = candidate.to_registry_record(service)
        key = record["google_place_id"] or record["id"] or new_id()
        record = merge_registry_record(self.providers.get(key), record)
        record["id"] = record.get("id") or new_id()
        self.providers[key] = record
        return ProviderCandidate.from_registry_record(copy.deepcopy(record))

    def log_classification(self, entry: Dict[str, Any]) -> None:
        self.guardrails_log.append(copy.deepcopy(entry))


# ===============================================================================
# SUPABASE REPOSITORY
# ===============================================================================

class SupabaseRepository(QuotationRepository):
    """
    Supabase-backed repository.

    DEPENDENCIES:
    - Environment variables: SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
    """

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            url = os.getenv("SUPABASE_URL")
            key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            if not url or not key:
                raise PersistenceError("supabase", "connect", "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
            client = create_client(url, key)
        self.supabase = client

    def _execute(self, table: str, operation: str, query) -> List[dict]:
        try:
            response = query.execute()
        except Exception as e:
            logger.error(f"{operation} on {table} failed: {e}")
            raise PersistenceError(table, operation, str(e))
        return response.data or []

    def create_request(self, request: QuotationRequest) -> QuotationRequest:
        rows = self._execute(REQUESTS_TABLE, "insert",
                             self.supabase.table(REQUESTS_TABLE).insert(request.to_record()))
        return QuotationRequest.from_record(rows[0]) if rows else request

    def get_request(self, request_id: str) -> Optional[QuotationRequest]:
        rows = self._execute(REQUESTS_TABLE, "select",
                             self.supabase.table(REQUESTS_TABLE).select("*").eq("id", request_id).limit(1))
        return QuotationRequest.from_record(rows[0]) if rows else None

    def find_request_by_thread(self, thread_id: str) -> Optional[QuotationRequest]:
        rows = self._execute(REQUESTS_TABLE, "select",
                             self.supabase.table(REQUESTS_TABLE).select("*")
                             .eq("thread_id", thread_id).order("created_at").limit(1))
        return QuotationRequest.from_record(rows[0]) if rows else None

    def update_request(self, request: QuotationRequest) -> QuotationRequest:
        request.updated_at = utcnow()
        record = request.to_record()
        record.pop("id")
        record.pop("created_at")
        rows = self._execute(REQUESTS_TABLE, "update",
                             self.supabase.table(REQUESTS_TABLE).update(record).eq("id", request.id))
        return QuotationRequest.from_record(rows[0]) if rows else request

    def list_requests(self, status: Optional[QuotationStatus] = None) -> List[QuotationRequest]:
        query = self.supabase.table(REQUESTS_TABLE).select("*").order("created_at", desc=True)
        if status is not None:
            query = query.eq("status", status.value)
        return [QuotationRequest.from_record(r) for r in self._execute(REQUESTS_TABLE, "select", query)]

    def append_interaction(self, interaction: Interaction) -> Interaction:
        last = self._execute(INTERACTIONS_TABLE, "select",
                             self.supabase.table(INTERACTIONS_TABLE).select("sequence, created_at")
                             .eq("request_id", interaction.request_id)
                             .order("sequence", desc=True).limit(1))
        if last:
            interaction.sequence = int(last[0]["sequence"]) + 1
            previous = Interaction.from_record({**last[0], "id": "", "request_id": interaction.request_id,
                                                "type": "note", "direction": "internal"})
            if interaction.created_at < previous.created_at:
                interaction.created_at = previous.created_at
        else:
            interaction.sequence = 1
        rows = self._execute(INTERACTIONS_TABLE, "insert",
                             self.supabase.table(INTERACTIONS_TABLE).insert(interaction.to_record()))
        return Interaction.from_record(rows[0]) if rows else interaction

    def list_interactions(self, request_id: str) -> List[Interaction]:
        rows = self._execute(INTERACTIONS_TABLE, "select",
                             self.supabase.table(INTERACTIONS_TABLE).select("*")
                             .eq("request_id", request_id).order("sequence"))
        return [Interaction.from_record(r) for r in rows]

    def create_rfq(self, rfq: ExternalQuotation) -> ExternalQuotation:
        rows = self._execute(RFQS_TABLE, "insert", self.supabase.table(RFQS_TABLE).insert(rfq.to_record()))
        return ExternalQuotation.from_record(rows[0]) if rows else rfq

    def get_rfq(self, rfq_id: str) -> Optional[ExternalQuotation]:
        rows = self._execute(RFQS_TABLE, "select",
                             self.supabase.table(RFQS_TABLE).select("*").eq("id", rfq_id).limit(1))
        return ExternalQuotation.from_record(rows[0]) if rows else None

    def update_rfq(self, rfq: ExternalQuotation) -> ExternalQuotation:
        rfq.updated_at = utcnow()
        record = rfq.to_record()
        record.pop("id")
        rows = self._execute(RFQS_TABLE, "update", self.supabase.table(RFQS_TABLE).update(record).eq("id", rfq.id))
        return ExternalQuotation.from_record(rows[0]) if rows else rfq

    def list_rfqs(self, request_id: Optional[str] = None,
                  statuses: Optional[Iterable[RFQStatus]] = None) -> List[ExternalQuotation]:
        query = self.supabase.table(RFQS_TABLE).select("*").order("created_at", desc=True)
        if request_id is not None:
            query = query.eq("request_id", request_id)
        if statuses:
            query = query.in_("status", [s.value for s in statuses])
        return [ExternalQuotation.from_record(r) for r in self._execute(RFQS_TABLE, "select", query)]

    def search_registry(self, service: str, material: Optional[str] = None,
                        limit: int = 10) -> List[ProviderCandidate]:
        rows = self._execute(PROVIDERS_TABLE, "select",
                             self.supabase.table(PROVIDERS_TABLE).select("*")
                             .contains("services", [service]).eq("is_active", True)
                             .order("reliability_score", desc=True).limit(limit))
        return _filter_material([ProviderCandidate.from_registry_record(r) for r in rows], material)

    def upsert_provider(self, candidate: ProviderCandidate, service: Optional[str] = None) -> ProviderCandidate:
        record = candidate.to_registry_record(service)
        place_id = record.get("google_place_id")
        existing = None
        if place_id:
            rows = self._execute(PROVIDERS_TABLE, "select",
                                 self.supabase.table(PROVIDERS_TABLE).select("*")
                                 .eq("google_place_id", place_id).limit(1))
            existing = rows[0] if rows else None
        record = merge_registry_record(existing, record)
        if place_id:
            query = self.supabase.table(PROVIDERS_TABLE).upsert(record, on_conflict="google_place_id")
        else:
            query = self.supabase.table(PROVIDERS_TABLE).upsert(record)
        rows = self._execute(PROVIDERS_TABLE, "upsert", query)
        return ProviderCandidate.from_registry_record(rows[0]) if rows else candidate

    def log_classification(self, entry: Dict[str, Any]) -> None:
        self._execute(GUARDRAILS_TABLE, "insert", self.supabase.table(GUARDRAILS_TABLE).insert(entry))
