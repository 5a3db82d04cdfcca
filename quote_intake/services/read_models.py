# --------------------------- quote_intake/services/read_models.py ----------------------------
"""
Quote Intake · Dashboard Read Models

Read-only views over requests, interactions and RFQs for the operator
dashboard. Rows are flat dicts ready for a table; missing values render as
"N/A" and a failed fetch shows up as an ``error`` marker instead of an empty
list, so the dashboard never silently hides data it could not load.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from quote_intake.errors import NotFoundError, PersistenceError
from quote_intake.models import ExternalQuotation, QuotationRequest, QuotationStatus, RFQStatus, utcnow
from quote_intake.services.repository import QuotationRepository

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"

RFQ_VIEWS = {
    "all": None,
    "pending": (RFQStatus.PENDING, RFQStatus.SENT),
    "received": (RFQStatus.RECEIVED,),
}


def display(value: Any) -> Any:
    if value is None or value == "" or value == []:
        return NOT_AVAILABLE
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def request_row(request: QuotationRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "status": request.status.value,
        "customer_email": request.customer_email,
        "customer_name": display(request.customer_name),
        "customer_company": display(request.customer_company),
        "parts_description": display(request.parts_description),
        "material": display(request.material),
        "quantity": display(request.quantity),
        "missing_info": ", ".join(request.missing_info) or "-",
        "external_services": ", ".join(request.external_services) or "-",
        "created_at": display(request.created_at),
        "updated_at": display(request.updated_at),
    }


def rfq_row(rfq: ExternalQuotation, now: Optional[datetime] = None) -> Dict[str, Any]:
    response = rfq.provider_response
    return {
        "id": rfq.id,
        "request_id": rfq.request_id,
        "provider_name": rfq.provider_name,
        "provider_email": display(rfq.provider_email),
        "provider_phone": display(rfq.provider_phone),
        "provider_source": rfq.provider_source.value,
        "service_type": rfq.service_type,
        "status": rfq.status.value,
        "expired": rfq.is_expired(now),
        "price": display(response.price if response else None),
        "lead_time_days": display(response.lead_time_days if response else None),
        "notes": display(response.notes if response else None),
        "email_sent_at": display(rfq.email_sent_at),
        "received_at": display(rfq.received_at),
        "expires_at": display(rfq.expires_at),
    }


class DashboardReadModel:
    """Dashboard queries; never mutates anything."""

    def __init__(self, repository: QuotationRepository):
        self.repository = repository

    def list_requests(self, status: Optional[QuotationStatus] = None) -> Dict[str, Any]:
        try:
            rows = [request_row(r) for r in self.repository.list_requests(status)]
        except PersistenceError as e:
            logger.error(f"Error loading quotation requests: {e}")
            return {"rows": [], "error": str(e)}
        return {"rows": rows, "error": None}

    def request_detail(self, request_id: str) -> Dict[str, Any]:
        """
        Request + interaction log + RFQs.

        A failed request fetch returns empty sections with errors["request"].

        RAISES:
            NotFoundError: unknown request id
        """
        try:
            request = self.repository.get_request(request_id)
        except PersistenceError as e:
            logger.error(f"Error loading request {request_id}: {e}")
            return {"request": None, "interactions": [], "rfqs": [], "errors": {"request": str(e)}}
        if request is None:
            raise NotFoundError("quotation_request", request_id)

        detail: Dict[str, Any] = {"request": request_row(request), "errors": {}}
        try:
            detail["interactions"] = [{
                "sequence": i.sequence,
                "type": i.interaction_type.value,
                "direction": i.direction.value,
                "subject": display(i.subject),
                "created_at": display(i.created_at),
                "payload_kind": i.payload.kind,
            } for i in self.repository.list_interactions(request_id)]
        except PersistenceError as e:
            logger.error(f"Error loading interactions for {request_id}: {e}")
            detail["interactions"] = []
            detail["errors"]["interactions"] = str(e)
        try:
            detail["rfqs"] = [rfq_row(r) for r in self.repository.list_rfqs(request_id=request_id)]
        except PersistenceError as e:
            logger.error(f"Error loading RFQs for {request_id}: {e}")
            detail["rfqs"] = []
            detail["errors"]["rfqs"] = str(e)
        return detail

    def list_rfqs(self, kind: str = "all", now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        ARGS:
            kind: all | pending (pending + sent) | received | expired
                  (expired status or past the expiry horizon)
        """
        if kind not in RFQ_VIEWS and kind != "expired":
            raise ValueError(f"unknown RFQ view: {kind}")
        now = now or utcnow()
        try:
            rfqs = self.repository.list_rfqs(statuses=RFQ_VIEWS.get(kind))
        except PersistenceError as e:
            logger.error(f"Error loading RFQs: {e}")
            return {"rows": [], "error": str(e)}
        if kind == "expired":
            rfqs = [r for r in rfqs if r.is_expired(now)]
        return {"rows": [rfq_row(r, now) for r in rfqs], "error": None}

    def stale_rfqs(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Open RFQs (pending or sent) past their expiry horizon, as {"rfqs", "error"}."""
        now = now or utcnow()
        try:
            open_rfqs = self.repository.list_rfqs(statuses=(RFQStatus.PENDING, RFQStatus.SENT))
        except PersistenceError as e:
            logger.error(f"Error loading open RFQs: {e}")
            return {"rfqs": [], "error": str(e)}
        return {"rfqs": [r for r in open_rfqs if r.is_expired(now)], "error": None}
