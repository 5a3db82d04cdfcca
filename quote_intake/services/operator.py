# --------------------------- quote_intake/services/operator.py ----------------------------
"""
Quote Intake · Operator Actions

OVERVIEW:
The mutations a human operator triggers from the dashboard: recording a
provider's answer to an RFQ and moving a request through the operator-driven
end of its lifecycle.

BUSINESS LOGIC:
- RFQ status only moves forward: pending -> sent -> received/declined/expired
- ``declined`` can be recorded from any open or closed state (a provider may
  withdraw after quoting)
- ``received_at`` is stamped the first time a response is recorded
- Re-applying an identical update changes nothing and reports ``changed: False``
- waiting_providers -> ready_for_human and ready_for_human -> quoted are only
  ever fired from here

ENDPOINT CONTRACT:
    update_rfq({"rfqId", "status", "providerResponse": {"price", "leadTimeDays", "notes"}})
    -> (body, http_status)   200 ok · 400 invalid · 404 unknown RFQ · 500 datastore failure
"""

import logging
from typing import Any, Dict, Optional, Tuple

from quote_intake.errors import NotFoundError, PersistenceError, QuoteIntakeError, ValidationError
from quote_intake.models import (
    ExternalQuotation, OutboundEmail, ProviderResponse, QuotationRequest, QuotationStatus, RFQStatus, utcnow,
)
from quote_intake.services.repository import QuotationRepository

logger = logging.getLogger(__name__)

RFQ_STATUS_RANK = {
    RFQStatus.PENDING: 0,
    RFQStatus.SENT: 1,
    RFQStatus.RECEIVED: 2,
    RFQStatus.DECLINED: 2,
    RFQStatus.EXPIRED: 2,
}


def parse_rfq_update(body: Any) -> Tuple[str, RFQStatus, Optional[ProviderResponse]]:
    """
    RAISES:
        ValidationError: missing rfqId, unknown status or malformed providerResponse
    """
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    rfq_id = body.get("rfqId")
    if not isinstance(rfq_id, str) or not rfq_id.strip():
        raise ValidationError("rfqId is required", field="rfqId")
    try:
        status = RFQStatus(body.get("status"))
    except ValueError:
        allowed = ", ".join(s.value for s in RFQStatus)
        raise ValidationError(f"status must be one of: {allowed}", field="status")
    response = body.get("providerResponse")
    return rfq_id.strip(), status, ProviderResponse.from_dict(response) if response is not None else None


def apply_rfq_update(rfq: ExternalQuotation, status: RFQStatus,
                     response: Optional[ProviderResponse] = None) -> bool:
    """
    Apply a forward-only status change in place.

    RETURNS:
        True when anything changed
    RAISES:
        ValidationError: the change would move the RFQ backwards
    """
    current = rfq.status
    if status != current and status != RFQStatus.DECLINED:
        if RFQ_STATUS_RANK[status] <= RFQ_STATUS_RANK[current]:
            raise ValidationError(f"RFQ {rfq.id} cannot move from {current.value} to {status.value}", field="status")

    changed = status != current
    rfq.status = status
    if response is not None and response != rfq.provider_response:
        rfq.provider_response = response
        changed = True
    if status in (RFQStatus.RECEIVED, RFQStatus.DECLINED) and rfq.received_at is None:
        rfq.received_at = utcnow()
        changed = True
    return changed


class OperatorActions:
    """
    ARGS:
        repository: QuotationRepository
        state_machine: QuotationStateMachine for request transitions
        mailer / composer: optional; when both are set the reviewer is
                           notified on ready_for_human
    """

    def __init__(self, repository: QuotationRepository, state_machine: Any, mailer: Any = None, composer: Any = None):
        self.repository = repository
        self.state_machine = state_machine
        self.mailer = mailer
        self.composer = composer

    def update_rfq(self, body: Any) -> Tuple[Dict[str, Any], int]:
        try:
            rfq_id, status, response = parse_rfq_update(body)
            rfq = self.repository.get_rfq(rfq_id)
            if rfq is None:
                raise NotFoundError("external_quotation", rfq_id)
            changed = apply_rfq_update(rfq, status, response)
            if changed:
                rfq = self.repository.update_rfq(rfq)
                logger.info(f"📊 RFQ {rfq.id} ({rfq.provider_name}) updated to {rfq.status.value}")
        except ValidationError as e:
            return {"success": False, "error": str(e), "field": e.field}, 400
        except NotFoundError as e:
            return {"success": False, "error": str(e)}, 404
        except PersistenceError as e:
            logger.error(f"RFQ update failed: {e}")
            return {"success": False, "error": str(e)}, 500
        return {"success": True, "changed": changed, "rfq": rfq.to_record()}, 200

    async def mark_ready_for_human(self, request_id: str, reason: str = "provider quotes resolved") -> QuotationRequest:
        async with self.state_machine.locks.for_request(request_id):
            request = self.state_machine.get(request_id)
            request = self.state_machine.transition(request, QuotationStatus.READY_FOR_HUMAN, reason=reason)
        if self.mailer is not None and self.composer is not None:
            rfqs = self.repository.list_rfqs(request_id=request_id)
            await self._notify(self.composer.ready_for_human(request, rfqs))
        return request

    async def mark_quoted(self, request_id: str, reason: str = "quote sent to customer") -> QuotationRequest:
        async with self.state_machine.locks.for_request(request_id):
            request = self.state_machine.get(request_id)
            return self.state_machine.transition(request, QuotationStatus.QUOTED, reason=reason)

    async def _notify(self, message: OutboundEmail) -> None:
        try:
            await self.mailer.send(message, priority=6)
        except QuoteIntakeError as e:
            logger.error(f"Reviewer notification failed: {e}")
