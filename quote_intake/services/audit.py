# --------------------------- quote_intake/services/audit.py ----------------------------
"""
Quote Intake · Guardrail Audit Trail

Every classification lands in ``guardrails_log`` with its full rule trace,
whatever the outcome. Audit writes are best-effort bookkeeping: a failed
write is logged and never undoes or blocks the customer-facing effect.
"""

import logging
from typing import Any, Dict

from quote_intake.errors import PersistenceError
from quote_intake.models import ClassificationResult, Decision, InboundEmail
from quote_intake.services.repository import QuotationRepository

logger = logging.getLogger(__name__)

ACTIONS_TAKEN = {
    Decision.HANDLE: "created_quotation_request",
    Decision.ESCALATE: "escalated_to_human",
    Decision.IGNORE: "ignored",
}


class AuditTrail:
    """Append-only writer for the guardrail decision log."""

    def __init__(self, repository: QuotationRepository):
        self.repository = repository

    @staticmethod
    def build_entry(email: InboundEmail, result: ClassificationResult, action_taken: str = None) -> Dict[str, Any]:
        return {
            "email_id": email.id,
            "email_from": email.sender,
            "email_subject": email.subject,
            "email_body": (email.body or "")[:500],
            "decision": result.decision.value,
            "confidence": result.confidence,
            "reasons": [r.to_dict() for r in result.rules],
            "email_type": result.email_type.value,
            "action_taken": action_taken or ACTIONS_TAKEN[result.decision],
            "created_at": result.classified_at.isoformat(),
        }

    def record_classification(self, email: InboundEmail, result: ClassificationResult,
                              action_taken: str = None) -> bool:
        """
        Append one classification to the audit log.

        RETURNS:
            True when the entry was written, False when the write failed
        """
        try:
            self.repository.log_classification(self.build_entry(email, result, action_taken))
            return True
        except PersistenceError as e:
            logger.warning(f"Audit write failed for email {email.id}: {e}")
            return False
