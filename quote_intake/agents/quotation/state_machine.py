# --------------------------- quote_intake/agents/quotation/state_machine.py ----------------------------
"""
Quote Intake · Quotation State Machine

OVERVIEW:
Owns the lifecycle of one quotation request, from creation to hand-off.

    pending -> gathering_info -> {waiting_providers | ready_for_human} -> quoted

``escalated`` and ``ignored`` are terminal side-states reachable only from
classification; a request is created directly in them and never leaves.

BUSINESS LOGIC:
- gathering_info may hold (loop onto itself) while information is missing
- waiting_providers -> ready_for_human and ready_for_human -> quoted are
  operator-driven; the automated core never fires them on its own
- Technical fields follow first-write-wins: a reply never overwrites a value
  the customer already gave
- Every status change is logged as a status_change interaction

CONCURRENCY:
Callers hold ``locks.for_request(request_id)`` around any read-modify-write of
a request, so no two tasks mutate the same request's status concurrently.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from quote_intake.config import settings
from quote_intake.errors import InvalidTransitionError, NotFoundError, PersistenceError
from quote_intake.models import (
    Direction, ExtractedFields, Interaction, InteractionPayload, InteractionType, NotePayload,
    QuotationRequest, QuotationStatus, StatusChangePayload,
)
from quote_intake.services.repository import QuotationRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[QuotationStatus, frozenset] = {
    QuotationStatus.PENDING: frozenset({QuotationStatus.GATHERING_INFO}),
    QuotationStatus.GATHERING_INFO: frozenset({
        QuotationStatus.GATHERING_INFO,
        QuotationStatus.WAITING_PROVIDERS,
        QuotationStatus.READY_FOR_HUMAN,
    }),
    QuotationStatus.WAITING_PROVIDERS: frozenset({QuotationStatus.READY_FOR_HUMAN}),
    QuotationStatus.READY_FOR_HUMAN: frozenset({QuotationStatus.QUOTED}),
    QuotationStatus.QUOTED: frozenset(),
    QuotationStatus.ESCALATED: frozenset(),
    QuotationStatus.IGNORED: frozenset(),
}

# Statuses a request can be created in, one per classification outcome
INITIAL_STATUSES = frozenset({QuotationStatus.PENDING, QuotationStatus.ESCALATED, QuotationStatus.IGNORED})


def can_transition(current: QuotationStatus, target: QuotationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def compute_missing(request: QuotationRequest, required: Iterable[str] = None) -> List[str]:
    """Required fields without a value, in their configured order."""
    required = settings.REQUIRED_REQUEST_FIELDS if required is None else required
    return [name for name in required if getattr(request, name) in (None, "", [])]


def merge_fields(request: QuotationRequest, fields: ExtractedFields) -> List[str]:
    """
    First-write-wins merge of extracted fields into a request.

    RETURNS:
        Names of the fields that were filled in
    """
    updated = []
    for name in QuotationRequest.MERGEABLE_FIELDS:
        incoming = getattr(fields, name, None)
        if incoming in (None, "", []):
            continue
        if getattr(request, name) in (None, "", []):
            setattr(request, name, incoming)
            updated.append(name)
    if fields.dimensions and not request.metadata.dimensions:
        request.metadata.dimensions = list(fields.dimensions)
    if fields.extraction_confidence is not None and request.metadata.extraction_confidence is None:
        request.metadata.extraction_confidence = fields.extraction_confidence
    return updated


class RequestLocks:
    """Lazily created asyncio.Lock per key (request id or thread id)."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_request(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class QuotationStateMachine:
    """
    Persistence-backed lifecycle for quotation requests.

    KEY METHODS:
    - create(): persist a new request in its initial status
    - transition(): validated status change plus status_change interaction
    - log_interaction(): append to the request's communication log
    - refresh_missing(): recompute missing_info from the required fields
    """

    def __init__(self, repository: QuotationRepository, locks: Optional[RequestLocks] = None):
        self.repository = repository
        self.locks = locks or RequestLocks()

    def create(self, request: QuotationRequest) -> QuotationRequest:
        if request.status not in INITIAL_STATUSES:
            raise InvalidTransitionError("quotation_request", "new", request.status.value)
        request.missing_info = compute_missing(request)
        stored = self.repository.create_request(request)
        logger.info(f"📝 Quotation request {stored.id} created as {stored.status.value}")
        return stored

    def get(self, request_id: str) -> QuotationRequest:
        request = self.repository.get_request(request_id)
        if request is None:
            raise NotFoundError("quotation_request", request_id)
        return request

    def transition(self, request: QuotationRequest, target: QuotationStatus, reason: str = "") -> QuotationRequest:
        """
        Move a request to ``target`` and persist it.

        A gathering_info hold persists the request without logging a status
        change.

        RAISES:
            InvalidTransitionError: the move is not in ALLOWED_TRANSITIONS
            PersistenceError: the request could not be saved
        """
        current = request.status
        if not can_transition(current, target):
            raise InvalidTransitionError("quotation_request", current.value, target.value)

        request.status = target
        stored = self.repository.update_request(request)
        if current != target:
            logger.info(f"📊 Request {request.id}: {current.value} -> {target.value}")
            self.log_interaction(
                request.id, InteractionType.STATUS_CHANGE, Direction.INTERNAL,
                subject=f"{current.value} -> {target.value}",
                payload=StatusChangePayload(from_status=current.value, to_status=target.value, reason=reason),
            )
        return stored

    def refresh_missing(self, request: QuotationRequest) -> List[str]:
        request.missing_info = compute_missing(request)
        return request.missing_info

    def save(self, request: QuotationRequest) -> QuotationRequest:
        return self.repository.update_request(request)

    def log_interaction(self, request_id: str, interaction_type: InteractionType, direction: Direction,
                        subject: str = "", body: str = "",
                        payload: Optional[InteractionPayload] = None) -> Optional[Interaction]:
        """Append to the interaction log; a failed write is logged, never raised."""
        try:
            return self.repository.append_interaction(Interaction(
                request_id=request_id,
                interaction_type=interaction_type,
                direction=direction,
                subject=subject,
                body=body,
                payload=payload or NotePayload(),
            ))
        except PersistenceError as e:
            logger.warning(f"Could not log {interaction_type.value} interaction for request {request_id}: {e}")
            return None
