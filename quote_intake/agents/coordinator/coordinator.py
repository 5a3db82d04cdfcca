# --------------------------- quote_intake/agents/coordinator/coordinator.py ----------------------------
"""
Quote Intake · Quotation Coordinator

OVERVIEW:
Drives inbound email from the quotes mailbox to a request that is either
waiting on subcontractor quotes or ready for a human to price.

WORKFLOW:
1. Read unread mail, route each message through the per-email graph
2. Handle: extract fields, persist, confirm to the customer
3. Missing required fields: ask the customer, hold in gathering_info
4. Complete: identify internal and external services
5. External services: source providers and send RFQs (waiting_providers)
6. No external services: notify the reviewer (ready_for_human)
7. Escalate: persist as escalated and notify the reviewer
8. Label each message in the inbox and report per-message outcomes

BUSINESS LOGIC:
- Customer-facing replies are always attempted; a failed send is logged and
  never rolls back the request
- Duplicate delivery of a message is detected by its message id and changes
  nothing; a new message on a known thread updates the existing request
- Messages sharing a thread are processed one at a time inside a batch
- Provider sourcing fans out over services with a small bound

TECHNICAL ARCHITECTURE:
- LangGraph per-email graph (agents/coordinator/graph.py)
- Per-request asyncio locks from the state machine around every
  read-modify-write; LLM calls always happen outside the lock
- Failures are isolated per message and per service as ItemResults
"""

import asyncio
import logging
from typing import Any, Iterable, Optional

from quote_intake.agents.guardrails import GuardrailClassifier
from quote_intake.agents.quotation import (
    MessageComposer, QuotationStateMachine, RequestExtractor, RequestLocks, ServiceIdentifier, compute_missing,
    merge_fields,
)
from quote_intake.config import settings
from quote_intake.errors import QuoteIntakeError
from quote_intake.models import (
    BatchReport, ClassificationResult, Decision, Direction, EmailPayload, EmailType, InboundEmail, InfoRequestPayload,
    InteractionType, ItemResult, OutboundEmail, ProviderContactPayload, QuotationRequest, QuotationStatus,
    RequestMetadata, RFQStatus, RuleEvaluation,
)
from quote_intake.services.audit import AuditTrail
from quote_intake.services.email import Inbox, ResendMailer
from quote_intake.services.providers import ProviderSourcingService
from quote_intake.services.repository import QuotationRepository
from quote_intake.utils.email_parser import extract_email_address

from .graph import OUTCOME_LABELS, build_email_graph

logger = logging.getLogger(__name__)

RESOLVED_RFQ_STATUSES = (RFQStatus.RECEIVED, RFQStatus.DECLINED, RFQStatus.EXPIRED)
BULK_SENDER_RULE = "bulk_sender"


class QuotationCoordinator:
    """
    Orchestrates the quotation workflow over its collaborators.

    KEY METHODS:
    - process_new_emails(): poll the inbox once and process everything unread
    - process_email() / process_batch(): run messages through the graph
    - create_quotation_request(), update_from_reply(), escalate_to_human()
    - analyze_and_request_missing_info(), identify_services(),
      search_and_contact_providers()
    - rfqs_resolved(): whether every RFQ of a request has an answer
    """

    def __init__(self, repository: QuotationRepository, classifier: GuardrailClassifier,
                 extractor: RequestExtractor, service_identifier: ServiceIdentifier, composer: MessageComposer,
                 mailer: ResendMailer, sourcing: ProviderSourcingService,
                 state_machine: Optional[QuotationStateMachine] = None, audit: Optional[AuditTrail] = None,
                 inbox: Optional[Inbox] = None, checkpointer: Any = None,
                 search_location: Optional[str] = None, search_radius_km: Optional[float] = None,
                 batch_concurrency: Optional[int] = None, service_fanout: Optional[int] = None):
        self.repository = repository
        self.classifier = classifier
        self.extractor = extractor
        self.service_identifier = service_identifier
        self.composer = composer
        self.mailer = mailer
        self.sourcing = sourcing
        self.state_machine = state_machine or QuotationStateMachine(repository)
        self.audit = audit or classifier.audit
        self.inbox = inbox
        self.search_location = search_location or settings.DEFAULT_SEARCH_LOCATION
        self.search_radius_km = search_radius_km or settings.DEFAULT_SEARCH_RADIUS_KM
        self.batch_concurrency = batch_concurrency or settings.BATCH_CONCURRENCY
        self.service_fanout = service_fanout or settings.SERVICE_FANOUT_LIMIT
        self.thread_locks = RequestLocks()
        self.graph = build_email_graph(self, checkpointer=checkpointer)

    @property
    def locks(self) -> RequestLocks:
        return self.state_machine.locks

    # ╔══════════ 1. Inbox & batches ═══════════════════════════════════════════

    async def process_new_emails(self) -> BatchReport:
        """
        Fetch unread mail, process it and label every message.

        RAISES:
            ExternalDependencyError: the inbox could not be read
        """
        if self.inbox is None:
            raise QuoteIntakeError("no inbox configured")
        emails = await self.inbox.fetch_unread()
        if not emails:
            logger.info("📧 No new emails")
            return BatchReport()

        logger.info(f"📧 Processing {len(emails)} new emails")
        report = await self.process_batch(emails)
        for message, result in zip(emails, report.results):
            label = result.detail.get("label") or OUTCOME_LABELS["failed" if not result.success else result.outcome]
            await self.inbox.mark_processed(message, label)

        summary = report.to_dict()
        logger.info(
            f"📊 Batch done: {summary['processed']} processed, {summary['handled']} handled, "
            f"{summary['escalated']} escalated, {summary['ignored']} ignored, "
            f"{summary['updated']} updated, {summary['failed']} failed"
        )
        return report

    async def process_batch(self, emails: Iterable[InboundEmail]) -> BatchReport:
        """Bounded-concurrency batch; messages on the same thread run in order."""
        emails = list(emails)
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def run(email: InboundEmail) -> ItemResult:
            async with self.thread_locks.for_request(email.thread_id):
                async with semaphore:
                    return await self.process_email(email)

        return BatchReport(list(await asyncio.gather(*(run(e) for e in emails))))

    async def process_email(self, email: InboundEmail) -> ItemResult:
        config = {"configurable": {"thread_id": f"email-{email.dedup_key}"}}
        try:
            state = await self.graph.ainvoke({"email": email}, config=config)
        except QuoteIntakeError as e:
            logger.error(f"❌ Email {email.id} failed: {e}")
            return ItemResult.failed(email.id, e, label=OUTCOME_LABELS["failed"])
        except Exception as e:
            logger.exception(f"❌ Unexpected error processing email {email.id}")
            return ItemResult.failed(email.id, e, label=OUTCOME_LABELS["failed"])
        return ItemResult.ok(email.id, state["outcome"], request_id=state.get("request_id"), label=state["label"])

    def audit_bulk_sender(self, email: InboundEmail) -> None:
        if self.audit is None:
            return
        result = ClassificationResult(
            decision=Decision.IGNORE,
            confidence=1.0,
            email_type=EmailType.SPAM,
            rules=[RuleEvaluation(BULK_SENDER_RULE, False, 1.0, f"bulk sender: {extract_email_address(email.sender)}")],
            action_recommended="Ignore bulk mail",
        )
        self.audit.record_classification(email, result, action_taken="ignored_bulk_sender")

    # ╔══════════ 2. Request creation & updates ════════════════════════════════

    def _log_inbound(self, request_id: str, email: InboundEmail) -> None:
        self.state_machine.log_interaction(
            request_id, InteractionType.EMAIL_RECEIVED, Direction.INBOUND,
            subject=email.subject, body=email.body,
            payload=EmailPayload(message_id=email.dedup_key, sender=email.sender,
                                 recipients=[], subject=email.subject),
        )

    def _already_seen(self, request: QuotationRequest, email: InboundEmail) -> bool:
        message_id = email.dedup_key
        if request.source_email_id == message_id:
            return True
        return any(
            i.interaction_type == InteractionType.EMAIL_RECEIVED and getattr(i.payload, "message_id", None) == message_id
            for i in self.repository.list_interactions(request.id)
        )

    async def _send(self, message: OutboundEmail, request_id: Optional[str], interaction_type: InteractionType,
                    priority: int, payload: Any = None) -> bool:
        """Send and log an outbound email; failures are logged, never raised."""
        try:
            await self.mailer.send(message, priority=priority)
        except QuoteIntakeError as e:
            logger.error(f"Could not send {interaction_type.value} email for request {request_id}: {e}")
            return False
        if request_id:
            self.state_machine.log_interaction(
                request_id, interaction_type, Direction.OUTBOUND,
                subject=message.subject, body=message.body,
                payload=payload or EmailPayload(recipients=list(message.to), subject=message.subject),
            )
        return True

    async def create_quotation_request(self, email: InboundEmail,
                                       classification: ClassificationResult) -> QuotationRequest:
        fields = await self.extractor.extract(email)

        existing = self.repository.find_request_by_thread(email.thread_id)
        if existing is not None:
            logger.info(f"Thread {email.thread_id} already has request {existing.id}, updating it")
            return await self.update_from_reply(existing.id, email)

        request = QuotationRequest(
            customer_email=extract_email_address(email.sender),
            thread_id=email.thread_id,
            source_email_id=email.dedup_key,
            metadata=RequestMetadata(
                classification_decision=classification.decision.value,
                classification_confidence=classification.confidence,
                email_type=classification.email_type.value,
            ),
        )
        merge_fields(request, fields)
        request = self.state_machine.create(request)
        self._log_inbound(request.id, email)

        async with self.locks.for_request(request.id):
            request = self.state_machine.transition(
                self.state_machine.get(request.id), QuotationStatus.GATHERING_INFO, reason="quotation request received"
            )

        await self._send(self.composer.confirmation(request, email.subject, email.message_id),
                         request.id, InteractionType.CONFIRMATION, priority=8)
        return await self.analyze_and_request_missing_info(request.id)

    async def update_from_reply(self, request_id: str, email: InboundEmail) -> QuotationRequest:
        request = self.state_machine.get(request_id)
        if self._already_seen(request, email):
            logger.info(f"Email {email.id} already applied to request {request_id}")
            return request

        fields = await self.extractor.extract(email)
        async with self.locks.for_request(request_id):
            request = self.state_machine.get(request_id)
            updated = merge_fields(request, fields)
            self.state_machine.refresh_missing(request)
            request = self.state_machine.save(request)
            self._log_inbound(request_id, email)
        logger.info(f"📝 Request {request_id} updated from reply: {', '.join(updated) or 'no new fields'}")

        return await self.analyze_and_request_missing_info(request_id)

    # ╔══════════ 3. Missing information & services ════════════════════════════

    async def analyze_and_request_missing_info(self, request_id: str) -> QuotationRequest:
        """
        Reassess missing_info in any status. Only a request still gathering
        information gets an info request or moves on to service identification.
        """
        async with self.locks.for_request(request_id):
            request = self.state_machine.get(request_id)
            missing = compute_missing(request)
            if missing != request.missing_info:
                request.missing_info = missing
                request = self.state_machine.save(request)
        if request.status != QuotationStatus.GATHERING_INFO:
            return request

        if not missing:
            return await self.identify_services(request)

        message = await self.composer.info_request(request, missing)
        await self._send(message, request_id, InteractionType.INFO_REQUEST, priority=6,
                         payload=InfoRequestPayload(fields=list(missing)))
        async with self.locks.for_request(request_id):
            request = self.state_machine.get(request_id)
            if request.status != QuotationStatus.GATHERING_INFO:
                return request
            request.missing_info = compute_missing(request)
            request = self.state_machine.transition(request, QuotationStatus.GATHERING_INFO,
                                                    reason="waiting for customer information")
        logger.info(f"📝 Request {request_id} waiting for: {', '.join(request.missing_info)}")
        return request

    async def identify_services(self, request: QuotationRequest) -> QuotationRequest:
        identification = await self.service_identifier.identify(request)
        logger.info(
            f"Request {request.id} services: internal={identification.internal_services} "
            f"external={identification.external_services} ({identification.source})"
        )

        async with self.locks.for_request(request.id):
            request = self.state_machine.get(request.id)
            if request.status != QuotationStatus.GATHERING_INFO:
                return request
            request.internal_services = list(identification.internal_services)
            request.external_services = list(identification.external_services)
            request.missing_info = []
            target = QuotationStatus.WAITING_PROVIDERS if request.external_services else QuotationStatus.READY_FOR_HUMAN
            request = self.state_machine.transition(request, target, reason=identification.reasoning)

        if request.external_services:
            await self.search_and_contact_providers(request)
        else:
            await self._send(self.composer.ready_for_human(request, []), request.id,
                             InteractionType.EMAIL_SENT, priority=6)
        return request

    async def search_and_contact_providers(self, request: QuotationRequest) -> BatchReport:
        semaphore = asyncio.Semaphore(self.service_fanout)

        async def source(service: str) -> BatchReport:
            async with semaphore:
                try:
                    return await self.sourcing.source_and_contact(
                        request, service, self.search_location, self.search_radius_km
                    )
                except QuoteIntakeError as e:
                    logger.error(f"Provider sourcing failed for {service} (request {request.id}): {e}")
                    return BatchReport([ItemResult.failed(service, e, service_type=service)])

        report = BatchReport()
        for service_report in await asyncio.gather(*(source(s) for s in request.external_services)):
            report.extend(service_report)

        for result in report.results:
            if result.success and result.outcome in ("sent", "pending"):
                self.state_machine.log_interaction(
                    request.id, InteractionType.PROVIDER_CONTACTED, Direction.OUTBOUND,
                    subject=f"RFQ {result.detail['service_type']} - {result.detail['provider_name']}",
                    payload=ProviderContactPayload(
                        rfq_id=result.detail["rfq_id"],
                        provider_name=result.detail["provider_name"],
                        service_type=result.detail["service_type"],
                        delivered=result.detail.get("delivered", False),
                    ),
                )
        logger.info(f"📊 Request {request.id}: {report.count('sent')} RFQs sent, "
                    f"{report.count('pending')} pending, {report.failed} failed")
        return report

    # ╔══════════ 4. Escalation & hand-off ═════════════════════════════════════

    async def escalate_to_human(self, email: InboundEmail, classification: ClassificationResult) -> QuotationRequest:
        existing = self.repository.find_request_by_thread(email.thread_id)
        if existing is not None:
            return existing

        request = self.state_machine.create(QuotationRequest(
            customer_email=extract_email_address(email.sender),
            thread_id=email.thread_id,
            status=QuotationStatus.ESCALATED,
            parts_description=email.subject or None,
            source_email_id=email.dedup_key,
            metadata=RequestMetadata(
                classification_decision=classification.decision.value,
                classification_confidence=classification.confidence,
                email_type=classification.email_type.value,
            ),
        ))
        self._log_inbound(request.id, email)
        logger.info(f"🛡️ Email {email.id} escalated as request {request.id} ({classification.email_type.value})")
        await self._send(self.composer.escalation(email, classification), request.id,
                         InteractionType.EMAIL_SENT, priority=8)
        return request

    def rfqs_resolved(self, request_id: str) -> bool:
        """True when the request has RFQs and none of them is still open."""
        rfqs = self.repository.list_rfqs(request_id=request_id)
        return bool(rfqs) and all(r.status in RESOLVED_RFQ_STATUSES or r.is_expired() for r in rfqs)
