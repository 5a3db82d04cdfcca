# --------------------------- quote_intake/services/providers/sourcing.py ----------------------------
"""
Quote Intake · Provider Sourcing & Contact

OVERVIEW:
Finds subcontractors for an external service (anodizing, heat treatment,
plating...) and sends each selected one a request for quotation (RFQ).

WORKFLOW:
1. Registry first: active providers offering the service, best reliability first
2. Directory search when the registry returns fewer than MIN_REGISTRY_RESULTS
3. Every directory result is upserted into the registry by its place id
4. Outreach selection: providers with an email first, then by rating, capped
5. Dispatch: one RFQ per provider; a failed send leaves the RFQ ``pending``

BUSINESS LOGIC:
- Outreach per service never exceeds the configured cap (default 3, max 5)
- An RFQ already recorded for (request, provider, service) is never sent twice,
  so re-running a request after a crash is safe
- Failed sends are recorded, never retried immediately
- Providers with neither an email nor a website are skipped
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, List, Optional

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError, PersistenceError, QuoteIntakeError, ValidationError
from quote_intake.models import (
    BatchReport, ExternalQuotation, ItemResult, ProviderCandidate, ProviderSource, QuotationRequest, RFQStatus, utcnow,
)
from quote_intake.services.email.mailer import ResendMailer
from quote_intake.services.repository import QuotationRepository

from .directory import ProviderDirectory

logger = logging.getLogger(__name__)

MAX_OUTREACH_CAP = 5


@dataclass
class ProviderSearchResult:
    from_registry: List[ProviderCandidate] = field(default_factory=list)
    from_directory: List[ProviderCandidate] = field(default_factory=list)

    @property
    def all(self) -> List[ProviderCandidate]:
        return self.from_registry + self.from_directory


def candidate_key(candidate: ProviderCandidate) -> str:
    """Same identity ExternalQuotation.provider_key uses."""
    return candidate.place_id or (candidate.email or candidate.name).lower()


def select_for_outreach(candidates: Iterable[ProviderCandidate], cap: Optional[int] = None) -> List[ProviderCandidate]:
    """Top ``cap`` candidates by (has email, rating), one per provider."""
    cap = settings.OUTREACH_CAP if cap is None else cap
    if not 1 <= cap <= MAX_OUTREACH_CAP:
        raise ValidationError(f"outreach cap must be between 1 and {MAX_OUTREACH_CAP}", field="cap")

    ranked = sorted(candidates, key=lambda c: (c.has_email, c.rating or 0.0), reverse=True)
    selected, seen = [], set()
    for candidate in ranked:
        key = candidate_key(candidate)
        if key in seen:
            continue
        seen.add(key)
        selected.append(candidate)
        if len(selected) == cap:
            break
    return selected


def service_details(request: QuotationRequest) -> dict:
    return {
        "material": request.material,
        "quantity": request.quantity,
        "tolerances": request.tolerances,
        "deadline": request.deadline,
    }


class ProviderSourcingService:
    """
    Provider search, selection and RFQ dispatch for one service at a time.

    ARGS:
        repository: QuotationRepository holding the registry and RFQs
        directory: ProviderDirectory used when the registry is thin
        mailer: ResendMailer for RFQ emails
        composer: object with ``provider_rfq(request, service, provider, rfq_id)``
                  returning an OutboundEmail
    """

    def __init__(self, repository: QuotationRepository, directory: ProviderDirectory, mailer: ResendMailer,
                 composer: Any, outreach_cap: Optional[int] = None, min_registry_results: Optional[int] = None):
        self.repository = repository
        self.directory = directory
        self.mailer = mailer
        self.composer = composer
        self.outreach_cap = outreach_cap or settings.OUTREACH_CAP
        self.min_registry_results = min_registry_results or settings.MIN_REGISTRY_RESULTS

    # ╔══════════ 1. Search ═══════════════════════════════════════════════════

    async def find_providers(self, service: str, material: Optional[str] = None, location: Optional[str] = None,
                             radius_km: Optional[float] = None) -> ProviderSearchResult:
        result = ProviderSearchResult()
        try:
            result.from_registry = self.repository.search_registry(service, material, limit=10)
        except PersistenceError as e:
            logger.error(f"Registry search failed for {service}: {e}")

        if len(result.from_registry) >= self.min_registry_results:
            logger.info(f"✅ {len(result.from_registry)} registry providers for {service}")
            return result

        logger.info(f"Only {len(result.from_registry)} registry providers for {service}, searching directory")
        try:
            found = await self.directory.search(service, material, location, radius_km)
        except ExternalDependencyError as e:
            logger.error(f"Directory search failed for {service}: {e}")
            return result

        known = {candidate_key(c) for c in result.from_registry}
        for candidate in found:
            if candidate_key(candidate) in known:
                continue
            known.add(candidate_key(candidate))
            try:
                stored = self.repository.upsert_provider(candidate, service)
                candidate.id = stored.id
            except PersistenceError as e:
                logger.warning(f"Could not save provider {candidate.name} to the registry: {e}")
            result.from_directory.append(candidate)
        return result

    # ╔══════════ 2. Contact ══════════════════════════════════════════════════

    async def contact_provider(self, request: QuotationRequest, service: str,
                               candidate: ProviderCandidate) -> ItemResult:
        """
        Create the RFQ for one provider and email it.

        RETURNS:
            ItemResult with outcome ``sent``, ``pending`` (send failed or no
            email), ``existing`` (already contacted) or ``skipped``
        """
        key = candidate_key(candidate)
        if not candidate.email and not candidate.website:
            logger.info(f"Skipping {candidate.name}: no email or website")
            return ItemResult.ok(key, "skipped", provider_name=candidate.name, service_type=service)

        try:
            existing = self.repository.find_rfq(request.id, key, service)
            if existing is not None:
                return ItemResult.ok(key, "existing", rfq_id=existing.id, provider_name=candidate.name,
                                     service_type=service, delivered=existing.status != RFQStatus.PENDING)

            rfq = self.repository.create_rfq(ExternalQuotation(
                request_id=request.id,
                provider_name=candidate.name,
                service_type=service,
                provider_email=candidate.email,
                provider_phone=candidate.phone,
                provider_source=candidate.source or ProviderSource.DIRECTORY,
                provider_place_id=candidate.place_id,
                service_details=service_details(request),
                expires_at=utcnow() + timedelta(days=settings.RFQ_EXPIRY_DAYS),
            ))
        except PersistenceError as e:
            logger.error(f"Could not record RFQ for {candidate.name} ({service}): {e}")
            return ItemResult.failed(key, e, provider_name=candidate.name, service_type=service)

        detail = {"rfq_id": rfq.id, "provider_name": candidate.name, "service_type": service}
        if not candidate.email:
            logger.info(f"RFQ {rfq.id} for {candidate.name} left pending: only a website is known")
            return ItemResult.ok(key, "pending", delivered=False, **detail)

        try:
            await self.mailer.send(self.composer.provider_rfq(request, service, candidate, rfq.id), priority=5)
        except QuoteIntakeError as e:
            logger.error(f"RFQ {rfq.id} to {candidate.name} not sent, left pending: {e}")
            return ItemResult.ok(key, "pending", delivered=False, error=str(e), **detail)

        rfq.status = RFQStatus.SENT
        rfq.email_sent_at = utcnow()
        try:
            self.repository.update_rfq(rfq)
        except PersistenceError as e:
            logger.error(f"RFQ {rfq.id} was sent but its status could not be saved: {e}")
        logger.info(f"📧 RFQ {rfq.id} sent to {candidate.name} for {service}")
        return ItemResult.ok(key, "sent", delivered=True, **detail)

    async def dispatch(self, request: QuotationRequest, service: str,
                       candidates: Iterable[ProviderCandidate]) -> BatchReport:
        report = BatchReport()
        selected = select_for_outreach(candidates, self.outreach_cap)
        results = await asyncio.gather(
            *(self.contact_provider(request, service, c) for c in selected), return_exceptions=True
        )
        for candidate, result in zip(selected, results):
            if isinstance(result, Exception):
                logger.error(f"Contacting {candidate.name} for {service} failed: {result}")
                result = ItemResult.failed(candidate_key(candidate), result,
                                           provider_name=candidate.name, service_type=service)
            report.add(result)
        return report

    async def source_and_contact(self, request: QuotationRequest, service: str, location: Optional[str] = None,
                                 radius_km: Optional[float] = None) -> BatchReport:
        """find -> select -> dispatch for one service."""
        found = await self.find_providers(service, request.material, location, radius_km)
        if not found.all:
            logger.warning(f"No providers found for {service} (request {request.id})")
            return BatchReport([ItemResult(item_id=service, success=False, outcome="no_providers",
                                           error=f"no providers found for {service}",
                                           detail={"service_type": service})])
        report = await self.dispatch(request, service, found.all)
        logger.info(f"📊 {service}: {report.count('sent')} sent, {report.count('pending')} pending, "
                    f"{report.failed} failed")
        return report
