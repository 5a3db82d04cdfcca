# --------------------------- quote_intake/agents/quotation/service_identification.py ----------------------------
"""
Quote Intake · Service Identification

Splits a complete request into in-house machining services and subcontracted
(external) services. The LLM answers with retrieved provider/service knowledge
in its prompt; a keyword match against the service catalog takes over when the
call fails. External service names are always normalized to catalog keys so
provider sourcing queries stay consistent.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from quote_intake.config import settings
from quote_intake.errors import QuoteIntakeError
from quote_intake.models import KnowledgeScope, QuotationRequest
from quote_intake.services.llm import LLMClient

from .extraction import mentions

logger = logging.getLogger(__name__)

SERVICES_SCOPE = KnowledgeScope(agent_type="providers", category="services")
DEFAULT_INTERNAL_SERVICE = "mecanizado cnc"


@dataclass
class ServiceIdentification:
    internal_services: List[str] = field(default_factory=list)
    external_services: List[str] = field(default_factory=list)
    reasoning: str = ""
    source: str = "llm"


def normalize_external_service(name: str) -> Optional[str]:
    """Catalog key for a service name or synonym, None when unknown."""
    if not name:
        return None
    lowered = str(name).strip().lower().replace("_", " ")
    for service, synonyms in settings.EXTERNAL_SERVICES.items():
        if lowered == service.replace("_", " ") or mentions(lowered, synonyms):
            return service
    return None


def _service_name(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("service") or entry.get("name") or "")
    return str(entry or "")


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(i for i in items if i))


def request_text(request: QuotationRequest) -> str:
    return " ".join(str(v) for v in (
        request.parts_description, request.material, request.surface_finish, request.tolerances,
    ) if v)


def identify_with_keywords(request: QuotationRequest) -> ServiceIdentification:
    text = request_text(request)
    external = [s for s, synonyms in settings.EXTERNAL_SERVICES.items() if mentions(text, synonyms)]
    internal = [s for s in settings.INTERNAL_SERVICES if mentions(text, [s])] or [DEFAULT_INTERNAL_SERVICE]
    return ServiceIdentification(internal_services=internal, external_services=external,
                                 reasoning="keyword match against the service catalog", source="keywords")


class ServiceIdentifier:
    """
    ARGS:
        llm: LLMClient; None uses the keyword match only
        retrieval: RetrievalEngine providing service knowledge for the prompt
    """

    def __init__(self, llm: Optional[LLMClient] = None, retrieval: Any = None):
        self.llm = llm
        self.retrieval = retrieval

    async def _knowledge_context(self, request: QuotationRequest) -> str:
        if self.retrieval is None:
            return ""
        query = request_text(request)
        if not query:
            return ""
        try:
            context = await self.retrieval.retrieve(query, SERVICES_SCOPE)
        except QuoteIntakeError as e:
            logger.warning(f"Service knowledge retrieval failed for request {request.id}: {e}")
            return ""
        return "" if context.is_empty else context.formatted_context

    def build_prompt(self, request: QuotationRequest, knowledge: str = "") -> str:
        return f"""
        Analyze this CNC machining request and identify which EXTERNAL services are needed.
        Return ONLY a JSON object.

        ORDER:
        - Description: {request.parts_description or 'N/A'}
        - Material: {request.material or 'N/A'}
        - Quantity: {request.quantity or 'N/A'}
        - Surface finish: {request.surface_finish or 'Not specified'}
        - Tolerances: {request.tolerances or 'Not specified'}

        IN-HOUSE SERVICES: {', '.join(settings.INTERNAL_SERVICES)}
        SUBCONTRACTED SERVICES: {', '.join(settings.EXTERNAL_SERVICES)}
        {knowledge}
        Return JSON with this structure:
        {{
            "internalServices": [{{"service": "mecanizado cnc", "feasible": true, "estimated_days": 5}}],
            "externalServices": [{{"service": "anodizado", "reason": "requested surface finish"}}],
            "reasoning": "short explanation"
        }}
        """

    async def identify(self, request: QuotationRequest) -> ServiceIdentification:
        if self.llm is None:
            return identify_with_keywords(request)
        try:
            prompt = self.build_prompt(request, await self._knowledge_context(request))
            data = await self.llm.complete_json(prompt, priority=7)
        except QuoteIntakeError as e:
            logger.warning(f"LLM service identification failed for request {request.id}, using keywords: {e}")
            return identify_with_keywords(request)

        external = []
        for entry in data.get("externalServices") or []:
            service = normalize_external_service(_service_name(entry))
            if service is None:
                logger.warning(f"Unknown external service '{_service_name(entry)}' ignored for request {request.id}")
                continue
            external.append(service)
        internal = _unique(_service_name(e).strip().lower() for e in data.get("internalServices") or [])
        return ServiceIdentification(
            internal_services=internal or [DEFAULT_INTERNAL_SERVICE],
            external_services=_unique(external),
            reasoning=str(data.get("reasoning") or ""),
        )
