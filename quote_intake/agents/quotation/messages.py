# --------------------------- quote_intake/agents/quotation/messages.py ----------------------------
"""
Quote Intake · Outbound Message Composer

OVERVIEW:
Builds every email the workflow sends: the customer confirmation, the
missing-information request, the provider RFQ and the notifications to the
human reviewer.

BUSINESS LOGIC:
- The missing-information request is written by the LLM (llm tier, priority 6)
  and falls back to a fixed template when the call fails
- Everything else is rendered from jinja2 templates, so provider outreach
  never depends on LLM availability
- Customer-facing emails stay in the customer's thread
"""

import logging
from typing import Dict, List, Optional

from jinja2 import Environment, StrictUndefined

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError
from quote_intake.models import (
    ClassificationResult, ExternalQuotation, InboundEmail, OutboundEmail, ProviderCandidate, QuotationRequest,
)
from quote_intake.services.llm import LLMClient
from quote_intake.utils.email_parser import extract_email_address

logger = logging.getLogger(__name__)

FIELD_DESCRIPTIONS = {
    "material": "material de las piezas (p. ej. aluminio 6061, acero inoxidable 316)",
    "quantity": "cantidad de piezas",
    "tolerances": "tolerancias requeridas (p. ej. ±0.05 mm, ISO 2768-m)",
    "surface_finish": "acabado superficial o tratamiento",
    "deadline": "plazo de entrega deseado",
    "parts_description": "descripción de las piezas o plano técnico",
}


class QuotationTemplates:
    """Plain-text email templates."""

    CONFIRMATION = """Estimado/a {{ customer_name or 'cliente' }},

Hemos recibido su solicitud de presupuesto y nuestro equipo ya está trabajando en ella.
{% if details %}
Información recibida:
{% for label, value in details %}- {{ label }}: {{ value }}
{% endfor %}{% endif %}
En breve le enviaremos un presupuesto detallado. Si necesitamos información adicional, nos pondremos en contacto con usted.

Gracias por confiar en {{ company_name }}.

Saludos cordiales,
Equipo {{ company_name }}
Mecanizado CNC de Precisión"""

    INFO_REQUEST = """Estimado/a {{ customer_name or 'cliente' }},

Gracias por su solicitud de presupuesto.
{% if details %}
Ya disponemos de la siguiente información:
{% for label, value in details %}- {{ label }}: {{ value }}
{% endfor %}{% endif %}
Para poder preparar un presupuesto preciso necesitamos además:
{% for description in missing %}- {{ description }}
{% endfor %}
Puede responder directamente a este correo con los datos. Si tiene cualquier duda, estaremos encantados de ayudarle.

Saludos cordiales,
Equipo {{ company_name }}"""

    PROVIDER_RFQ = """Estimados señores de {{ provider_name }},

Somos {{ company_name }}, taller de mecanizado CNC. Para un proyecto de cliente necesitamos el servicio de {{ service }} y nos gustaría recibir su cotización.

Detalles:
- Servicio: {{ service }}
- Material: {{ material or 'N/A' }}
- Cantidad: {{ quantity or 'N/A' }} piezas
{% if tolerances %}- Tolerancias: {{ tolerances }}
{% endif %}{% if deadline %}- Plazo del cliente: {{ deadline }}
{% endif %}
Les agradeceríamos que nos indicaran precio y plazo de entrega.

Referencia: {{ rfq_id }}

Un saludo,
Equipo {{ company_name }} - Mecanizado CNC
{{ reply_to }}"""

    READY_FOR_HUMAN = """Quotation request {{ request_id }} is ready for a quote.

Customer: {{ customer_email }}{% if customer_company %} ({{ customer_company }}){% endif %}
Description: {{ parts_description or 'N/A' }}
Material: {{ material or 'N/A' }}
Quantity: {{ quantity or 'N/A' }}
Internal services: {{ internal_services | join(', ') or 'N/A' }}
External services: {{ external_services | join(', ') or 'none' }}
{% if rfqs %}
Provider RFQs:
{% for rfq in rfqs %}- {{ rfq.provider_name }} / {{ rfq.service_type }}: {{ rfq.status.value }}
{% endfor %}{% endif %}"""

    ESCALATION = """An inbound email needs manual review.

From: {{ sender }}
Subject: {{ subject }}
Decision: {{ decision }} ({{ email_type }}, {{ confidence }}% confidence)
Recommended action: {{ action }}

Rule trace:
{% for rule in rules %}- {{ rule.rule }}: {{ 'pass' if rule.passed else 'fail' }} ({{ rule.confidence | round(2) }}) {{ rule.details }}
{% endfor %}
{{ body }}"""


def known_details(request: QuotationRequest) -> List[tuple]:
    details = [
        ("Descripción", request.parts_description),
        ("Cantidad", f"{request.quantity} unidades" if request.quantity else None),
        ("Material", request.material),
        ("Tolerancias", request.tolerances),
        ("Acabado superficial", request.surface_finish),
        ("Plazo", request.deadline),
    ]
    return [(label, value) for label, value in details if value]


def reply_subject(subject: str) -> str:
    subject = (subject or "").strip() or "Solicitud de presupuesto"
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


class MessageComposer:
    """
    Renders outbound emails for the quotation workflow.

    ARGS:
        llm: LLMClient used for the missing-information email; None always
             uses the template
    """

    def __init__(self, llm: Optional[LLMClient] = None, company_name: Optional[str] = None,
                 reviewer_email: Optional[str] = None, reply_to: Optional[str] = None):
        self.llm = llm
        self.company_name = company_name or settings.COMPANY_NAME
        self.reviewer_email = reviewer_email or settings.HUMAN_REVIEW_EMAIL
        self.reply_to = reply_to or settings.QUOTES_FROM_EMAIL
        self.env = Environment(undefined=StrictUndefined, trim_blocks=False, keep_trailing_newline=False)
        self._templates: Dict[str, object] = {}

    def render(self, name: str, **context) -> str:
        template = self._templates.get(name)
        if template is None:
            template = self._templates[name] = self.env.from_string(getattr(QuotationTemplates, name))
        return template.render(company_name=self.company_name, **context).strip()

    def confirmation(self, request: QuotationRequest, original_subject: str,
                     in_reply_to: Optional[str] = None) -> OutboundEmail:
        return OutboundEmail(
            to=[request.customer_email],
            subject=reply_subject(original_subject),
            body=self.render("CONFIRMATION", customer_name=request.customer_name, details=known_details(request)),
            thread_id=request.thread_id,
            in_reply_to=in_reply_to,
            tags={"request_id": request.id, "kind": "confirmation"},
        )

    async def info_request(self, request: QuotationRequest, missing: List[str]) -> OutboundEmail:
        """Missing-information email, LLM-written with a template fallback."""
        descriptions = [FIELD_DESCRIPTIONS.get(name, name) for name in missing]
        body = None
        if self.llm is not None:
            try:
                body = await self.llm.complete(self._info_request_prompt(request, descriptions), priority=6)
                body = body.strip() + f"\n\nSaludos cordiales,\nEquipo {self.company_name}"
            except ExternalDependencyError as e:
                logger.warning(f"LLM info-request generation failed for request {request.id}, using template: {e}")
                body = None
        if not body:
            body = self.render("INFO_REQUEST", customer_name=request.customer_name,
                               details=known_details(request), missing=descriptions)
        return OutboundEmail(
            to=[request.customer_email],
            subject=reply_subject(request.parts_description or ""),
            body=body,
            thread_id=request.thread_id,
            tags={"request_id": request.id, "kind": "info_request"},
        )

    def _info_request_prompt(self, request: QuotationRequest, descriptions: List[str]) -> str:
        available = "\n".join(f"- {label}: {value}" for label, value in known_details(request)) or "- Nada todavía"
        needed = "\n".join(f"- {d}" for d in descriptions)
        return f"""Write a professional, friendly email in Spanish asking a customer for missing information.

Context:
- Customer: {request.customer_name or request.customer_email}
- Company: {request.customer_company or 'N/A'}
- Information we already have:
{available}

Missing information:
{needed}

The email should thank them for their interest, explain that we need this information for an accurate quote,
and offer help if they have questions. Return only the email body, without subject line or signature."""

    def provider_rfq(self, request: QuotationRequest, service: str, provider: ProviderCandidate,
                     rfq_id: str) -> OutboundEmail:
        return OutboundEmail(
            to=[provider.email] if provider.email else [],
            subject=f"Solicitud de cotización - {service}",
            body=self.render(
                "PROVIDER_RFQ",
                provider_name=provider.name,
                service=service,
                material=request.material,
                quantity=request.quantity,
                tolerances=request.tolerances,
                deadline=request.deadline,
                rfq_id=rfq_id,
                reply_to=self.reply_to,
            ),
            tags={"request_id": request.id, "rfq_id": rfq_id, "kind": "provider_rfq"},
        )

    def ready_for_human(self, request: QuotationRequest, rfqs: List[ExternalQuotation] = None) -> OutboundEmail:
        return OutboundEmail(
            to=[self.reviewer_email],
            subject=f"[Ready for quote] {request.parts_description or request.customer_email}",
            body=self.render(
                "READY_FOR_HUMAN",
                request_id=request.id,
                customer_email=request.customer_email,
                customer_company=request.customer_company,
                parts_description=request.parts_description,
                material=request.material,
                quantity=request.quantity,
                internal_services=request.internal_services,
                external_services=request.external_services,
                rfqs=rfqs or [],
            ),
            tags={"request_id": request.id, "kind": "ready_for_human"},
        )

    def escalation(self, email: InboundEmail, classification: ClassificationResult) -> OutboundEmail:
        return OutboundEmail(
            to=[self.reviewer_email],
            subject=f"[Escalated] {email.subject or extract_email_address(email.sender)}",
            body=self.render(
                "ESCALATION",
                sender=email.sender,
                subject=email.subject,
                decision=classification.decision.value,
                email_type=classification.email_type.value,
                confidence=round(classification.confidence * 100),
                action=classification.action_recommended,
                rules=classification.rules,
                body=(email.body or "")[:2000],
            ),
            tags={"email_id": email.id, "kind": "escalation"},
        )
