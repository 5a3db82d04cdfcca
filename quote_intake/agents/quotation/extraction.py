# --------------------------- quote_intake/agents/quotation/extraction.py ----------------------------
"""
Quote Intake · Request Field Extraction

OVERVIEW:
Pulls the technical fields of a quotation request out of an email and its
attachments.

WORKFLOW:
1. LLM extraction of customer and technical fields (llm tier, priority 7)
2. Deterministic regex fallback when the LLM call fails
3. Attachment extraction (drawings, PDFs) through an injected collaborator
4. Merge: attachment values take priority over the email body

BUSINESS LOGIC:
- Only explicitly mentioned values are extracted; guessing would skip the
  missing-information loop and produce a wrong quote
- Attachment failures are logged per file and never fail the request
"""

# ─── Standard-library imports ───────────────────────────────────────────
import logging
import re
from typing import Any, Dict, List, Optional

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError, QuoteIntakeError
from quote_intake.models import Attachment, AttachmentExtraction, ExtractedFields, InboundEmail
from quote_intake.services.llm import LLMClient
from quote_intake.utils.email_parser import extract_display_name

from quote_intake.agents.guardrails.rules import TECHNICAL_EXTENSIONS

logger = logging.getLogger(__name__)

QUANTITY_PATTERN = re.compile(
    r"(\d[\d.]*)\s*(?:piezas|pieza|unidades|unidad|uds\.?|pcs|pieces|units|parts)\b", re.IGNORECASE
)
TOLERANCE_PATTERN = re.compile(r"(±\s*\d+(?:[.,]\d+)?\s*mm|ISO\s*2768[-\s]?\w+|IT\s*\d{1,2}\b)", re.IGNORECASE)
FINISH_PATTERN = re.compile(r"\b(Ra\s*\d+(?:[.,]\d+)?)", re.IGNORECASE)
DEADLINE_PATTERN = re.compile(
    r"(\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2}|en\s+\d+\s+(?:días|dias|semanas)|in\s+\d+\s+(?:days|weeks))",
    re.IGNORECASE,
)


def mentions(text: str, terms: List[str]) -> bool:
    """Whole-word, case-insensitive match of any term."""
    lowered = (text or "").lower()
    return any(re.search(r"(?<!\w)" + re.escape(t) + r"(?!\w)", lowered) for t in terms)


def normalize_material(text: str) -> Optional[str]:
    """Map a free-text material mention to the catalog name (most specific first)."""
    for canonical, synonyms in settings.MATERIALS.items():
        if mentions(text, synonyms):
            return canonical
    return None


def _to_quantity(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        quantity = int(float(str(value).replace(".", "").replace(",", ".")) if isinstance(value, str) else value)
    except (TypeError, ValueError):
        return None
    return quantity if quantity > 0 else None


def extract_with_rules(email: InboundEmail) -> ExtractedFields:
    """Deterministic extraction used when the LLM is unavailable."""
    text = f"{email.subject}\n{email.body}"
    quantity = QUANTITY_PATTERN.search(text)
    tolerances = TOLERANCE_PATTERN.findall(text)
    finish = FINISH_PATTERN.search(text)
    deadline = DEADLINE_PATTERN.search(text)

    surface_finish = finish.group(1) if finish else None
    if surface_finish is None:
        for service, synonyms in settings.EXTERNAL_SERVICES.items():
            if mentions(text, synonyms):
                surface_finish = service
                break

    return ExtractedFields(
        customer_name=extract_display_name(email.sender),
        parts_description=email.subject.strip() or None,
        material=normalize_material(text),
        quantity=_to_quantity(quantity.group(1)) if quantity else None,
        tolerances=", ".join(t.strip() for t in tolerances) or None,
        surface_finish=surface_finish,
        deadline=deadline.group(1) if deadline else None,
    )


class AttachmentExtractor:
    """Attachment-extraction collaborator: returns structured fields for one file."""

    async def extract(self, attachment: Attachment) -> AttachmentExtraction:
        raise NotImplementedError


def combine_attachment_extractions(extractions: List[AttachmentExtraction]) -> Optional[AttachmentExtraction]:
    if not extractions:
        return None
    combined = AttachmentExtraction()
    for item in extractions:
        combined.material = combined.material or item.material
        combined.quantity = combined.quantity or item.quantity
        combined.surface_finish = combined.surface_finish or item.surface_finish
        combined.dimensions.extend(item.dimensions)
        combined.tolerances.extend(item.tolerances)
        combined.confidence = max(combined.confidence, item.confidence)
    return combined


class RequestExtractor:
    """
    Email + attachment field extraction.

    ARGS:
        llm: LLMClient; None uses the regex extraction only
        attachment_extractor: AttachmentExtractor for technical attachments
    """

    def __init__(self, llm: Optional[LLMClient] = None, attachment_extractor: Optional[AttachmentExtractor] = None):
        self.llm = llm
        self.attachment_extractor = attachment_extractor

    def build_prompt(self, email: InboundEmail) -> str:
        attachments = ", ".join(a.filename for a in email.attachments) or "none"
        return f"""
        Analyze this CNC machining quotation email and extract ALL technical information.
        Return ONLY a JSON object.

        EMAIL:
        From: {email.sender}
        Subject: {email.subject}
        Body: {email.body}
        Attachments: {attachments}

        IMPORTANT:
        - Extract a value only if it is EXPLICITLY mentioned
        - Material: look for specific mentions (e.g. "aluminio 7075", "acero inoxidable 316")
        - Quantity: look for specific numbers (e.g. "100 piezas", "50 unidades")
        - Tolerances: look for technical mentions (e.g. "±0.1mm", "ISO 2768-m")

        Return JSON with this structure:
        {{
            "customerName": "string or null",
            "customerCompany": "string or null",
            "partsDescription": "string or null",
            "quantity": number or null,
            "material": "string or null",
            "tolerances": "string or null",
            "surfaceFinish": "string or null",
            "deadline": "ISO 8601 date or null"
        }}
        """

    async def extract_from_email(self, email: InboundEmail) -> ExtractedFields:
        if self.llm is None:
            return extract_with_rules(email)
        try:
            data = await self.llm.complete_json(self.build_prompt(email), priority=7)
        except ExternalDependencyError as e:
            logger.warning(f"LLM extraction failed for email {email.id}, using rule-based extraction: {e}")
            return extract_with_rules(email)
        return self._from_llm(data)

    @staticmethod
    def _from_llm(data: Dict[str, Any]) -> ExtractedFields:
        def text(key: str) -> Optional[str]:
            value = data.get(key)
            return str(value).strip() if value not in (None, "") else None

        return ExtractedFields(
            customer_name=text("customerName"),
            customer_company=text("customerCompany"),
            parts_description=text("partsDescription"),
            material=text("material"),
            quantity=_to_quantity(data.get("quantity")),
            tolerances=text("tolerances"),
            surface_finish=text("surfaceFinish"),
            deadline=text("deadline"),
        )

    async def extract_from_attachments(self, email: InboundEmail) -> Optional[AttachmentExtraction]:
        if self.attachment_extractor is None:
            return None
        extractions = []
        for attachment in email.attachments:
            if attachment.extension not in TECHNICAL_EXTENSIONS:
                continue
            try:
                extractions.append(await self.attachment_extractor.extract(attachment))
            except (QuoteIntakeError, ValueError) as e:
                logger.error(f"Attachment extraction failed for {attachment.filename}, continuing without it: {e}")
        return combine_attachment_extractions(extractions)

    async def extract(self, email: InboundEmail) -> ExtractedFields:
        """Extract request fields; attachment values win over the email body."""
        fields = await self.extract_from_email(email)
        from_attachments = await self.extract_from_attachments(email)
        if from_attachments is None:
            return fields

        fields.material = from_attachments.material or fields.material
        fields.quantity = from_attachments.quantity or fields.quantity
        if from_attachments.tolerances:
            fields.tolerances = ", ".join(from_attachments.tolerances)
        fields.surface_finish = from_attachments.surface_finish or fields.surface_finish
        fields.dimensions = list(from_attachments.dimensions)
        fields.extraction_confidence = from_attachments.confidence
        return fields
