# --------------------------- quote_intake/models.py ----------------------------
"""
Quote Intake · Domain Model

OVERVIEW:
Shared entities passed between the guardrail classifier, the quotation state
machine, the provider orchestrator and the coordinator. Every entity knows how
to turn itself into a flat datastore record and back, so the Supabase and
in-memory repositories store exactly the same shapes.

ENTITIES:
- InboundEmail / OutboundEmail: messages exchanged with customers and providers
- ClassificationResult: guardrail decision plus ordered rule trace
- QuotationRequest: one customer request and its lifecycle status
- Interaction: append-only, per-request communication log
- ExternalQuotation: one RFQ per (request, provider, service)
- ProviderCandidate: a provider resolved from the registry or the directory
- KnowledgeDocument: an embedded document in the knowledge base
- ItemResult / BatchReport: per-item outcomes of batch operations

TYPED METADATA:
Metadata that used to travel as loose JSON blobs is modelled as small tagged
unions. Each variant carries a ``kind`` discriminator; ``*_from_dict`` helpers
rebuild the right variant from a stored record. Only ``NotePayload`` and
``KnowledgeNote`` keep an open map, for genuinely unstructured notes.
"""

import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from quote_intake.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _init_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the keys ``cls`` accepts in its constructor."""
    names = {f.name for f in fields(cls) if f.init}
    return {k: v for k, v in data.items() if k in names}


# ╔══════════ 1. Enumerations ═══════════════════════════════════════════════════

class Decision(Enum):
    """Guardrail outcome for an inbound message."""
    HANDLE = "handle"
    ESCALATE = "escalate"
    IGNORE = "ignore"


class EmailType(Enum):
    QUOTATION_REQUEST = "quotation_request"
    GENERAL_INQUIRY = "general_inquiry"
    COMPLAINT = "complaint"
    SPAM = "spam"
    OUT_OF_SCOPE = "out_of_scope"
    FOLLOW_UP = "follow_up"


class QuotationStatus(Enum):
    """
    Quotation request lifecycle states.

    pending -> gathering_info -> {waiting_providers | ready_for_human} -> quoted
    escalated / ignored are terminal side-states set from classification only.
    """
    PENDING = "pending"
    GATHERING_INFO = "gathering_info"
    WAITING_PROVIDERS = "waiting_providers"
    READY_FOR_HUMAN = "ready_for_human"
    QUOTED = "quoted"
    ESCALATED = "escalated"
    IGNORED = "ignored"


class InteractionType(Enum):
    EMAIL_RECEIVED = "email_received"
    EMAIL_SENT = "email_sent"
    CONFIRMATION = "confirmation"
    INFO_REQUEST = "info_request"
    PROVIDER_CONTACTED = "provider_contacted"
    STATUS_CHANGE = "status_change"
    NOTE = "note"


class Direction(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    INTERNAL = "internal"


class RFQStatus(Enum):
    """External quotation (RFQ) lifecycle states."""
    PENDING = "pending"
    SENT = "sent"
    RECEIVED = "received"
    DECLINED = "declined"
    EXPIRED = "expired"


class ProviderSource(Enum):
    REGISTRY = "registry"
    DIRECTORY = "directory"


# ╔══════════ 2. Messages ═══════════════════════════════════════════════════════

@dataclass
class Attachment:
    """Attachment metadata as delivered by the inbound-email collaborator"""
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    content: Optional[bytes] = field(default=None, repr=False)

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower()


@dataclass
class InboundEmail:
    """Standardized inbound email: {id, threadId, from, subject, body, attachments[]}"""
    id: str
    thread_id: str
    sender: str
    subject: str = ""
    body: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    message_id: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)
    uid: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundEmail":
        """
        Build an inbound email from the collaborator payload.

        Accepts both camelCase (``threadId``, ``from``) and snake_case keys.
        Raises ValidationError when the id or the sender is missing.
        """
        email_id = data.get("id")
        sender = data.get("from") or data.get("sender")
        if not email_id:
            raise ValidationError("inbound email is missing its id", field="id")
        if not sender:
            raise ValidationError("inbound email is missing its sender", field="from")

        attachments = []
        for item in data.get("attachments") or []:
            if isinstance(item, Attachment):
                attachments.append(item)
            elif isinstance(item, str):
                attachments.append(Attachment(filename=item))
            elif isinstance(item, dict) and item.get("filename"):
                attachments.append(Attachment(
                    filename=item["filename"],
                    content_type=item.get("content_type") or item.get("mimeType") or "application/octet-stream",
                    size=int(item.get("size") or 0),
                ))
            else:
                raise ValidationError("attachment entries need a filename", field="attachments")

        return cls(
            id=str(email_id),
            thread_id=str(data.get("threadId") or data.get("thread_id") or email_id),
            sender=sender,
            subject=data.get("subject") or "",
            body=data.get("body") or "",
            attachments=attachments,
            message_id=data.get("messageId") or data.get("message_id"),
            received_at=_parse_dt(data.get("received_at")) or utcnow(),
        )

    @property
    def dedup_key(self) -> str:
        """Stable identity across redeliveries: the Message-ID header when present."""
        return self.message_id or self.id


@dataclass
class OutboundEmail:
    """Outbound email-send request: {to, subject, body, threadId?}"""
    to: List[str]
    subject: str
    body: str
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.to or not all(self.to):
            raise ValidationError("outbound email needs at least one recipient", field="to")
        if not self.subject.strip():
            raise ValidationError("outbound email needs a subject", field="subject")
        if not self.body.strip():
            raise ValidationError("outbound email needs a body", field="body")


# ╔══════════ 3. Classification ═════════════════════════════════════════════════

@dataclass
class RuleEvaluation:
    """Outcome of a single guardrail rule."""
    rule: str
    passed: bool
    confidence: float
    details: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ClassificationResult:
    """
    Guardrail decision for one inbound message.

    FIELDS:
    - decision: handle / escalate / ignore
    - confidence: decision confidence (0.0-1.0)
    - email_type: resolved message type
    - rules: ordered rule trace, deterministic rules first
    - action_recommended: human-readable next step
    """
    decision: Decision
    confidence: float
    email_type: EmailType
    rules: List[RuleEvaluation] = field(default_factory=list)
    action_recommended: str = ""
    classified_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    def rule(self, name: str) -> Optional[RuleEvaluation]:
        return next((r for r in self.rules if r.rule == name), None)

    def should_escalate(self, threshold: float = 0.75) -> bool:
        """Uncertain classifications always go to a human."""
        return self.confidence < threshold

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "confidence": self.confidence,
            "email_type": self.email_type.value,
            "rules": [r.to_dict() for r in self.rules],
            "action_recommended": self.action_recommended,
            "classified_at": _iso(self.classified_at),
        }


@dataclass
class AttachmentExtraction:
    """Structured fields returned by the attachment-extraction collaborator"""
    material: Optional[str] = None
    quantity: Optional[int] = None
    dimensions: List[str] = field(default_factory=list)
    tolerances: List[str] = field(default_factory=list)
    surface_finish: Optional[str] = None
    confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttachmentExtraction":
        quantity = data.get("quantity")
        return cls(
            material=data.get("material") or None,
            quantity=int(quantity) if quantity not in (None, "") else None,
            dimensions=list(data.get("dimensions") or []),
            tolerances=list(data.get("tolerances") or []),
            surface_finish=data.get("surfaceFinish") or data.get("surface_finish") or None,
            confidence=float(data.get("confidence") or 0.0),
        )


@dataclass
class ExtractedFields:
    """Request fields pulled out of an email body (and its attachments)."""
    customer_name: Optional[str] = None
    customer_company: Optional[str] = None
    parts_description: Optional[str] = None
    material: Optional[str] = None
    quantity: Optional[int] = None
    tolerances: Optional[str] = None
    surface_finish: Optional[str] = None
    deadline: Optional[str] = None
    dimensions: List[str] = field(default_factory=list)
    extraction_confidence: Optional[float] = None


# ╔══════════ 4. Typed metadata ═════════════════════════════════════════════════

@dataclass
class EmailPayload:
    message_id: Optional[str] = None
    sender: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    kind: str = field(default="email", init=False)


@dataclass
class InfoRequestPayload:
    fields: List[str] = field(default_factory=list)
    kind: str = field(default="info_request", init=False)


@dataclass
class ProviderContactPayload:
    rfq_id: str = ""
    provider_name: str = ""
    service_type: str = ""
    delivered: bool = False
    kind: str = field(default="provider_contact", init=False)


@dataclass
class StatusChangePayload:
    from_status: str = ""
    to_status: str = ""
    reason: str = ""
    kind: str = field(default="status_change", init=False)


@dataclass
class NotePayload:
    data: Dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="note", init=False)


InteractionPayload = Union[EmailPayload, InfoRequestPayload, ProviderContactPayload, StatusChangePayload, NotePayload]

_PAYLOAD_TYPES = {
    "email": EmailPayload,
    "info_request": InfoRequestPayload,
    "provider_contact": ProviderContactPayload,
    "status_change": StatusChangePayload,
    "note": NotePayload,
}


def payload_from_dict(data: Optional[Dict[str, Any]]) -> InteractionPayload:
    """Rebuild an interaction payload; unknown shapes become a note."""
    data = dict(data or {})
    cls = _PAYLOAD_TYPES.get(data.pop("kind", None))
    if cls is None or cls is NotePayload:
        return NotePayload(data=data.get("data", data))
    return cls(**_init_kwargs(cls, data))


@dataclass
class ProviderKnowledge:
    provider_name: str = ""
    services: List[str] = field(default_factory=list)
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    materials: List[str] = field(default_factory=list)
    estimated_time: Optional[str] = None
    kind: str = field(default="provider_info", init=False)


@dataclass
class MaterialKnowledge:
    designation: str = ""
    properties: Dict[str, str] = field(default_factory=dict)
    kind: str = field(default="material", init=False)


@dataclass
class KnowledgeNote:
    data: Dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="note", init=False)


KnowledgeMetadata = Union[ProviderKnowledge, MaterialKnowledge, KnowledgeNote]

_KNOWLEDGE_TYPES = {
    "provider_info": ProviderKnowledge,
    "material": MaterialKnowledge,
    "note": KnowledgeNote,
}


def knowledge_metadata_from_dict(data: Optional[Dict[str, Any]]) -> KnowledgeMetadata:
    data = dict(data or {})
    cls = _KNOWLEDGE_TYPES.get(data.pop("kind", None))
    if cls is None or cls is KnowledgeNote:
        return KnowledgeNote(data=data.get("data", data))
    return cls(**_init_kwargs(cls, data))


@dataclass
class RequestMetadata:
    """Classification snapshot and extraction details kept on a request."""
    classification_decision: Optional[str] = None
    classification_confidence: Optional[float] = None
    email_type: Optional[str] = None
    extraction_confidence: Optional[float] = None
    dimensions: List[str] = field(default_factory=list)
    notes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RequestMetadata":
        return cls(**_init_kwargs(cls, dict(data or {})))


# ╔══════════ 5. Quotation requests & interactions ══════════════════════════════

@dataclass
class QuotationRequest:
    """
    One customer quotation request.

    Status transitions are owned by the quotation state machine; technical
    fields follow first-write-wins once set.
    """
    customer_email: str
    thread_id: str
    id: str = field(default_factory=new_id)
    status: QuotationStatus = QuotationStatus.PENDING
    customer_name: Optional[str] = None
    customer_company: Optional[str] = None
    parts_description: Optional[str] = None
    material: Optional[str] = None
    quantity: Optional[int] = None
    tolerances: Optional[str] = None
    surface_finish: Optional[str] = None
    deadline: Optional[str] = None
    missing_info: List[str] = field(default_factory=list)
    internal_services: List[str] = field(default_factory=list)
    external_services: List[str] = field(default_factory=list)
    source_email_id: Optional[str] = None
    metadata: RequestMetadata = field(default_factory=RequestMetadata)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    MERGEABLE_FIELDS = (
        "customer_name", "customer_company", "parts_description", "material",
        "quantity", "tolerances", "surface_finish", "deadline",
    )

    def to_record(self) -> dict:
        record = {name: getattr(self, name) for name in (
            "id", "customer_email", "thread_id", "customer_name", "customer_company",
            "parts_description", "material", "quantity", "tolerances", "surface_finish",
            "deadline", "source_email_id",
        )}
        record.update({
            "status": self.status.value,
            "missing_info": list(self.missing_info),
            "internal_services": list(self.internal_services),
            "external_services": list(self.external_services),
            "metadata": asdict(self.metadata),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        })
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "QuotationRequest":
        data = dict(record)
        data["status"] = QuotationStatus(data.get("status", "pending"))
        data["metadata"] = RequestMetadata.from_dict(data.get("metadata"))
        data["created_at"] = _parse_dt(data.get("created_at")) or utcnow()
        data["updated_at"] = _parse_dt(data.get("updated_at")) or utcnow()
        for key in ("missing_info", "internal_services", "external_services"):
            data[key] = list(data.get(key) or [])
        return cls(**_init_kwargs(cls, data))


@dataclass
class Interaction:
    """Append-only log entry; ``sequence`` orders entries within a request."""
    request_id: str
    interaction_type: InteractionType
    direction: Direction
    subject: str = ""
    body: str = ""
    payload: InteractionPayload = field(default_factory=NotePayload)
    id: str = field(default_factory=new_id)
    sequence: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "type": self.interaction_type.value,
            "direction": self.direction.value,
            "subject": self.subject,
            "body": self.body,
            "payload": asdict(self.payload),
            "sequence": self.sequence,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Interaction":
        return cls(
            id=record["id"],
            request_id=record["request_id"],
            interaction_type=InteractionType(record["type"]),
            direction=Direction(record["direction"]),
            subject=record.get("subject") or "",
            body=record.get("body") or "",
            payload=payload_from_dict(record.get("payload")),
            sequence=int(record.get("sequence") or 0),
            created_at=_parse_dt(record.get("created_at")) or utcnow(),
        )


# ╔══════════ 6. Providers & RFQs ═══════════════════════════════════════════════

@dataclass
class ProviderCandidate:
    """Provider resolved from the local registry or the directory search"""
    name: str
    source: ProviderSource
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    total_ratings: Optional[int] = None
    reliability_score: float = 0.5
    place_id: Optional[str] = None
    location: Optional[Tuple[float, float]] = None
    services: List[str] = field(default_factory=list)
    materials: List[str] = field(default_factory=list)
    is_active: bool = True
    id: Optional[str] = None

    @property
    def has_email(self) -> bool:
        return bool(self.email)

    def to_registry_record(self, service: Optional[str] = None) -> dict:
        services = list(self.services)
        if service and service not in services:
            services.append(service)
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "website": self.website,
            "address": self.address,
            "google_place_id": self.place_id,
            "services": services,
            "materials": list(self.materials),
            "is_active": self.is_active,
            "reliability_score": self.rating / 5 if self.rating is not None else self.reliability_score,
            "quality_rating": self.rating,
        }

    @classmethod
    def from_registry_record(cls, record: Dict[str, Any]) -> "ProviderCandidate":
        return cls(
            id=record.get("id"),
            name=record.get("name") or "",
            source=ProviderSource.REGISTRY,
            email=record.get("email"),
            phone=record.get("phone"),
            website=record.get("website"),
            address=record.get("address"),
            rating=record.get("quality_rating"),
            reliability_score=float(record.get("reliability_score") or 0.5),
            place_id=record.get("google_place_id"),
            services=list(record.get("services") or []),
            materials=list(record.get("materials") or []),
            is_active=bool(record.get("is_active", True)),
        )


@dataclass
class ProviderResponse:
    """Quote details reported by an operator once a provider replies."""
    price: Optional[float] = None
    lead_time_days: Optional[int] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderResponse":
        if not isinstance(data, dict):
            raise ValidationError("providerResponse must be an object", field="providerResponse")
        price = data.get("price")
        lead_time = data.get("leadTimeDays", data.get("lead_time_days"))
        try:
            price = float(price) if price is not None else None
            lead_time = int(lead_time) if lead_time is not None else None
        except (TypeError, ValueError):
            raise ValidationError("price and leadTimeDays must be numeric", field="providerResponse")
        if price is not None and price < 0:
            raise ValidationError("price cannot be negative", field="providerResponse.price")
        if lead_time is not None and lead_time < 0:
            raise ValidationError("leadTimeDays cannot be negative", field="providerResponse.leadTimeDays")
        notes = data.get("notes")
        return cls(price=price, lead_time_days=lead_time, notes=str(notes) if notes is not None else None)


@dataclass
class ExternalQuotation:
    """
    RFQ sent to one external provider for one service of one request.

    ``expires_at`` is fixed at creation; staleness is computed on read and
    never changes the stored status by itself.
    """
    request_id: str
    provider_name: str
    service_type: str
    status: RFQStatus = RFQStatus.PENDING
    provider_email: Optional[str] = None
    provider_phone: Optional[str] = None
    provider_source: ProviderSource = ProviderSource.DIRECTORY
    provider_place_id: Optional[str] = None
    service_details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    email_sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    provider_response: Optional[ProviderResponse] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(days=7)

    @property
    def provider_key(self) -> str:
        return self.provider_place_id or (self.provider_email or self.provider_name).lower()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Open RFQs past their expiry horizon count as expired."""
        if self.status == RFQStatus.EXPIRED:
            return True
        if self.status not in (RFQStatus.PENDING, RFQStatus.SENT):
            return False
        return (now or utcnow()) >= self.expires_at

    @property
    def is_stale(self) -> bool:
        return self.is_expired()

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "provider_name": self.provider_name,
            "provider_email": self.provider_email,
            "provider_phone": self.provider_phone,
            "provider_source": self.provider_source.value,
            "provider_place_id": self.provider_place_id,
            "service_type": self.service_type,
            "service_details": dict(self.service_details),
            "status": self.status.value,
            "email_sent_at": _iso(self.email_sent_at),
            "received_at": _iso(self.received_at),
            "expires_at": _iso(self.expires_at),
            "provider_response": asdict(self.provider_response) if self.provider_response else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ExternalQuotation":
        response = record.get("provider_response")
        return cls(
            id=record["id"],
            request_id=record["request_id"],
            provider_name=record.get("provider_name") or "",
            provider_email=record.get("provider_email"),
            provider_phone=record.get("provider_phone"),
            provider_source=ProviderSource(record.get("provider_source") or "directory"),
            provider_place_id=record.get("provider_place_id"),
            service_type=record.get("service_type") or "",
            service_details=dict(record.get("service_details") or {}),
            status=RFQStatus(record.get("status") or "pending"),
            email_sent_at=_parse_dt(record.get("email_sent_at")),
            received_at=_parse_dt(record.get("received_at")),
            expires_at=_parse_dt(record.get("expires_at")),
            provider_response=ProviderResponse(**_init_kwargs(ProviderResponse, response)) if response else None,
            created_at=_parse_dt(record.get("created_at")) or utcnow(),
            updated_at=_parse_dt(record.get("updated_at")) or utcnow(),
        )


# ╔══════════ 7. Knowledge base ═════════════════════════════════════════════════

@dataclass(frozen=True)
class KnowledgeScope:
    """(agent-type, category) filter applied to retrieval; None matches all."""
    agent_type: Optional[str] = None
    category: Optional[str] = None

    def matches(self, document: "KnowledgeDocument") -> bool:
        if self.agent_type and document.agent_type != self.agent_type:
            return False
        if self.category and document.category != self.category:
            return False
        return True


@dataclass
class KnowledgeDocument:
    agent_type: str
    category: str
    content: str
    embedding: List[float] = field(default_factory=list, repr=False)
    metadata: KnowledgeMetadata = field(default_factory=KnowledgeNote)
    importance_score: float = 1.0
    verified: bool = False
    version: int = 1
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "agent_type": self.agent_type,
            "category": self.category,
            "content": self.content,
            "embedding": list(self.embedding),
            "metadata": asdict(self.metadata),
            "importance_score": self.importance_score,
            "verified": self.verified,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "KnowledgeDocument":
        return cls(
            id=record["id"],
            agent_type=record.get("agent_type") or "general",
            category=record.get("category") or "general",
            content=record.get("content") or "",
            embedding=list(record.get("embedding") or []),
            metadata=knowledge_metadata_from_dict(record.get("metadata")),
            importance_score=float(record.get("importance_score") or 1.0),
            verified=bool(record.get("verified")),
            version=int(record.get("version") or 1),
            created_at=_parse_dt(record.get("created_at")) or utcnow(),
            updated_at=_parse_dt(record.get("updated_at")) or utcnow(),
        )


@dataclass
class SearchResult:
    document: KnowledgeDocument
    similarity: float


@dataclass
class RetrievalContext:
    """Token-budgeted context assembled for a prompt."""
    query: str
    scope: KnowledgeScope
    documents: List[SearchResult]
    formatted_context: str
    token_count: int
    retrieval_time_ms: int = 0
    is_empty: bool = False


# ╔══════════ 8. Batch results ══════════════════════════════════════════════════

@dataclass
class ItemResult:
    """Outcome of one item in a batch (email, provider, service)."""
    item_id: str
    success: bool
    outcome: str = ""
    error: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, item_id: str, outcome: str, **detail) -> "ItemResult":
        return cls(item_id=item_id, success=True, outcome=outcome, detail=detail)

    @classmethod
    def failed(cls, item_id: str, error: BaseException, outcome: str = "failed", **detail) -> "ItemResult":
        return cls(item_id=item_id, success=False, outcome=outcome, error=str(error), detail=detail)


@dataclass
class BatchReport:
    """Per-item results of a batch; failures never abort siblings."""
    results: List[ItemResult] = field(default_factory=list)

    def add(self, result: ItemResult) -> ItemResult:
        self.results.append(result)
        return result

    def extend(self, other: "BatchReport") -> None:
        self.results.extend(other.results)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.success and r.outcome == outcome)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def succeeded(self) -> List[ItemResult]:
        return [r for r in self.results if r.success]

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "handled": self.count("handled"),
            "escalated": self.count("escalated"),
            "ignored": self.count("ignored"),
            "updated": self.count("updated"),
            "failed": self.failed,
            "results": [asdict(r) for r in self.results],
        }
