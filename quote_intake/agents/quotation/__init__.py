"""Quotation Lifecycle Module"""
from .state_machine import (
    QuotationStateMachine, RequestLocks, ALLOWED_TRANSITIONS, can_transition, compute_missing, merge_fields,
)
from .extraction import RequestExtractor, AttachmentExtractor, extract_with_rules, normalize_material
from .messages import MessageComposer
from .service_identification import ServiceIdentifier, ServiceIdentification, identify_with_keywords

__all__ = [
    "QuotationStateMachine", "RequestLocks", "ALLOWED_TRANSITIONS", "can_transition", "compute_missing",
    "merge_fields", "RequestExtractor", "AttachmentExtractor", "extract_with_rules", "normalize_material",
    "MessageComposer", "ServiceIdentifier", "ServiceIdentification", "identify_with_keywords",
]
