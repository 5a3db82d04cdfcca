"""Guardrail Classifier Module"""
from .classifier import GuardrailClassifier, LLMIntentFallback, LLMIntentClassifier, FallbackAssessment
from .rules import (
    detect_quotation_keywords, detect_technical_attachments, detect_spam,
    detect_out_of_scope, detect_complaint,
)

__all__ = [
    "GuardrailClassifier", "LLMIntentFallback", "LLMIntentClassifier", "FallbackAssessment",
    "detect_quotation_keywords", "detect_technical_attachments", "detect_spam",
    "detect_out_of_scope", "detect_complaint",
]
