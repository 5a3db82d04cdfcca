# --------------------------- quote_intake/agents/guardrails/rules.py ----------------------------
"""
Quote Intake · Deterministic Guardrail Rules

Five independent evaluators, each returning a RuleEvaluation
(passed, confidence, details). They never touch the network and are pure
functions of the message, so the deterministic stage is fully unit-testable.

RULES:
1. has_quotation_keywords: >= 2 quotation keywords; confidence = matches / 3
2. has_technical_attachments: CAD / drawing extension present; 0.9 or 0.1
3. not_spam: >= 2 spam signals is spam (0.95), passes when not spam
4. within_scope: >= 2 out-of-scope keywords fails (0.8), else 0.2
5. not_complaint: any complaint keyword fails (0.9), else 0.1

Keywords match at the start of a word, so "presupuesto" also catches
"presupuestos" while "mal" does not fire on "normal".
"""

import re
from typing import Iterable, List

from quote_intake.models import Attachment, RuleEvaluation

QUOTATION_KEYWORDS = [
    "presupuesto", "cotización", "cotizar", "precio", "coste", "costo", "oferta",
    "solicitud", "necesito", "requiero", "piezas", "fabricar", "mecanizar", "pedido",
    "quote", "rfq",
]

TECHNICAL_EXTENSIONS = [".pdf", ".dxf", ".dwg", ".step", ".stp", ".iges", ".igs", ".stl", ".sldprt"]

SPAM_KEYWORDS = [
    "viagra", "casino", "lottery", "winner", "congratulations", "click here",
    "act now", "limited time", "free money",
]
SPAM_PATTERNS = [re.compile(r"[A-Z]{10,}"), re.compile(r"!{3,}")]

OUT_OF_SCOPE_KEYWORDS = [
    "impresión 3d", "soldadura", "pintura", "cromado", "galvanizado", "fundición", "estampación",
    "factura", "pago", "tracking", "complaint", "queja", "reclamo", "devolucion",
]

COMPLAINT_KEYWORDS = [
    "queja", "reclamo", "problema", "insatisfecho", "decepcionado", "error",
    "equivocado", "mal", "defectuoso", "complaint",
]

RULE_KEYWORDS = "has_quotation_keywords"
RULE_ATTACHMENTS = "has_technical_attachments"
RULE_SPAM = "not_spam"
RULE_SCOPE = "within_scope"
RULE_COMPLAINT = "not_complaint"
RULE_LLM = "llm_classification"


def find_keywords(text: str, keywords: Iterable[str]) -> List[str]:
    text = text.lower()
    return [kw for kw in keywords if re.search(r"(?<!\w)" + re.escape(kw), text)]


def detect_quotation_keywords(subject: str, body: str) -> RuleEvaluation:
    matches = find_keywords(f"{subject} {body}", QUOTATION_KEYWORDS)
    return RuleEvaluation(
        rule=RULE_KEYWORDS,
        passed=len(matches) >= 2,
        confidence=min(len(matches) / 3, 1.0),
        details=f"Found {len(matches)} keywords: {', '.join(matches)}",
    )


def detect_technical_attachments(attachments: List[Attachment]) -> RuleEvaluation:
    technical = [a.filename for a in attachments if a.filename.lower().endswith(tuple(TECHNICAL_EXTENSIONS))]
    return RuleEvaluation(
        rule=RULE_ATTACHMENTS,
        passed=bool(technical),
        confidence=0.9 if technical else 0.1,
        details=f"{len(technical)} technical files found: {', '.join(technical)}",
    )


def detect_spam(subject: str, body: str) -> RuleEvaluation:
    text = f"{subject} {body}"
    signals = find_keywords(text, SPAM_KEYWORDS)
    signals += [p.pattern for p in SPAM_PATTERNS if p.search(text)]
    is_spam = len(signals) >= 2
    return RuleEvaluation(
        rule=RULE_SPAM,
        passed=not is_spam,
        confidence=0.95 if is_spam else 0.1,
        details=f"{len(signals)} spam signals: {', '.join(signals)}" if is_spam else "Does not look like spam",
    )


def detect_out_of_scope(subject: str, body: str) -> RuleEvaluation:
    matches = find_keywords(f"{subject} {body}", OUT_OF_SCOPE_KEYWORDS)
    out_of_scope = len(matches) >= 2
    return RuleEvaluation(
        rule=RULE_SCOPE,
        passed=not out_of_scope,
        confidence=0.8 if out_of_scope else 0.2,
        details=f"Out of scope: {', '.join(matches)}" if out_of_scope else "Within scope",
    )


def detect_complaint(subject: str, body: str) -> RuleEvaluation:
    matches = find_keywords(f"{subject} {body}", COMPLAINT_KEYWORDS)
    return RuleEvaluation(
        rule=RULE_COMPLAINT,
        passed=not matches,
        confidence=0.9 if matches else 0.1,
        details=f"Possible complaint: {', '.join(matches)}" if matches else "Not a complaint",
    )
