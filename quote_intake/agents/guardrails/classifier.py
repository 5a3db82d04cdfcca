# --------------------------- quote_intake/agents/guardrails/classifier.py ----------------------------
"""
Quote Intake · Guardrail Classifier

OVERVIEW:
Decides, for every inbound email, whether automation is safe: handle it,
escalate it to a human, or ignore it. The decision carries a confidence score
and the full, ordered rule trace, and is written to the audit trail whatever
the outcome.

WORKFLOW:
1. Deterministic stage: the five rule evaluators always run
2. Decision policy, first match wins:
   a. spam confidence > 0.9                -> ignore (spam)
   b. keywords AND technical attachment    -> handle (quotation_request)
   c. complaint confidence > 0.8           -> escalate (complaint)
   d. out-of-scope confidence > 0.7        -> escalate (out_of_scope)
   e. keywords alone                       -> LLM fallback decides
   f. nothing clear                        -> escalate (general_inquiry, 0.6)
3. Golden rule: confidence below 0.75 never resolves to handle
4. Audit trail entry with the full rule trace

BUSINESS LOGIC:
- Ambiguity always favours escalation: a human reviewing a legitimate email
  costs less than the agent answering something wrong
- The LLM stage is an injected capability, invoked only on path (e); its
  failure escalates, it never silently handles or drops a message
"""

# ─── Standard-library imports ───────────────────────────────────────────
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from quote_intake.config import settings
from quote_intake.errors import QuoteIntakeError
from quote_intake.models import (
    ClassificationResult, Decision, EmailType, InboundEmail, KnowledgeScope, RuleEvaluation,
)
from quote_intake.services.audit import AuditTrail
from quote_intake.services.llm import LLMClient

from .rules import (
    RULE_LLM, detect_complaint, detect_out_of_scope, detect_quotation_keywords,
    detect_spam, detect_technical_attachments,
)

logger = logging.getLogger(__name__)

RECOMMENDED_ACTIONS = {
    Decision.HANDLE: "Create the quotation request and start gathering information",
    Decision.ESCALATE: "Notify a human for manual review",
    Decision.IGNORE: "Ignore the email (spam)",
}

GUARDRAIL_SCOPE = KnowledgeScope(agent_type="engineering", category="capabilities")


# ╔══════════ 1. LLM fallback capability ═══════════════════════════════════════

@dataclass
class FallbackAssessment:
    """Answer of the LLM fallback for an ambiguous email."""
    is_quotation_request: bool
    confidence: float
    reasoning: str = ""
    extracted: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.confidence = max(0.0, min(1.0, float(self.confidence)))


class LLMIntentFallback:
    """Second-stage intent check, only consulted when keywords are the sole signal."""

    async def assess(self, email: InboundEmail) -> FallbackAssessment:
        raise NotImplementedError


class LLMIntentClassifier(LLMIntentFallback):
    """
    Structured LLM prompt returning quotation intent plus extracted hints,
    enriched with retrieved engineering knowledge when a retrieval engine is given.
    """

    def __init__(self, llm: LLMClient, retrieval: Any = None, scope: KnowledgeScope = GUARDRAIL_SCOPE):
        self.llm = llm
        self.retrieval = retrieval
        self.scope = scope

    async def _knowledge_context(self, email: InboundEmail) -> str:
        if self.retrieval is None:
            return ""
        try:
            context = await self.retrieval.retrieve(f"{email.subject}\n{email.body}"[:2000], self.scope)
        except QuoteIntakeError as e:
            logger.warning(f"Knowledge retrieval failed for email {email.id}, continuing without context: {e}")
            return ""
        return "" if context.is_empty else context.formatted_context

    def build_prompt(self, email: InboundEmail, knowledge: str = "") -> str:
        attachments = ", ".join(a.filename for a in email.attachments) or "none"
        knowledge_block = f"\n{knowledge}\n" if knowledge else ""
        return f"""
        Decide whether this email is a QUOTATION REQUEST for CNC machining and return ONLY a JSON object.

        It is a quotation request only if the customer:
        - Needs parts manufactured or machined
        - Mentions quantities, materials, or attaches drawings
        - Asks for a price, quote or estimate

        It is NOT a quotation request if it is:
        - A general question
        - A complaint or a problem report
        - A request for services other than CNC machining (welding, painting, ...)
        - Spam
        {knowledge_block}
        EMAIL:
        Subject: {email.subject}
        Body: {email.body}
        Attachments: {attachments}

        Return JSON with this structure:
        {{
            "isQuotationRequest": true/false,
            "confidence": 0.0-1.0,
            "reasoning": "short explanation",
            "extractedData": {{
                "hasTechnicalDrawing": true/false,
                "hasQuantity": true/false,
                "quantity": number or null,
                "hasMaterial": true/false,
                "material": "string or null",
                "hasDeadline": true/false,
                "deadline": "string or null",
                "isUrgent": true/false
            }}
        }}
        """

    async def assess(self, email: InboundEmail) -> FallbackAssessment:
        prompt = self.build_prompt(email, await self._knowledge_context(email))
        data = await self.llm.complete_json(prompt, priority=7)
        return FallbackAssessment(
            is_quotation_request=bool(data.get("isQuotationRequest")),
            confidence=float(data.get("confidence") or 0.0),
            reasoning=str(data.get("reasoning") or ""),
            extracted=dict(data.get("extractedData") or {}),
        )


# ╔══════════ 2. Guardrail classifier ══════════════════════════════════════════

class GuardrailClassifier:
    """
    Two-stage guardrail: deterministic rules, then the conditional LLM fallback.

    ARGS:
        llm_fallback: LLMIntentFallback used on the keywords-only path; None
                      means the path always escalates
        audit: AuditTrail receiving every classification; None skips auditing
    """

    def __init__(self, llm_fallback: Optional[LLMIntentFallback] = None, audit: Optional[AuditTrail] = None):
        self.llm_fallback = llm_fallback
        self.audit = audit

    @staticmethod
    def evaluate_rules(email: InboundEmail) -> List[RuleEvaluation]:
        """Run the deterministic stage in its fixed order."""
        return [
            detect_quotation_keywords(email.subject, email.body),
            detect_technical_attachments(email.attachments),
            detect_spam(email.subject, email.body),
            detect_out_of_scope(email.subject, email.body),
            detect_complaint(email.subject, email.body),
        ]

    async def classify(self, email: InboundEmail) -> ClassificationResult:
        logger.info(f"🛡️ Classifying email {email.id} from {email.sender}")
        rules = self.evaluate_rules(email)
        keywords, attachments, spam, scope, complaint = rules

        if not spam.passed and spam.confidence > settings.SPAM_IGNORE_THRESHOLD:
            decision, email_type, confidence = Decision.IGNORE, EmailType.SPAM, spam.confidence
        elif keywords.passed and attachments.passed:
            decision, email_type = Decision.HANDLE, EmailType.QUOTATION_REQUEST
            mean = (keywords.confidence + attachments.confidence) / 2
            confidence = min(max(mean, settings.CONFIDENCE_THRESHOLD_HIGH), settings.HANDLE_CONFIDENCE_CAP)
        elif not complaint.passed and complaint.confidence > settings.COMPLAINT_ESCALATE_THRESHOLD:
            decision, email_type, confidence = Decision.ESCALATE, EmailType.COMPLAINT, complaint.confidence
        elif not scope.passed and scope.confidence > settings.OUT_OF_SCOPE_ESCALATE_THRESHOLD:
            decision, email_type, confidence = Decision.ESCALATE, EmailType.OUT_OF_SCOPE, scope.confidence
        elif keywords.passed:
            decision, email_type, confidence = await self._llm_decision(email, rules)
        else:
            decision, email_type, confidence = (
                Decision.ESCALATE, EmailType.GENERAL_INQUIRY, settings.NO_SIGNAL_CONFIDENCE
            )

        # Golden rule
        if decision == Decision.HANDLE and confidence < settings.GOLDEN_RULE_THRESHOLD:
            decision, email_type = Decision.ESCALATE, EmailType.GENERAL_INQUIRY

        result = ClassificationResult(
            decision=decision,
            confidence=confidence,
            email_type=email_type,
            rules=rules,
            action_recommended=RECOMMENDED_ACTIONS[decision],
        )
        logger.info(
            f"✅ Email {email.id} classified: {decision.value} "
            f"({email_type.value}, {round(result.confidence * 100)}% confidence)"
        )
        if self.audit is not None:
            self.audit.record_classification(email, result)
        return result

    async def _llm_decision(self, email: InboundEmail, rules: List[RuleEvaluation]):
        if self.llm_fallback is None:
            rules.append(RuleEvaluation(RULE_LLM, False, 0.0, "LLM fallback not configured"))
            return Decision.ESCALATE, EmailType.GENERAL_INQUIRY, settings.NO_SIGNAL_CONFIDENCE

        try:
            assessment = await self.llm_fallback.assess(email)
        except Exception as e:
            logger.error(f"LLM fallback failed for email {email.id}, escalating: {e}")
            rules.append(RuleEvaluation(RULE_LLM, False, 0.0, f"LLM fallback failed: {e}"))
            return Decision.ESCALATE, EmailType.GENERAL_INQUIRY, settings.NO_SIGNAL_CONFIDENCE

        affirmed = assessment.is_quotation_request and assessment.confidence > settings.LLM_HANDLE_THRESHOLD
        rules.append(RuleEvaluation(RULE_LLM, affirmed, assessment.confidence, assessment.reasoning))
        if affirmed:
            return Decision.HANDLE, EmailType.QUOTATION_REQUEST, assessment.confidence
        return Decision.ESCALATE, EmailType.GENERAL_INQUIRY, 1 - assessment.confidence
