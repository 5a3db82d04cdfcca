# --------------------------- quote_intake/agents/coordinator/graph.py ----------------------------
"""
Quote Intake · Per-Email Workflow Graph

OVERVIEW:
LangGraph state machine that routes one inbound email through the intake
pipeline. The nodes are thin: every business operation lives on
QuotationCoordinator, the graph only decides which one runs.

WORKFLOW:
    prefilter ──bulk sender──────────────────────────────┐
        │                                                │
    lookup_thread ──known thread──> update ──────────────┤
        │                                                │
    classify ──handle──> create ─────────────────────────┤
             ──escalate──> escalate ─────────────────────┤
             ──ignore──> ignore ─────────────────────────┤
                                                     finalize

BUSINESS LOGIC:
- Bulk senders (newsletters, no-reply, notifications) never reach the
  classifier; they are audited and ignored
- A reply on a thread that already has a request updates it; it is never
  classified again and never creates a second request

TECHNICAL ARCHITECTURE:
- StateGraph over the EmailState TypedDict, async nodes
- Optional checkpointer (AsyncSqliteSaver in the CLI) keyed by email id
"""

import logging
from typing import Any, Optional

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from quote_intake.models import ClassificationResult, Decision, InboundEmail
from quote_intake.utils.email_parser import is_bulk_sender

logger = logging.getLogger(__name__)

# Inbox label per outcome
OUTCOME_LABELS = {
    "handled": "Handled",
    "escalated": "Escalated",
    "ignored": "Spam",
    "updated": "Updated",
    "failed": "Failed",
}


class EmailState(TypedDict, total=False):
    """
    State flowing through the per-email graph.

    FIELDS:
    - email: the inbound message
    - request_id: quotation request created, updated or escalated
    - classification: guardrail result (absent for bulk mail and replies)
    - outcome: handled / escalated / ignored / updated
    - label: inbox label for the outcome
    """
    email: InboundEmail
    request_id: Optional[str]
    classification: Optional[ClassificationResult]
    outcome: str
    label: str


# ╔══════════ 1. Routing ═══════════════════════════════════════════════════════

def route_after_prefilter(state: EmailState) -> str:
    return "finalize" if state.get("outcome") == "ignored" else "lookup_thread"


def route_after_lookup(state: EmailState) -> str:
    return "update" if state.get("request_id") else "classify"


def route_after_classify(state: EmailState) -> str:
    decision = state["classification"].decision
    if decision == Decision.HANDLE:
        return "create"
    if decision == Decision.ESCALATE:
        return "escalate"
    return "ignore"


# ╔══════════ 2. Graph construction ════════════════════════════════════════════

def build_email_graph(coordinator: Any, checkpointer: Any = None):
    """
    Construct and compile the per-email graph.

    ARGS:
        coordinator: QuotationCoordinator providing the node operations
        checkpointer: optional LangGraph checkpointer

    RETURNS:
        Compiled graph; invoke with ``{"email": InboundEmail}``
    """

    async def prefilter(state: EmailState) -> dict:
        email = state["email"]
        if is_bulk_sender(email.sender):
            coordinator.audit_bulk_sender(email)
            logger.info(f"Skipped bulk sender {email.sender}")
            return {"outcome": "ignored", "request_id": None, "classification": None}
        return {"outcome": "", "request_id": None, "classification": None, "label": ""}

    async def lookup_thread(state: EmailState) -> dict:
        existing = coordinator.repository.find_request_by_thread(state["email"].thread_id)
        return {"request_id": existing.id if existing else None}

    async def classify(state: EmailState) -> dict:
        return {"classification": await coordinator.classifier.classify(state["email"])}

    async def create(state: EmailState) -> dict:
        request = await coordinator.create_quotation_request(state["email"], state["classification"])
        return {"request_id": request.id, "outcome": "handled"}

    async def update(state: EmailState) -> dict:
        request = await coordinator.update_from_reply(state["request_id"], state["email"])
        return {"request_id": request.id, "outcome": "updated"}

    async def escalate(state: EmailState) -> dict:
        request = await coordinator.escalate_to_human(state["email"], state["classification"])
        return {"request_id": request.id, "outcome": "escalated"}

    async def ignore(state: EmailState) -> dict:
        return {"outcome": "ignored"}

    async def finalize(state: EmailState) -> dict:
        outcome = state.get("outcome", "ignored")
        logger.info(f"✅ Email {state['email'].id}: {outcome}"
                    + (f" (request {state['request_id']})" if state.get("request_id") else ""))
        return {"label": OUTCOME_LABELS[outcome]}

    g = StateGraph(EmailState)

    g.add_node("prefilter", prefilter)
    g.add_node("lookup_thread", lookup_thread)
    g.add_node("classify", classify)
    g.add_node("create", create)
    g.add_node("update", update)
    g.add_node("escalate", escalate)
    g.add_node("ignore", ignore)
    g.add_node("finalize", finalize)

    g.set_entry_point("prefilter")
    g.add_conditional_edges("prefilter", route_after_prefilter, ["lookup_thread", "finalize"])
    g.add_conditional_edges("lookup_thread", route_after_lookup, ["update", "classify"])
    g.add_conditional_edges("classify", route_after_classify, ["create", "escalate", "ignore"])
    for node in ("create", "update", "escalate", "ignore"):
        g.add_edge(node, "finalize")
    g.add_edge("finalize", END)

    return g.compile(checkpointer=checkpointer)
