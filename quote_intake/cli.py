# --------------------------- quote_intake/cli.py ----------------------------
"""
Quote Intake · Command Line Interface

USAGE:
    python -m quote_intake.cli process-inbox
    python -m quote_intake.cli classify --subject "Presupuesto" --body "100 piezas" --attachment pieza.step
    python -m quote_intake.cli limiter-status

COMMANDS:
- process-inbox: poll the IMAP mailbox once and run every unread message
  through the coordinator (state checkpointed to SQLite)
- classify: run the guardrail classifier on a message given on the command
  line; the LLM fallback is used only when OPENAI_API_KEY is set
- limiter-status: print the configured limits per dependency tier (live
  running/queued/reservoir counts are logged when process-inbox finishes)
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

from quote_intake.agents.coordinator import QuotationCoordinator
from quote_intake.agents.guardrails import GuardrailClassifier, LLMIntentClassifier
from quote_intake.agents.quotation import MessageComposer, RequestExtractor, ServiceIdentifier
from quote_intake.config import settings
from quote_intake.errors import QuoteIntakeError
from quote_intake.models import Attachment, InboundEmail
from quote_intake.services import AuditTrail, LimiterRegistry, LLMClient, SupabaseRepository
from quote_intake.services.email import IMAPInbox, Inbox, ResendMailer
from quote_intake.services.knowledge import EmbeddingService, RetrievalEngine, SupabaseKnowledgeIndex
from quote_intake.services.providers import PlacesDirectory, ProviderSourcingService

logger = logging.getLogger("quote_intake")


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
                        format=settings.LOG_FORMAT)


def build_coordinator(limiters: LimiterRegistry, inbox: Optional[Inbox] = None,
                      checkpointer=None) -> QuotationCoordinator:
    """Wire the production collaborators (Supabase, OpenAI, Resend, Google Places)."""
    repository = SupabaseRepository()
    audit = AuditTrail(repository)
    llm = LLMClient(limiters["llm"])
    retrieval = RetrievalEngine(EmbeddingService(limiters["llm"]), SupabaseKnowledgeIndex())
    composer = MessageComposer(llm)
    mailer = ResendMailer(limiters["email"])
    sourcing = ProviderSourcingService(
        repository, PlacesDirectory(limiters["directory"], limiters["web"]), mailer, composer
    )
    return QuotationCoordinator(
        repository=repository,
        classifier=GuardrailClassifier(LLMIntentClassifier(llm, retrieval), audit=audit),
        extractor=RequestExtractor(llm),
        service_identifier=ServiceIdentifier(llm, retrieval),
        composer=composer,
        mailer=mailer,
        sourcing=sourcing,
        audit=audit,
        inbox=inbox,
        checkpointer=checkpointer,
    )


async def process_inbox() -> int:
    limiters = LimiterRegistry()
    inbox = IMAPInbox()
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    try:
        async with AsyncSqliteSaver.from_conn_string(str(settings.CHECKPOINT_DB)) as saver:
            coordinator = build_coordinator(limiters, inbox=inbox, checkpointer=saver)
            report = await coordinator.process_new_emails()
    except QuoteIntakeError as e:
        logger.error(f"❌ Inbox processing failed: {e}")
        return 1
    finally:
        await inbox.close()
        limiters.log_limiters_status()

    summary = report.to_dict()
    summary.pop("results")
    print(json.dumps(summary, indent=2))
    return 0 if report.failed == 0 else 2


async def classify(sender: str, subject: str, body: str, attachments: list) -> int:
    fallback = None
    if settings.OPENAI_API_KEY:
        fallback = LLMIntentClassifier(LLMClient(LimiterRegistry()["llm"]))
    email = InboundEmail(
        id="cli",
        thread_id="cli",
        sender=sender,
        subject=subject,
        body=body,
        attachments=[Attachment(filename=name) for name in attachments],
    )
    result = await GuardrailClassifier(fallback).classify(email)
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    return 0


def limiter_status() -> int:
    """Print the configured tier limits. Live counts are logged at the end of process-inbox."""
    print(json.dumps(LimiterRegistry().describe(), indent=2))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Machining quotation email intake")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("process-inbox", help="Poll the mailbox once and process unread mail")

    classify_cmd = commands.add_parser("classify", help="Classify one message offline")
    classify_cmd.add_argument("--sender", default="cliente@example.com")
    classify_cmd.add_argument("--subject", default="")
    classify_cmd.add_argument("--body", default="")
    classify_cmd.add_argument("--attachment", action="append", default=[], help="Attachment file name (repeatable)")

    commands.add_parser("limiter-status", help="Show the configured rate limits per tier")

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "process-inbox":
        return asyncio.run(process_inbox())
    if args.command == "classify":
        return asyncio.run(classify(args.sender, args.subject, args.body, args.attachment))
    return limiter_status()


if __name__ == "__main__":
    sys.exit(main())
