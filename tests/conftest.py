# --------------------------- tests/conftest.py ----------------------------
"""
Quote Intake · Shared Test Fixtures

Every collaborator is in-memory or mocked: no test touches the network.
"""

import sys
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from quote_intake.agents.coordinator import QuotationCoordinator
from quote_intake.agents.guardrails import GuardrailClassifier
from quote_intake.agents.quotation import MessageComposer, QuotationStateMachine, RequestExtractor, ServiceIdentifier
from quote_intake.models import Attachment, InboundEmail, ProviderCandidate, ProviderSource, QuotationRequest
from quote_intake.services.audit import AuditTrail
from quote_intake.services.providers import ProviderDirectory, ProviderSourcingService
from quote_intake.services.repository import InMemoryRepository

# ===============================================================================
# TEST DATA
# ===============================================================================


class TestData:
    """Reusable message contents."""
    __test__ = False

    CUSTOMER = "Laura Gómez <laura@metalicas-norte.es>"
    QUOTE_SUBJECT = "Presupuesto piezas"
    QUOTE_BODY = "Buenos días, necesitamos 100 piezas en aluminio 6061 según plano adjunto."
    SPAM_SUBJECT = "FREE MONEY!!!"
    SPAM_BODY = "CLICK HERE to claim your prize"


def build_email(email_id: str = "msg-1", subject: str = TestData.QUOTE_SUBJECT, body: str = TestData.QUOTE_BODY,
                sender: str = TestData.CUSTOMER, attachments: Optional[List[str]] = None,
                thread_id: Optional[str] = None, message_id: Optional[str] = None) -> InboundEmail:
    return InboundEmail(
        id=email_id,
        thread_id=thread_id or f"<thread-{email_id}@mail>",
        sender=sender,
        subject=subject,
        body=body,
        attachments=[Attachment(filename=name) for name in (attachments or [])],
        message_id=message_id or f"<{email_id}@mail>",
    )


def build_provider(name: str, email: Optional[str] = None, rating: Optional[float] = None,
                   place_id: Optional[str] = None, website: Optional[str] = None,
                   source: ProviderSource = ProviderSource.DIRECTORY) -> ProviderCandidate:
    return ProviderCandidate(name=name, source=source, email=email, rating=rating, place_id=place_id,
                             website=website or (None if email else f"https://{name.lower().replace(' ', '')}.es"))


class StaticDirectory(ProviderDirectory):
    """Directory returning a fixed candidate list and recording its calls."""

    def __init__(self, candidates: Optional[List[ProviderCandidate]] = None, error: Optional[Exception] = None):
        self.candidates = candidates or []
        self.error = error
        self.calls = []

    async def search(self, service, material=None, location=None, radius_km=None):
        self.calls.append((service, material, location, radius_km))
        if self.error is not None:
            raise self.error
        return [ProviderCandidate(**vars(c)) for c in self.candidates]


# ===============================================================================
# FIXTURES
# ===============================================================================

@pytest.fixture
def make_email():
    return build_email


@pytest.fixture
def make_provider():
    return build_provider


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def mailer():
    """Mailer double: every send succeeds."""
    mock = Mock()
    mock.send = AsyncMock(return_value={"id": "email-id"})
    return mock


@pytest.fixture
def composer():
    return MessageComposer(company_name="Taller Test", reviewer_email="revision@taller.test",
                           reply_to="presupuestos@taller.test")


@pytest.fixture
def state_machine(repository):
    return QuotationStateMachine(repository)


@pytest.fixture
def directory(make_provider):
    return StaticDirectory([
        make_provider("Anodizados Madrid", email="ventas@anodizados-madrid.es", rating=4.6, place_id="place-1"),
        make_provider("Tratamientos Sur", email="info@tratamientos-sur.es", rating=4.1, place_id="place-2"),
        make_provider("Superficies Centro", rating=4.9, place_id="place-3"),
        make_provider("Metal Finish", email="hola@metalfinish.es", rating=3.8, place_id="place-4"),
    ])


@pytest.fixture
def sourcing(repository, directory, mailer, composer):
    return ProviderSourcingService(repository, directory, mailer, composer)


@pytest.fixture
def coordinator(repository, mailer, composer, state_machine, sourcing):
    """Coordinator with the deterministic (LLM-free) collaborators."""
    audit = AuditTrail(repository)
    return QuotationCoordinator(
        repository=repository,
        classifier=GuardrailClassifier(audit=audit),
        extractor=RequestExtractor(),
        service_identifier=ServiceIdentifier(),
        composer=composer,
        mailer=mailer,
        sourcing=sourcing,
        state_machine=state_machine,
        audit=audit,
    )


@pytest.fixture
def stored_request(state_machine):
    """A pending request with material and quantity known."""
    request = state_machine.create(QuotationRequest(
        customer_email="laura@metalicas-norte.es",
        thread_id="<thread-stored@mail>",
        parts_description="Soportes",
        material="aluminio-6061",
        quantity=100,
    ))
    return request
