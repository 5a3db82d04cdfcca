# --------------------------- tests/unit/test_extraction.py ----------------------------
"""
Quote Intake · Extraction & Service Identification Tests
"""

from unittest.mock import AsyncMock, Mock

import pytest

from quote_intake.agents.quotation import RequestExtractor, ServiceIdentifier
from quote_intake.agents.quotation.extraction import AttachmentExtractor, extract_with_rules, normalize_material
from quote_intake.agents.quotation.service_identification import normalize_external_service
from quote_intake.errors import ExternalDependencyError
from quote_intake.models import AttachmentExtraction, QuotationRequest
from tests.conftest import build_email


def llm_returning(data=None, error=None):
    llm = Mock()
    llm.complete_json = AsyncMock(return_value=data, side_effect=error)
    return llm


# ===============================================================================
# RULE-BASED EXTRACTION
# ===============================================================================

class TestRuleExtraction:
    """Regex extraction used without an LLM."""

    def test_quantity_material_and_tolerance(self):
        email = build_email(body="Necesitamos 1.000 unidades en inox 316, tolerancia ±0,05 mm, entrega en 3 semanas")

        fields = extract_with_rules(email)

        assert fields.quantity == 1000
        assert fields.material == "acero-inox-316"
        assert fields.tolerances == "±0,05 mm"
        assert fields.deadline == "en 3 semanas"
        assert fields.customer_name == "Laura Gómez"

    def test_external_finish_is_detected(self):
        fields = extract_with_rules(build_email(body="100 piezas aluminio 6061, acabado anodizado negro"))

        assert fields.material == "aluminio-6061"
        assert fields.surface_finish == "anodizado"

    def test_nothing_mentioned_stays_empty(self):
        fields = extract_with_rules(build_email(body="Necesito presupuesto para unas piezas"))

        assert fields.material is None
        assert fields.quantity is None

    def test_material_prefers_specific_alloy(self):
        assert normalize_material("aluminio 7075-T6") == "aluminio-7075"
        assert normalize_material("barra de aluminio") == "aluminio"
        assert normalize_material("madera") is None


# ===============================================================================
# EXTRACTOR
# ===============================================================================

class TestRequestExtractor:
    """LLM extraction, fallback and attachment priority."""

    @pytest.mark.asyncio
    async def test_llm_fields_are_parsed(self):
        llm = llm_returning({"customerCompany": "Metálicas Norte", "quantity": "250", "material": "acero F1140",
                             "tolerances": "", "deadline": None})

        fields = await RequestExtractor(llm).extract(build_email())

        assert fields.customer_company == "Metálicas Norte"
        assert fields.quantity == 250
        assert fields.material == "acero F1140"
        assert fields.tolerances is None
        assert llm.complete_json.await_args.kwargs["priority"] == 7

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_rules(self):
        llm = llm_returning(error=ExternalDependencyError("openai", "rate limited"))

        fields = await RequestExtractor(llm).extract(build_email())

        assert fields.quantity == 100
        assert fields.material == "aluminio-6061"

    @pytest.mark.asyncio
    async def test_attachment_values_win_over_body(self):
        attachments = Mock(spec=AttachmentExtractor)
        attachments.extract = AsyncMock(return_value=AttachmentExtraction(
            material="acero-inox-304", quantity=40, dimensions=["Ø30x80"], tolerances=["IT7"], confidence=0.8,
        ))
        extractor = RequestExtractor(attachment_extractor=attachments)

        fields = await extractor.extract(build_email(attachments=["brida.pdf", "foto.jpg"]))

        assert fields.material == "acero-inox-304"
        assert fields.quantity == 40
        assert fields.tolerances == "IT7"
        assert fields.dimensions == ["Ø30x80"]
        assert fields.extraction_confidence == 0.8
        attachments.extract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_attachment_failure_is_not_fatal(self):
        attachments = Mock(spec=AttachmentExtractor)
        attachments.extract = AsyncMock(side_effect=ValueError("corrupt pdf"))

        fields = await RequestExtractor(attachment_extractor=attachments).extract(
            build_email(attachments=["plano.pdf"])
        )

        assert fields.quantity == 100


# ===============================================================================
# SERVICE IDENTIFICATION
# ===============================================================================

class TestServiceIdentifier:
    """Internal/external split."""

    REQUEST = dict(customer_email="a@b.es", thread_id="t", parts_description="Tapas",
                   material="aluminio-6061", quantity=100, surface_finish="anodizado")

    @pytest.mark.asyncio
    async def test_keyword_identification(self):
        result = await ServiceIdentifier().identify(QuotationRequest(**self.REQUEST))

        assert result.external_services == ["anodizado"]
        assert result.internal_services == ["mecanizado cnc"]
        assert result.source == "keywords"

    @pytest.mark.asyncio
    async def test_llm_services_are_normalized_to_catalog(self):
        llm = llm_returning({
            "internalServices": [{"service": "Fresado"}],
            "externalServices": [{"service": "Anodizing"}, {"service": "tratamiento térmico"}, {"service": "magia"}],
            "reasoning": "acabado y dureza",
        })

        result = await ServiceIdentifier(llm).identify(QuotationRequest(**self.REQUEST))

        assert result.external_services == ["anodizado", "temple"]
        assert result.internal_services == ["fresado"]

    @pytest.mark.asyncio
    async def test_llm_failure_uses_keywords(self):
        llm = llm_returning(error=ExternalDependencyError("openai", "down"))

        result = await ServiceIdentifier(llm).identify(QuotationRequest(**self.REQUEST))

        assert result.external_services == ["anodizado"]

    def test_normalize_external_service(self):
        assert normalize_external_service("soldadura_tig") == "soldadura_tig"
        assert normalize_external_service("Zincado") == "galvanizado"
        assert normalize_external_service("") is None
