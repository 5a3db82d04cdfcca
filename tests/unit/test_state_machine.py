# --------------------------- tests/unit/test_state_machine.py ----------------------------
"""
Quote Intake · Quotation State Machine Tests
"""

import pytest

from quote_intake.agents.quotation.state_machine import (
    ALLOWED_TRANSITIONS, can_transition, compute_missing, merge_fields,
)
from quote_intake.errors import InvalidTransitionError, NotFoundError
from quote_intake.models import ExtractedFields, InteractionType, QuotationRequest, QuotationStatus

S = QuotationStatus


def new_request(**fields) -> QuotationRequest:
    return QuotationRequest(customer_email="laura@metalicas-norte.es", thread_id="<t@mail>", **fields)


# ===============================================================================
# TRANSITION GRAPH
# ===============================================================================

class TestTransitionGraph:
    """Allowed moves of the lifecycle."""

    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.GATHERING_INFO),
        (S.GATHERING_INFO, S.GATHERING_INFO),
        (S.GATHERING_INFO, S.WAITING_PROVIDERS),
        (S.GATHERING_INFO, S.READY_FOR_HUMAN),
        (S.WAITING_PROVIDERS, S.READY_FOR_HUMAN),
        (S.READY_FOR_HUMAN, S.QUOTED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.QUOTED),
        (S.WAITING_PROVIDERS, S.GATHERING_INFO),
        (S.QUOTED, S.READY_FOR_HUMAN),
        (S.PENDING, S.ESCALATED),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_terminal_statuses_have_no_exit(self):
        for status in (S.QUOTED, S.ESCALATED, S.IGNORED):
            assert ALLOWED_TRANSITIONS[status] == frozenset()


# ===============================================================================
# LIFECYCLE
# ===============================================================================

class TestStateMachine:
    """Persistence-backed transitions."""

    def test_create_computes_missing_info(self, state_machine):
        request = state_machine.create(new_request(material="acero"))

        assert request.status == S.PENDING
        assert request.missing_info == ["quantity"]

    def test_create_rejects_non_initial_status(self, state_machine):
        with pytest.raises(InvalidTransitionError):
            state_machine.create(new_request(status=S.QUOTED))

    def test_transition_persists_and_logs_status_change(self, state_machine, repository, stored_request):
        state_machine.transition(stored_request, S.GATHERING_INFO, reason="created")

        assert repository.get_request(stored_request.id).status == S.GATHERING_INFO
        (log,) = repository.list_interactions(stored_request.id)
        assert log.interaction_type == InteractionType.STATUS_CHANGE
        assert log.payload.from_status == "pending"
        assert log.payload.to_status == "gathering_info"
        assert log.payload.reason == "created"

    def test_hold_does_not_log(self, state_machine, repository, stored_request):
        request = state_machine.transition(stored_request, S.GATHERING_INFO)
        state_machine.transition(request, S.GATHERING_INFO)

        assert len(repository.list_interactions(stored_request.id)) == 1

    def test_invalid_transition_leaves_request_unchanged(self, state_machine, repository, stored_request):
        with pytest.raises(InvalidTransitionError) as exc:
            state_machine.transition(stored_request, S.QUOTED)

        assert exc.value.field == "status"
        assert repository.get_request(stored_request.id).status == S.PENDING
        assert repository.list_interactions(stored_request.id) == []

    def test_unknown_request(self, state_machine):
        with pytest.raises(NotFoundError):
            state_machine.get("missing")

    def test_interaction_sequence_increases(self, state_machine, repository, stored_request):
        request = state_machine.transition(stored_request, S.GATHERING_INFO)
        state_machine.transition(request, S.WAITING_PROVIDERS)

        sequences = [i.sequence for i in repository.list_interactions(stored_request.id)]
        assert sequences == [1, 2]


# ===============================================================================
# FIELD MERGE
# ===============================================================================

class TestFieldMerge:
    """First write wins; missing info follows the required fields."""

    def test_merge_fills_only_empty_fields(self):
        request = new_request(material="aluminio-6061")

        updated = merge_fields(request, ExtractedFields(material="acero", quantity=50, dimensions=["40x20"]))

        assert updated == ["quantity"]
        assert request.material == "aluminio-6061"
        assert request.quantity == 50
        assert request.metadata.dimensions == ["40x20"]

    def test_missing_info_is_ordered_subset_of_required(self):
        assert compute_missing(new_request()) == ["material", "quantity"]
        assert compute_missing(new_request(quantity=5)) == ["material"]
        assert compute_missing(new_request(material="latón", quantity=5)) == []
