"""Unit tests for the ContractStateMachine."""

import pytest

from agrolink.domain.enums import ContractActor, ContractStatus, PaymentStage
from agrolink.services.contract_state_machine import (
    PAYABLE_STATES,
    STAGE_COMPLETION_STATUS,
    TERMINAL_STATES,
    TRANSITION_MAP,
    ContractStateMachine,
    InvalidTransitionError,
)

S = ContractStatus
A = ContractActor
P = PaymentStage


@pytest.fixture
def sm():
    return ContractStateMachine()


# ---------------------------------------------------------------------------
# Every valid transition in the transition map
# ---------------------------------------------------------------------------


class TestValidTransitions:
    """Every transition defined in TRANSITION_MAP should succeed for allowed actors."""

    @pytest.mark.parametrize(
        "from_status,to_status,actor",
        [
            (from_s, to_s, actor)
            for from_s, targets in TRANSITION_MAP.items()
            for to_s, actors in targets.items()
            for actor in actors
        ],
    )
    def test_all_valid_transitions(self, sm, from_status, to_status, actor):
        assert sm.validate_transition(from_status, to_status, actor) is True


class TestHappyPath:
    def test_full_lifecycle(self, sm):
        transitions = [
            (S.REQUESTED, S.NEGOTIATING, A.BUYER),
            (S.NEGOTIATING, S.NEGOTIATING, A.FARMER),
            (S.NEGOTIATING, S.ACCEPTED, A.FARMER),
            (S.ACCEPTED, S.PAYMENT_PENDING, A.BUYER),
            (S.PAYMENT_PENDING, S.ACTIVE, A.SYSTEM),
            (S.ACTIVE, S.READY_FOR_HARVEST, A.FARMER),
            (S.READY_FOR_HARVEST, S.HARVESTED, A.SYSTEM),
            (S.HARVESTED, S.DELIVERED, A.FARMER),
            (S.DELIVERED, S.COMPLETED, A.SYSTEM),
        ]
        for current, target, actor in transitions:
            assert sm.validate_transition(current, target, actor)


class TestInvalidTransitions:
    def test_requested_cannot_jump_to_active(self, sm):
        with pytest.raises(InvalidTransitionError, match="not allowed"):
            sm.validate_transition(S.REQUESTED, S.ACTIVE, A.FARMER)

    def test_buyer_cannot_accept_directly(self, sm):
        with pytest.raises(InvalidTransitionError, match="not permitted"):
            sm.validate_transition(S.REQUESTED, S.ACCEPTED, A.BUYER)

    @pytest.mark.parametrize("actor", [A.FARMER, A.BUYER])
    def test_parties_cannot_drive_payment_transitions(self, sm, actor):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.PAYMENT_PENDING, S.ACTIVE, actor)

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    @pytest.mark.parametrize("target", [S.NEGOTIATING, S.CANCELLED, S.DISPUTED, S.ACTIVE])
    def test_terminal_states_are_final(self, sm, terminal, target):
        with pytest.raises(InvalidTransitionError, match="can no longer change"):
            sm.validate_transition(terminal, target, A.FARMER)

    def test_disputed_has_no_forward_transitions(self, sm):
        with pytest.raises(InvalidTransitionError, match="No transitions allowed"):
            sm.validate_transition(S.DISPUTED, S.ACTIVE, A.SYSTEM)

    def test_invalid_transition_is_a_400(self):
        err = InvalidTransitionError(S.REQUESTED, S.ACTIVE, "nope")
        assert err.status_code == 400
        assert "requested" in err.message and "active" in err.message


class TestEscapeTransitions:
    @pytest.mark.parametrize(
        "current",
        [s for s in ContractStatus if s not in TERMINAL_STATES and s != S.DISPUTED],
    )
    @pytest.mark.parametrize("actor", [A.FARMER, A.BUYER])
    def test_parties_can_cancel_or_dispute(self, sm, current, actor):
        assert sm.validate_transition(current, S.CANCELLED, actor)
        assert sm.validate_transition(current, S.DISPUTED, actor)

    def test_disputed_can_be_cancelled(self, sm):
        assert sm.validate_transition(S.DISPUTED, S.CANCELLED, A.BUYER)

    def test_disputed_cannot_be_disputed_again(self, sm):
        with pytest.raises(InvalidTransitionError, match="already disputed"):
            sm.validate_transition(S.DISPUTED, S.DISPUTED, A.FARMER)

    def test_system_cannot_cancel(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.ACTIVE, S.CANCELLED, A.SYSTEM)


class TestNegotiationRules:
    @pytest.mark.parametrize(
        "current", [s for s in ContractStatus if s not in TERMINAL_STATES]
    )
    def test_counter_offer_allowed_from_non_terminal(self, sm, current):
        assert sm.validate_counter_offer(current)

    @pytest.mark.parametrize("current", [S.COMPLETED, S.CANCELLED])
    def test_counter_offer_rejected_from_terminal(self, sm, current):
        with pytest.raises(InvalidTransitionError):
            sm.validate_counter_offer(current)

    @pytest.mark.parametrize("current", [S.REQUESTED, S.NEGOTIATING])
    def test_offer_acceptance_states(self, sm, current):
        assert sm.validate_offer_acceptance(current)

    @pytest.mark.parametrize("current", [S.ACCEPTED, S.ACTIVE, S.CANCELLED])
    def test_offer_acceptance_rejected_elsewhere(self, sm, current):
        with pytest.raises(InvalidTransitionError):
            sm.validate_offer_acceptance(current)


class TestPaymentStages:
    @pytest.mark.parametrize(
        "current,stage,expected",
        [
            (S.ACCEPTED, P.ADVANCE, S.ACTIVE),
            (S.PAYMENT_PENDING, P.ADVANCE, S.ACTIVE),
            (S.ACTIVE, P.MIDTERM, S.HARVESTED),
            (S.READY_FOR_HARVEST, P.MIDTERM, S.HARVESTED),
            (S.HARVESTED, P.FINAL, S.COMPLETED),
            (S.DELIVERED, P.FINAL, S.COMPLETED),
        ],
    )
    def test_completion_targets(self, sm, current, stage, expected):
        assert sm.completion_target(current, stage) == expected

    @pytest.mark.parametrize(
        "current,stage",
        [
            (S.ACTIVE, P.ADVANCE),  # already advanced
            (S.COMPLETED, P.FINAL),
            (S.CANCELLED, P.ADVANCE),
            (S.DISPUTED, P.MIDTERM),
            (S.REQUESTED, P.ADVANCE),
        ],
    )
    def test_completion_never_moves_backwards(self, sm, current, stage):
        assert sm.completion_target(current, stage) is None

    def test_stage_mapping_matches_payable_states(self, sm):
        for stage, states in PAYABLE_STATES.items():
            for status in states:
                assert sm.is_payable(status, stage)
                assert sm.completion_target(status, stage) == STAGE_COMPLETION_STATUS[stage]

    def test_midterm_not_payable_before_active(self, sm):
        assert not sm.is_payable(S.ACCEPTED, P.MIDTERM)


class TestAllowedTransitions:
    def test_farmer_from_requested(self, sm):
        allowed = sm.get_allowed_transitions(S.REQUESTED, A.FARMER)
        assert set(allowed) == {S.NEGOTIATING, S.ACCEPTED, S.CANCELLED, S.DISPUTED}

    def test_system_from_harvested(self, sm):
        assert sm.get_allowed_transitions(S.HARVESTED, A.SYSTEM) == [S.COMPLETED]

    def test_terminal_has_none(self, sm):
        assert sm.get_allowed_transitions(S.COMPLETED, A.BUYER) == []
