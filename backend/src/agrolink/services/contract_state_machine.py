"""Contract state machine: validates transitions and enforces actor rules.

Party-driven transitions (negotiation, acceptance, harvest milestones,
cancellation, disputes) and payment-driven transitions (``SYSTEM`` only)
share one transition map.
"""

from agrolink.app.errors import ValidationError
from agrolink.domain.enums import ContractActor, ContractStatus, PaymentStage


class InvalidTransitionError(ValidationError):
    """Raised when a contract state transition is not allowed."""

    def __init__(
        self,
        current_status: ContractStatus,
        target_status: ContractStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


# ---------------------------------------------------------------------------
# Transition map: from_status -> {to_status: set_of_allowed_actors}
# ---------------------------------------------------------------------------

S = ContractStatus
A = ContractActor
P = PaymentStage

PARTIES = {A.FARMER, A.BUYER}

TRANSITION_MAP: dict[ContractStatus, dict[ContractStatus, set[ContractActor]]] = {
    S.REQUESTED: {
        S.NEGOTIATING: PARTIES,
        S.ACCEPTED: {A.FARMER},
    },
    S.NEGOTIATING: {
        S.NEGOTIATING: PARTIES,
        S.ACCEPTED: {A.FARMER},
    },
    S.ACCEPTED: {
        S.PAYMENT_PENDING: PARTIES,
        S.ACTIVE: {A.SYSTEM},
    },
    S.PAYMENT_PENDING: {
        S.ACTIVE: {A.SYSTEM},
    },
    S.ACTIVE: {
        S.READY_FOR_HARVEST: {A.FARMER},
        S.HARVESTED: {A.SYSTEM},
    },
    S.READY_FOR_HARVEST: {
        S.HARVESTED: {A.SYSTEM},
    },
    S.HARVESTED: {
        S.DELIVERED: {A.FARMER},
        S.COMPLETED: {A.SYSTEM},
    },
    S.DELIVERED: {
        S.COMPLETED: {A.SYSTEM},
    },
}

TERMINAL_STATES: set[ContractStatus] = {S.COMPLETED, S.CANCELLED}

# Either party may cancel or raise a dispute from any non-terminal state
ESCAPE_STATES: set[ContractStatus] = {S.CANCELLED, S.DISPUTED}

# Accepting the counterparty's latest offer is possible only while negotiating
OFFER_ACCEPTANCE_STATES: set[ContractStatus] = {S.REQUESTED, S.NEGOTIATING}

# Contract status reached when a payment stage completes
STAGE_COMPLETION_STATUS: dict[PaymentStage, ContractStatus] = {
    P.ADVANCE: S.ACTIVE,
    P.MIDTERM: S.HARVESTED,
    P.FINAL: S.COMPLETED,
}

# Contract statuses from which a payment for each stage may be started
PAYABLE_STATES: dict[PaymentStage, set[ContractStatus]] = {
    P.ADVANCE: {S.ACCEPTED, S.PAYMENT_PENDING},
    P.MIDTERM: {S.ACTIVE, S.READY_FOR_HARVEST},
    P.FINAL: {S.HARVESTED, S.DELIVERED},
}


def as_status(value) -> ContractStatus:
    return value if isinstance(value, ContractStatus) else ContractStatus(value)


class ContractStateMachine:
    """Validates contract state transitions and enforces business rules."""

    def validate_transition(
        self,
        current_status: ContractStatus,
        target_status: ContractStatus,
        actor: ContractActor,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not.

        Checks:
        1. The current status is not terminal.
        2. Cancellation/dispute by a party (never disputed -> disputed).
        3. The transition is in the allowed map and the actor may perform it.
        """
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Contract is {current_status.value} and can no longer change",
            )

        if target_status in ESCAPE_STATES:
            if actor not in PARTIES:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Actor {actor.value} may not {target_status.value} a contract",
                )
            if current_status == target_status:
                raise InvalidTransitionError(
                    current_status,
                    target_status,
                    f"Contract is already {current_status.value}",
                )
            return True

        allowed_targets = TRANSITION_MAP.get(current_status)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"No transitions allowed from {current_status.value}",
            )

        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )

        allowed_actors = allowed_targets[target_status]
        if actor not in allowed_actors:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Actor {actor.value} is not permitted for this transition "
                f"(allowed: {', '.join(sorted(a.value for a in allowed_actors))})",
            )

        return True

    def validate_counter_offer(self, current_status: ContractStatus) -> bool:
        """Counter-offers are accepted from any non-terminal state."""
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                S.NEGOTIATING,
                f"Cannot negotiate a {current_status.value} contract",
            )
        return True

    def validate_offer_acceptance(self, current_status: ContractStatus) -> bool:
        """Either party may accept the other's offer while still negotiating."""
        if current_status not in OFFER_ACCEPTANCE_STATES:
            raise InvalidTransitionError(
                current_status,
                S.ACCEPTED,
                "Offers can only be accepted while the contract is requested or negotiating",
            )
        return True

    def completion_target(
        self,
        current_status: ContractStatus,
        stage: PaymentStage,
    ) -> ContractStatus | None:
        """Return the status a completed ``stage`` payment moves the contract to.

        Returns None when the contract is no longer in a state from which
        that stage's transition is allowed; completions never move a
        contract backwards.
        """
        target = STAGE_COMPLETION_STATUS[stage]
        if current_status in TERMINAL_STATES:
            return None
        if A.SYSTEM not in TRANSITION_MAP.get(current_status, {}).get(target, set()):
            return None
        return target

    def is_payable(self, current_status: ContractStatus, stage: PaymentStage) -> bool:
        return current_status in PAYABLE_STATES[stage]

    def get_allowed_transitions(
        self,
        current_status: ContractStatus,
        actor: ContractActor,
    ) -> list[ContractStatus]:
        """Return list of valid next states for the given actor from the current status."""
        if current_status in TERMINAL_STATES:
            return []

        results: list[ContractStatus] = []
        for target_status, allowed_actors in TRANSITION_MAP.get(current_status, {}).items():
            if actor in allowed_actors and target_status != current_status:
                results.append(target_status)

        if actor in PARTIES:
            for target_status in (S.CANCELLED, S.DISPUTED):
                if target_status != current_status:
                    results.append(target_status)

        return results
