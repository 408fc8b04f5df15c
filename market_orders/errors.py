"""
Typed failures raised by the order lifecycle. Every transition rejection carries a
machine-readable reason and a one-sentence message the UI can show as-is.
"""


class TransitionError(Exception):
    """Base for rejected transitions. The order is left untouched."""

    reason = "transition_rejected"

    def __init__(self, message: str, current_status: str | None = None):
        self.message = message
        self.current_status = current_status
        super().__init__(message)


class InvalidActorForTransition(TransitionError):
    reason = "invalid_actor_for_transition"


class InvalidFromState(TransitionError):
    reason = "invalid_from_state"


class PreconditionNotMet(TransitionError):
    reason = "precondition_not_met"


class TerminalState(TransitionError):
    reason = "terminal_state"


class StaleStateError(TransitionError):
    """Observed status no longer matches the stored one. Reload and retry."""

    reason = "stale_state"


class PersistenceUnavailable(Exception):
    """Store could not be reached. Callers should retry with backoff."""


class NotFoundError(Exception):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class PaymentRequestError(Exception):
    """Payment request failed validation (phone, network, amount, duplicate)."""


def stale_state(current_status: str) -> StaleStateError:
    return StaleStateError(
        f"This order was updated to {current_status} by someone else; refresh and try again.",
        current_status=current_status,
    )
