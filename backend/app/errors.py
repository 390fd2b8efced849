"""
Typed errors for the fairness / escrow / payout core.

Every error carries a ``kind``:
  - validation   bad input or a state that forbids the call; never retried
  - consistency  an invariant is broken; payouts for the giveaway halt
  - transient    external dependency unavailable; safe to retry later
  - ambiguous    a money-movement call has an unknown outcome; wait for the webhook
The admin gateway maps ``status_code`` / ``kind`` onto HTTP responses.
"""
from __future__ import annotations
from typing import Any


class FairdrawError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str = "", **context: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


# ---------- validation ----------

class ValidationError(FairdrawError):
    kind = "validation"
    status_code = 400

class NotFound(ValidationError):
    status_code = 404

class Conflict(ValidationError):
    status_code = 409

class ReasonRequired(ValidationError):
    pass

class InvalidAmount(ValidationError):
    pass

class InvalidTransition(Conflict):
    pass

class GiveawayFrozen(Conflict):
    pass

class AlreadyCommitted(Conflict):
    pass

class CommitmentTooLate(ValidationError):
    pass

class NoCommitment(NotFound):
    pass

class NotYetClosed(Conflict):
    pass

class NoEligibleEntries(ValidationError):
    pass

class WinnerAlreadySelected(Conflict):
    def __init__(self, message: str = "", proof=None, **context: Any):
        super().__init__(message, **context)
        self.proof = proof

class InsufficientFunds(ValidationError):
    status_code = 402

class EntryNotRefundable(ValidationError):
    pass

class PayoutInFlight(Conflict):
    pass

class RecipientNotPayable(ValidationError):
    pass

class InvalidSignature(ValidationError):
    pass

class PayoutRejected(ValidationError):
    """The processor definitively refused the transfer; the payout is failed and funds released."""
    status_code = 402

    def __init__(self, message: str = "", payout=None, **context: Any):
        super().__init__(message, **context)
        self.payout = payout


# ---------- consistency ----------

class ConsistencyError(FairdrawError):
    kind = "consistency"
    status_code = 409

class EscrowInconsistency(ConsistencyError):
    pass

class EscrowHalted(ConsistencyError):
    status_code = 423


# ---------- external ----------

class TransientError(FairdrawError):
    kind = "transient"
    status_code = 503

class AmbiguousOutcome(FairdrawError):
    """A money-movement call gave no answer. The payout stays processing until a webhook settles it."""
    kind = "ambiguous"
    status_code = 202

    def __init__(self, message: str = "", payout=None, **context: Any):
        super().__init__(message, **context)
        self.payout = payout
