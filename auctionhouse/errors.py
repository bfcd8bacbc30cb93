"""Error taxonomy shared by the bidding engine, lifecycle monitor and storage."""

from __future__ import annotations


class AuctionNotFound(LookupError):
    """Raised when an auction id is unknown to the ledger."""


class TransactionConflict(RuntimeError):
    """Raised by storage when a commit loses against a concurrent writer."""


class LockTimeout(RuntimeError):
    """Raised when the per-auction critical section cannot be acquired in time."""


class TransientBidError(RuntimeError):
    """Raised when a bid could not be committed after the bounded retries.

    The bid was never applied; the caller may resubmit.
    """

    def __init__(self, auction_id: str, attempts: int) -> None:
        super().__init__(f"auction {auction_id} busy after {attempts} attempts, resubmit")
        self.auction_id = auction_id
        self.attempts = attempts


class InvariantViolation(RuntimeError):
    """Raised when ledger state or cascade resolution breaks a core invariant."""


class InvalidTransition(ValueError):
    """Raised when the lifecycle state machine refuses a status change."""
