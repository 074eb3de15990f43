"""
Error taxonomy for the auction core.

ValidationError and StateConflict subclasses are user-correctable outcomes
and are returned to the caller as-is. StoreUnavailable is transient and may
be retried by the caller. PartialFailure wraps a transition that flipped the
item but left some per-bidder work outstanding.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class FieldError(BaseModel):
    field: str
    message: str


class AuctionError(Exception):
    code = "auction_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(AuctionError):
    code = "validation_error"

    def __init__(self, errors: List[FieldError]):
        self.errors = list(errors)
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in self.errors))


class NotFoundError(AuctionError):
    code = "not_found"

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"{path} not found")


class StateConflict(AuctionError):
    code = "state_conflict"


class BidTooLow(StateConflict):
    code = "bid_too_low"

    def __init__(self, minimum: float, has_bids: bool = True):
        self.minimum = minimum
        if has_bids:
            message = f"Your bid must be higher than the current top bid of ${minimum:.2f}."
        else:
            message = f"Your bid must be higher than the starting bid of ${minimum:.2f}."
        super().__init__(message)


class ItemNotActive(StateConflict):
    code = "item_not_active"

    def __init__(self, item_id: str, status: Optional[str] = None):
        self.item_id = item_id
        self.status = status
        super().__init__(f"Auction for {item_id} is no longer active ({status or 'unknown'})")


class ItemExpired(StateConflict):
    code = "item_expired"

    def __init__(self, item_id: str, end_date_time: datetime):
        self.item_id = item_id
        self.end_date_time = end_date_time
        super().__init__(f"Auction for {item_id} ended at {end_date_time.isoformat()}")


class NoBidsToSell(StateConflict):
    code = "no_bids_to_sell"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} has no bids to sell")


class NothingToResume(StateConflict):
    code = "nothing_to_resume"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item {item_id} is still active, there is no transition to resume")


class AccountInactive(StateConflict):
    code = "account_inactive"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Account {user_id} is disabled")


class StoreUnavailable(AuctionError):
    code = "store_unavailable"


class BidContention(StoreUnavailable):
    """Optimistic retries on the item projection were exhausted."""

    code = "bid_contention"


class WriteConflict(AuctionError):
    """A conditional update found different values than expected."""

    code = "write_conflict"

    def __init__(self, path: str, expected: dict):
        self.path = path
        self.expected = expected
        super().__init__(f"conditional update on {path} did not match {sorted(expected)}")


class PartialFailure(AuctionError):
    code = "partial_failure"

    def __init__(self, result):
        self.result = result
        steps = ", ".join(f"{f.step}:{f.target}" for f in result.failures)
        super().__init__(f"transition of {result.item_id} left failed steps: {steps}")
