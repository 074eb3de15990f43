"""
Auction lifecycle: active -> sold | expired.

A transition is an ordered list of steps over documents the store cannot
update atomically:

    flip      status on the active document, conditional on it still being active
    copy      item and every bid record into the destination partition
    bidders   per bidder: past record, drop active pointer, won/lost notification
    cleanup   remove item and bids from the active partition

The flip happens first so that a racing bid sees a non-active status and is
rejected. Once flipped the item never goes back; every later step is
recorded on the TransitionResult when it fails and can be re-run with
AuctionLifecycle.retry(). Cleanup only runs when nothing is outstanding, so
bidder data is never deleted before it has been copied.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Union

from catalog import locate_item, utcnow
from database import (
    DocumentStore, bidders_path, listing_collection, listing_path, user_active_path, user_past_path,
)
from errors import (
    AuctionError, ItemNotActive, NoBidsToSell, NothingToResume, NotFoundError, PartialFailure, StoreUnavailable,
    WriteConflict,
)
from ledger import rank_bids
from notifications import ITEM_LOST, ITEM_WON, NotificationGateway
from schemas import ACTIVE, EXPIRED, SOLD, Bid, Item, PastBidRecord

logger = logging.getLogger(__name__)

COPY_ITEM = "copy_item"
COPY_BID = "copy_bid"
PAST_RECORD = "past_record"
ACTIVE_RECORD = "active_record"
NOTIFY = "notify"
CLEANUP = "cleanup"
FLIP = "flip"


@dataclass
class StepFailure:
    step: str
    target: str
    error: str


@dataclass
class TransitionResult:
    item_id: str
    outcome: str
    item: Optional[Item] = None
    bids: List[Bid] = field(default_factory=list)
    winner_id: Optional[str] = None
    final_amount: Optional[float] = None
    flipped: bool = False
    completed: bool = False
    notified: List[str] = field(default_factory=list)
    failures: List[StepFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def bidders(self) -> List[str]:
        seen = []
        for bid in self.bids:
            if bid.bidder_id not in seen:
                seen.append(bid.bidder_id)
        return seen

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialFailure(self)


class AuctionLifecycle:

    def __init__(self, store: DocumentStore, gateway: NotificationGateway,
                 clock: Callable[[], datetime] = utcnow, users=None,
                 settle_attempts: int = 3, settle_delay: float = 0.05):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.users = users
        self.settle_attempts = settle_attempts
        self.settle_delay = settle_delay

    # ----------------------------
    # Entry points
    # ----------------------------

    def sweep(self, now: Optional[datetime] = None) -> List[TransitionResult]:
        """Expire every active item whose end time has passed. Safe to call repeatedly."""
        now = now or self.clock()
        due = self.store.query(
            listing_collection(ACTIVE),
            [("status", "==", ACTIVE), ("endDateTime", "<=", now)],
            order_by=[("endDateTime", "asc")],
        )
        results = []
        for doc in due:
            try:
                results.append(self.expire(doc["id"], now))
            except ItemNotActive:
                logger.debug("Item %s was transitioned by someone else", doc["id"])
            except NotFoundError:
                logger.info("Item %s was deleted before it could be expired", doc["id"])
            except StoreUnavailable as e:
                logger.error("Could not expire %s: %s", doc["id"], e)
                results.append(TransitionResult(
                    item_id=doc["id"], outcome=EXPIRED, failures=[StepFailure(FLIP, doc["id"], str(e))],
                ))
        if results:
            logger.info("Sweep at %s expired %d item(s)", now.isoformat(), sum(1 for r in results if r.flipped))
        return results

    def sweep_expired(self, now: Optional[datetime] = None) -> List[str]:
        return [r.item_id for r in self.sweep(now) if r.flipped]

    def expire(self, item_id: str, now: Optional[datetime] = None) -> TransitionResult:
        now = now or self.clock()
        self._load_active(item_id)
        flipped = self._flip(item_id, {"status": EXPIRED, "expiredAt": now, "updatedAt": now})
        ranked = rank_bids(self._settled_bids(flipped))
        winner = ranked[0] if ranked else None
        if winner is not None:
            flipped.top_bidder_id = winner.bidder_id
            flipped.top_bid_amount = winner.bid_amount
            flipped.final_bid_amount = winner.bid_amount
        return self._transition(flipped, EXPIRED, ranked, winner)

    def mark_sold(self, item_id: str, winning_bid: Union[str, Bid], now: Optional[datetime] = None) -> TransitionResult:
        """
        Sell an active item to the bidder of `winning_bid`, which need not be
        the top bid.
        """
        now = now or self.clock()
        item = self._load_active(item_id)
        bids = self._bids(ACTIVE, item_id)
        if not bids:
            raise NoBidsToSell(item_id)
        bid_id = winning_bid.id if isinstance(winning_bid, Bid) else winning_bid
        winner = next((b for b in bids if b.id == bid_id), None)
        if winner is None:
            raise NotFoundError(f"{bidders_path(ACTIVE, item_id)}/{bid_id}")

        buyer_name, buyer_email = winner.bidder_name, None
        if self.users is not None:
            buyer = self.users.find(winner.bidder_id)
            if buyer is not None:
                buyer_name, buyer_email = buyer.full_name, buyer.email

        flipped = self._flip(item_id, {
            "status": SOLD,
            "soldAt": now,
            "updatedAt": now,
            "buyerId": winner.bidder_id,
            "buyerName": buyer_name,
            "buyerEmail": buyer_email,
            "finalBidAmount": winner.bid_amount,
        })
        ranked = rank_bids(self._settled_bids(flipped))
        logger.info("Selling %s (%r) to %s for %.2f", item_id, item.name, winner.bidder_id, winner.bid_amount)
        return self._transition(flipped, SOLD, ranked, winner)

    def retry(self, result: TransitionResult) -> TransitionResult:
        """Re-run only the steps that failed, then finish cleanup if nothing is left"""
        if not result.flipped:
            raise ItemNotActive(result.item_id, "not transitioned")
        pending, result.failures = result.failures, []
        by_id = {b.id: b for b in result.bids}
        for failure in pending:
            if failure.step == COPY_ITEM:
                self._copy_item(result)
            elif failure.step == COPY_BID and failure.target in by_id:
                self._copy_bid(result, by_id[failure.target])
            elif failure.step == PAST_RECORD:
                self._settle_bidder(result, failure.target, notify=False)
            elif failure.step == ACTIVE_RECORD:
                self._drop_active_pointer(result, failure.target)
            elif failure.step == NOTIFY:
                self._notify(result, failure.target)
            elif failure.step == CLEANUP:
                pass
            else:
                result.failures.append(failure)
        if result.ok:
            self._cleanup(result)
        else:
            self._record_pending(result)
        logger.info("Retried %d step(s) of %s, %d still failing", len(pending), result.item_id, len(result.failures))
        return result

    def resume(self, item_id: str) -> TransitionResult:
        """
        Finish a transition started by an earlier call whose result is gone.

        The failed steps are read back from the `pendingSteps` field of the
        flipped document. When they were never recorded, every idempotent
        step is re-run and won/lost notifications are not sent again.
        """
        path = listing_path(ACTIVE, item_id)
        try:
            doc = self.store.get(path)
        except NotFoundError:
            partition, item = locate_item(self.store, item_id)
            winner_id = item.buyer_id if partition == SOLD else item.top_bidder_id
            return TransitionResult(
                item_id=item_id, outcome=partition, item=item, bids=rank_bids(self._bids(partition, item_id)),
                winner_id=winner_id, final_amount=item.final_bid_amount, flipped=True, completed=True,
            )
        item = Item.from_document(doc)
        if item.status == ACTIVE:
            raise NothingToResume(item_id)

        ranked = rank_bids(self._bids(ACTIVE, item_id))
        item.total_bids = len({b.bidder_id for b in ranked})
        if item.status == SOLD:
            winner_id, final_amount = item.buyer_id, item.final_bid_amount
        else:
            winner = ranked[0] if ranked else None
            winner_id = winner.bidder_id if winner else None
            final_amount = winner.bid_amount if winner else None
            if winner is not None:
                item.top_bidder_id = winner.bidder_id
                item.top_bid_amount = winner.bid_amount
                item.final_bid_amount = winner.bid_amount
        result = TransitionResult(
            item_id=item_id, outcome=item.status, item=item, bids=ranked,
            winner_id=winner_id, final_amount=final_amount, flipped=True,
        )
        pending = doc.get("pendingSteps")
        if pending is not None:
            result.failures = [StepFailure(**f) for f in pending]
        else:
            result.failures = [StepFailure(COPY_ITEM, item_id, "not recorded")]
            result.failures += [StepFailure(COPY_BID, b.id, "not recorded") for b in ranked]
            result.failures += [StepFailure(PAST_RECORD, user_id, "not recorded") for user_id in result.bidders]
        logger.info("Resuming %s transition of %s with %d step(s)", item.status, item_id, len(result.failures))
        return self.retry(result)

    # ----------------------------
    # Steps
    # ----------------------------

    def _load_active(self, item_id: str) -> Item:
        partition, item = locate_item(self.store, item_id)
        if partition != ACTIVE or item.status != ACTIVE:
            raise ItemNotActive(item_id, item.status)
        return item

    def _flip(self, item_id: str, patch: dict) -> Item:
        path = listing_path(ACTIVE, item_id)
        try:
            doc = self.store.conditional_update(path, {"status": ACTIVE}, patch)
        except WriteConflict:
            raise ItemNotActive(item_id, self.store.get(path).get("status"))
        except NotFoundError:
            raise ItemNotActive(item_id, "transitioned")
        return Item.from_document(doc)

    def _bids(self, partition: str, item_id: str) -> List[Bid]:
        return [Bid.from_document(d) for d in self.store.query(bidders_path(partition, item_id))]

    def _settled_bids(self, flipped: Item) -> List[Bid]:
        """
        Bids on the flipped item. A bid that claimed the projection just
        before the flip may not have written its record yet, so wait briefly
        for the record matching the projection to appear.
        """
        for attempt in range(self.settle_attempts):
            bids = self._bids(ACTIVE, flipped.id)
            if not flipped.has_bids or any(
                b.bidder_id == flipped.top_bidder_id and b.bid_amount == flipped.top_bid_amount for b in bids
            ):
                return bids
            time.sleep(self.settle_delay)
        logger.warning("Top bid %.2f by %s on %s never landed in bidders",
                       flipped.top_bid_amount, flipped.top_bidder_id, flipped.id)
        return bids

    def _transition(self, item: Item, outcome: str, ranked: List[Bid], winner: Optional[Bid]) -> TransitionResult:
        item.total_bids = len({b.bidder_id for b in ranked})
        result = TransitionResult(
            item_id=item.id,
            outcome=outcome,
            item=item,
            bids=ranked,
            winner_id=winner.bidder_id if winner else None,
            final_amount=winner.bid_amount if winner else None,
            flipped=True,
        )
        self._copy_item(result)
        for bid in ranked:
            self._copy_bid(result, bid)
        for user_id in result.bidders:
            self._settle_bidder(result, user_id)
        if result.ok:
            self._cleanup(result)
        else:
            logger.warning("Transition of %s to %s left %d failed step(s)", item.id, outcome, len(result.failures))
            self._record_pending(result)
        logger.info("Item %s %s, winner=%s bidders=%d", item.id, outcome, result.winner_id, len(result.bidders))
        return result

    def _step(self, result: TransitionResult, step: str, target: str, fn) -> bool:
        try:
            fn()
        except AuctionError as e:
            logger.warning("Step %s for %s on %s failed: %s", step, target, result.item_id, e)
            result.failures.append(StepFailure(step, target, str(e)))
            return False
        return True

    def _copy_item(self, result: TransitionResult) -> None:
        path = listing_path(result.outcome, result.item_id)
        self._step(result, COPY_ITEM, result.item_id, lambda: self.store.set(path, result.item.to_document()))

    def _copy_bid(self, result: TransitionResult, bid: Bid) -> None:
        path = f"{bidders_path(result.outcome, result.item_id)}/{bid.id}"
        self._step(result, COPY_BID, bid.id, lambda: self.store.set(path, bid.to_document()))

    def _settle_bidder(self, result: TransitionResult, user_id: str, notify: bool = True) -> None:
        record = PastBidRecord(item_id=result.item_id, won=user_id == result.winner_id, final_bid=result.final_amount)
        past_path = f"{user_past_path(user_id)}/{result.item_id}"
        # The active pointer is only dropped once the past record exists
        if self._step(result, PAST_RECORD, user_id, lambda: self.store.set(past_path, record.to_document())):
            self._drop_active_pointer(result, user_id)
        if notify:
            self._notify(result, user_id)

    def _drop_active_pointer(self, result: TransitionResult, user_id: str) -> None:
        path = f"{user_active_path(user_id)}/{result.item_id}"
        self._step(result, ACTIVE_RECORD, user_id, lambda: self.store.delete(path))

    def _notify(self, result: TransitionResult, user_id: str) -> None:
        kind = ITEM_WON if user_id == result.winner_id else ITEM_LOST
        payload = {"item_id": result.item_id, "item_name": result.item.name, "amount": result.final_amount}
        try:
            self.gateway.emit(user_id, kind, payload)
        except Exception as e:
            # Gateways are external; any failure is recorded against this bidder
            logger.warning("%s notification to %s for %s failed", kind, user_id, result.item_id, exc_info=True)
            result.failures.append(StepFailure(NOTIFY, user_id, str(e) or type(e).__name__))
        else:
            result.notified.append(user_id)

    def _record_pending(self, result: TransitionResult) -> None:
        """Keep the outstanding steps on the flipped document so resume() can find them"""
        steps = [asdict(f) for f in result.failures]
        try:
            self.store.conditional_update(
                listing_path(ACTIVE, result.item_id), {"status": result.outcome}, {"pendingSteps": steps},
            )
        except AuctionError as e:
            logger.warning("Could not record pending steps of %s: %s", result.item_id, e)

    def _cleanup(self, result: TransitionResult) -> None:
        def remove():
            for bid in self._bids(ACTIVE, result.item_id):
                self.store.delete(f"{bidders_path(ACTIVE, result.item_id)}/{bid.id}")
            self.store.delete(listing_path(ACTIVE, result.item_id))

        if self._step(result, CLEANUP, result.item_id, remove):
            result.completed = True
