import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from catalog import locate_item, utcnow
from database import DocumentStore, bidders_path, create_document, listing_path, user_active_path
from errors import (
    AccountInactive, BidContention, BidTooLow, FieldError, ItemExpired, ItemNotActive,
    NotFoundError, StoreUnavailable, ValidationError, WriteConflict,
)
from notifications import NEW_BID, NotificationGateway
from schemas import ACTIVE, ActiveBidRecord, Bid, Item

logger = logging.getLogger(__name__)


def rank_bids(bids: List[Bid]) -> List[Bid]:
    """Highest amount first, earliest bid first among equal amounts"""
    return sorted(bids, key=Bid.rank_key)


@dataclass
class BidReceipt:
    bid_id: str
    item_id: str
    bidder_id: str
    amount: float
    new_bidder: bool
    index_updated: bool = True
    notified: List[str] = field(default_factory=list)
    failed_notifications: List[str] = field(default_factory=list)


class BidLedger:
    """
    Accepts bids for active items and keeps the item's topBidderId /
    topBidAmount / totalBids projection in step with the bidders records.

    The projection is claimed first with a conditional update that expects
    the values we read; losing that race means someone else bid in between,
    so we re-read and re-check rather than reject.
    """

    def __init__(self, store: DocumentStore, gateway: NotificationGateway,
                 clock: Callable[[], datetime] = utcnow, retry_limit: int = 5, users=None):
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.retry_limit = retry_limit
        self.users = users

    def bids(self, item_id: str, partition: Optional[str] = None) -> List[Bid]:
        if partition is None:
            partition = locate_item(self.store, item_id)[0]
        docs = self.store.query(bidders_path(partition, item_id), order_by=[("bidAmount", "desc"), ("bidTime", "asc")])
        return [Bid.from_document(d) for d in docs]

    def ranked_bids(self, item_id: str, partition: Optional[str] = None) -> List[Bid]:
        return rank_bids(self.bids(item_id, partition))

    def top_bid(self, item_id: str, partition: Optional[str] = None) -> Optional[Bid]:
        ranked = self.ranked_bids(item_id, partition)
        return ranked[0] if ranked else None

    def minimum_bid(self, item_id: str) -> float:
        """Amount a new bid has to beat"""
        return self._active_item(item_id).current_price

    def _active_item(self, item_id: str) -> Item:
        partition, item = locate_item(self.store, item_id)
        if partition != ACTIVE or item.status != ACTIVE:
            raise ItemNotActive(item_id, item.status)
        return item

    def place_bid(self, item_id: str, bidder_id: str, amount: float,
                  bidder_name: Optional[str] = None) -> BidReceipt:
        if amount is None or amount <= 0:
            raise ValidationError([FieldError(field="bidAmount", message="Bid amount must be a valid number greater than 0")])
        if self.users is not None:
            user = self.users.ensure(bidder_id)
            if not user.is_active:
                raise AccountInactive(bidder_id)
            bidder_name = bidder_name or user.full_name

        for attempt in range(1, self.retry_limit + 1):
            item = self._active_item(item_id)
            now = self.clock()
            if now >= item.end_date_time:
                raise ItemExpired(item_id, item.end_date_time)
            if amount <= item.current_price:
                logger.debug("Rejected %.2f on %s, minimum is %.2f", amount, item_id, item.current_price)
                raise BidTooLow(item.current_price, has_bids=item.has_bids)

            prior = self.store.query(bidders_path(ACTIVE, item_id), [("bidderId", "==", bidder_id)], limit=1)
            # A claim by this bidder whose record is still being written counts as a prior bid
            new_bidder = not prior and item.top_bidder_id != bidder_id
            expected = {
                "status": ACTIVE,
                "topBidAmount": item.top_bid_amount,
                "topBidderId": item.top_bidder_id,
                "totalBids": item.total_bids,
            }
            claimed = {
                "topBidAmount": amount,
                "topBidderId": bidder_id,
                "totalBids": item.total_bids + (1 if new_bidder else 0),
                "updatedAt": now,
            }
            try:
                self.store.conditional_update(listing_path(ACTIVE, item_id), expected, claimed)
            except WriteConflict:
                logger.info("Projection on %s moved under bid %.2f (attempt %d), re-reading", item_id, amount, attempt)
                continue
            except NotFoundError:
                raise ItemNotActive(item_id, "transitioned")
            break
        else:
            raise BidContention(f"Could not place bid on {item_id} after {self.retry_limit} attempts, please try again")

        # The pointer goes in before the bid record: a transition waits for the
        # record, so by the time it settles this bidder the pointer exists
        index_updated = True
        try:
            self.store.set(f"{user_active_path(bidder_id)}/{item_id}", ActiveBidRecord(item_id=item_id).to_document())
        except StoreUnavailable:
            logger.warning("Active pointer for %s on %s not written", bidder_id, item_id, exc_info=True)
            index_updated = False

        bid = Bid(bidder_id=bidder_id, bidder_name=bidder_name, bid_amount=amount, bid_time=now)
        try:
            bid_id = create_document(bidders_path(ACTIVE, item_id), bid, store=self.store)
        except StoreUnavailable:
            self._release(item_id, claimed, expected)
            if new_bidder and index_updated:
                self._drop_pointer(bidder_id, item_id)
            raise
        self._confirm_recorded(item_id, bid_id, bidder_id)

        receipt = BidReceipt(bid_id=bid_id, item_id=item_id, bidder_id=bidder_id, amount=amount,
                             new_bidder=new_bidder, index_updated=index_updated)
        logger.info("Accepted bid %s of %.2f by %s on %s", bid_id, amount, bidder_id, item_id)

        self._notify_outbid(item, bidder_id, amount, receipt)
        return receipt

    def _release(self, item_id: str, claimed: dict, previous: dict) -> None:
        """Put the projection back if nobody has moved it since we claimed it"""
        mine = {k: v for k, v in claimed.items() if k != "updatedAt"}
        restore = {k: v for k, v in previous.items() if k != "status"}
        try:
            self.store.conditional_update(listing_path(ACTIVE, item_id), mine, restore)
        except (WriteConflict, NotFoundError):
            logger.warning("Projection on %s moved before it could be released", item_id)

    def _drop_pointer(self, bidder_id: str, item_id: str) -> None:
        try:
            self.store.delete(f"{user_active_path(bidder_id)}/{item_id}")
        except StoreUnavailable:
            logger.warning("Active pointer for %s on %s could not be removed", bidder_id, item_id, exc_info=True)

    def _confirm_recorded(self, item_id: str, bid_id: str, bidder_id: str) -> None:
        """
        A transition may have flipped the item after our claim and given up
        waiting for this record. If the item has already left the active
        partition without the bid, withdraw the bid and its pointer.
        """
        try:
            partition, item = locate_item(self.store, item_id)
        except NotFoundError:
            logger.info("Item %s was deleted while bid %s was being written", item_id, bid_id)
            return
        if partition == ACTIVE:
            return
        if self.store.exists(f"{bidders_path(partition, item_id)}/{bid_id}"):
            return
        logger.warning("Bid %s on %s missed the %s transition, withdrawing it", bid_id, item_id, partition)
        self.store.delete(f"{bidders_path(ACTIVE, item_id)}/{bid_id}")
        self._drop_pointer(bidder_id, item_id)
        raise ItemNotActive(item_id, item.status)

    def _notify_outbid(self, item: Item, bidder_id: str, amount: float, receipt: BidReceipt) -> None:
        try:
            docs = self.store.query(bidders_path(ACTIVE, item.id))
        except StoreUnavailable:
            logger.warning("Could not list bidders of %s for new bid notifications", item.id, exc_info=True)
            return
        recipients = []
        for doc in docs:
            other = doc.get("bidderId")
            if other and other != bidder_id and other not in recipients:
                recipients.append(other)
        payload = {"item_id": item.id, "item_name": item.name, "amount": amount}
        for user_id in recipients:
            try:
                self.gateway.emit(user_id, NEW_BID, payload)
            except Exception:
                # Notification delivery never fails the bid it describes
                logger.warning("new_bid notification to %s for %s failed", user_id, item.id, exc_info=True)
                receipt.failed_notifications.append(user_id)
            else:
                receipt.notified.append(user_id)
