import logging
from datetime import datetime, timezone
from typing import List, Set

from catalog import locate_item
from database import DocumentStore, bidders_path, user_active_path, user_past_path
from errors import NotFoundError
from ledger import rank_bids
from schemas import ACTIVE, ActiveBidRecord, ActiveBidView, Bid, PastBidRecord, PastBidView

logger = logging.getLogger(__name__)


class UserBidIndex:
    """A user's own bids, read through the users/{uid}/active and /past pointers"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def _bids(self, partition: str, item_id: str) -> List[Bid]:
        return [Bid.from_document(d) for d in self.store.query(bidders_path(partition, item_id))]

    def active_records(self, user_id: str) -> List[ActiveBidRecord]:
        return [ActiveBidRecord.from_document(d) for d in self.store.query(user_active_path(user_id))]

    def past_records(self, user_id: str) -> List[PastBidRecord]:
        return [PastBidRecord.from_document(d) for d in self.store.query(user_past_path(user_id))]

    def active_bids_for(self, user_id: str) -> List[ActiveBidView]:
        views = []
        for record in self.active_records(user_id):
            try:
                partition, item = locate_item(self.store, record.item_id)
            except NotFoundError:
                logger.debug("Active pointer %s/%s refers to a deleted item", user_id, record.item_id)
                continue
            if partition != ACTIVE:
                continue
            bids = rank_bids(self._bids(ACTIVE, item.id))
            mine = [b.bid_amount for b in bids if b.bidder_id == user_id]
            if not mine:
                continue
            top = bids[0]
            views.append(ActiveBidView(
                item=item,
                user_bid_amount=max(mine),
                current_top_bid=top.bid_amount,
                is_top_bidder=top.bidder_id == user_id,
            ))
        views.sort(key=lambda v: v.item.end_date_time)
        return views

    def past_bids_for(self, user_id: str) -> List[PastBidView]:
        views = []
        for record in self.past_records(user_id):
            try:
                partition, item = locate_item(self.store, record.item_id)
            except NotFoundError:
                logger.debug("Past record %s/%s refers to a deleted item", user_id, record.item_id)
                continue
            mine = [b.bid_amount for b in self._bids(partition, item.id) if b.bidder_id == user_id]
            views.append(PastBidView(
                item=item,
                user_bid_amount=max(mine) if mine else None,
                final_amount=record.final_bid if record.final_bid is not None else item.final_bid_amount,
                won=record.won,
            ))
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        views.sort(key=lambda v: v.item.sold_at or v.item.expired_at or epoch, reverse=True)
        return views

    def overlapping_items(self, user_id: str) -> Set[str]:
        """Item ids present in both the active and past views; empty when consistent"""
        active = {r.item_id for r in self.active_records(user_id)}
        past = {r.item_id for r in self.past_records(user_id)}
        return active & past
