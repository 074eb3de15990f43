from datetime import datetime
from typing import Callable, Optional

from catalog import ListingCatalog, utcnow
from config import get_settings
from database import DocumentStore
from ledger import BidLedger
from lifecycle import AuctionLifecycle
from notifications import NotificationGateway, NotificationInbox, StoreNotificationGateway
from user_bids import UserBidIndex
from users import UserDirectory


class Marketplace:
    """All auction components sharing one store, gateway and clock"""

    def __init__(self, store: DocumentStore, gateway: Optional[NotificationGateway] = None,
                 clock: Callable[[], datetime] = utcnow, bid_retry_limit: Optional[int] = None):
        if bid_retry_limit is None:
            bid_retry_limit = get_settings().bid_retry_limit
        self.store = store
        self.clock = clock
        self.gateway = gateway or StoreNotificationGateway(store, clock)
        self.users = UserDirectory(store, clock)
        self.catalog = ListingCatalog(store, clock)
        self.ledger = BidLedger(store, self.gateway, clock, retry_limit=bid_retry_limit, users=self.users)
        self.lifecycle = AuctionLifecycle(store, self.gateway, clock, users=self.users)
        self.bids = UserBidIndex(store)
        self.inbox = NotificationInbox(store)

    def dashboard(self) -> dict:
        counts = self.catalog.counts()
        return {
            "active_listings": counts["active"],
            "sold_items": counts["sold"],
            "expired_items": counts["expired"],
            "new_users": self.users.new_users_recently(days=2),
        }
