import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from database import NOTIFICATIONS, DocumentStore, create_document, get_documents
from errors import NotFoundError, WriteConflict
from schemas import Notification

logger = logging.getLogger(__name__)

NEW_BID = "new_bid"
ITEM_WON = "item_won"
ITEM_LOST = "item_lost"

PRIORITIES = {NEW_BID: "medium", ITEM_WON: "high", ITEM_LOST: "low"}


def build_notification(user_id: str, type: str, payload: Dict[str, Any], now: datetime) -> Notification:
    item_name = payload.get("item_name") or "this item"
    amount = payload.get("amount")
    money = f"${amount:.2f}" if amount is not None else "an undisclosed amount"
    if type == NEW_BID:
        title = "New Bid Alert"
        message = f'Someone placed a new bid of {money} on "{item_name}"'
    elif type == ITEM_WON:
        title = "Congratulations! You Won!"
        message = f'You won "{item_name}" with a bid of {money}!'
    elif type == ITEM_LOST:
        title = "Auction Ended"
        message = f'The auction for "{item_name}" has ended. Final bid was {money}.'
    else:
        raise ValueError(f"unknown notification type {type!r}")
    return Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        item_id=payload.get("item_id"),
        item_name=payload.get("item_name"),
        amount=amount,
        is_read=False,
        created_at=now,
        priority=PRIORITIES[type],
    )


class NotificationGateway(ABC):
    """Fire-and-forget sink for auction events"""

    @abstractmethod
    def emit(self, user_id: str, type: str, payload: Dict[str, Any]) -> Optional[str]:
        ...


class StoreNotificationGateway(NotificationGateway):
    """Writes each event as a document in the flat notifications collection"""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def emit(self, user_id, type, payload):
        notification = build_notification(user_id, type, payload, self.clock())
        notification_id = create_document(NOTIFICATIONS, notification, store=self.store)
        logger.debug("Notification %s (%s) queued for %s", notification_id, type, user_id)
        return notification_id


class NotificationInbox:
    """Read side of the notifications collection for one recipient at a time"""

    def __init__(self, store: DocumentStore):
        self.store = store

    def list_for(self, user_id: str) -> List[Notification]:
        docs = get_documents(NOTIFICATIONS, {"userId": user_id}, store=self.store)
        notifications = [Notification.from_document(d) for d in docs]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        notifications.sort(key=lambda n: n.created_at or epoch, reverse=True)
        return notifications

    def unread_count(self, user_id: str) -> int:
        return len(get_documents(NOTIFICATIONS, {"userId": user_id, "isRead": False}, store=self.store))

    def mark_read(self, notification_id: str, user_id: Optional[str] = None) -> Notification:
        path = f"{NOTIFICATIONS}/{notification_id}"
        expected = {"userId": user_id} if user_id else {}
        try:
            doc = self.store.conditional_update(path, expected, {"isRead": True})
        except WriteConflict:
            # Someone else's notification looks the same as a missing one
            raise NotFoundError(path)
        return Notification.from_document(doc)

    def mark_all_read(self, user_id: str) -> int:
        unread = get_documents(NOTIFICATIONS, {"userId": user_id, "isRead": False}, store=self.store)
        marked = 0
        for doc in unread:
            try:
                self.store.conditional_update(f"{NOTIFICATIONS}/{doc['id']}", {"isRead": False}, {"isRead": True})
            except WriteConflict:
                continue  # already read by a concurrent call
            marked += 1
        return marked
