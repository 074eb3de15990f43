"""
Database Schemas

Pydantic models for the documents kept in the document store. Field names
are snake_case in Python and camelCase in the stored documents, so data
written by the mobile client stays readable:

- Item   -> "listings/{status}/{itemId}"
- Bid    -> "listings/{status}/{itemId}/bidders/{autoId}"
- User   -> "users/{userId}"
- ActiveBidRecord / PastBidRecord -> "users/{userId}/active|past/{itemId}"
- Notification -> "notifications/{autoId}"
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Literal
from datetime import datetime, timedelta, timezone


ACTIVE = "active"
SOLD = "sold"
EXPIRED = "expired"
STATUSES = (ACTIVE, SOLD, EXPIRED)

CATEGORIES = [
    "Electronics", "Fashion", "Home & Garden", "Sports", "Books",
    "Art & Collectibles", "Jewelry", "Automotive", "Music", "Other",
]

CONDITIONS = ["New", "Like New", "Very Good", "Good", "Fair", "Poor"]

DURATIONS = {
    "1 day": timedelta(days=1),
    "3 days": timedelta(days=3),
    "7 days": timedelta(days=7),
    "14 days": timedelta(days=14),
    "30 days": timedelta(days=30),
}
DEFAULT_DURATION = "7 days"

MAX_PHOTOS = 5


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive instants from clients are taken to be UTC"""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


NotificationType = Literal["new_bid", "item_won", "item_lost"]
EndingWindow = Literal["ending_soon", "ending_today", "this_week"]


class Document(BaseModel):
    """Base for stored documents; `id` is the last path segment"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = Field(None, description="Document id")

    @classmethod
    def from_document(cls, doc: dict):
        return cls.model_validate(doc)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"id"})


# ----------------------------
# Listings
# ----------------------------

class ItemDraft(BaseModel):
    """Admin input for a new listing. Business rules are checked by the catalog."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field("", alias="itemName")
    description: str = ""
    starting_bid: float = 0
    shipping_cost: float = 0
    category: Optional[str] = None
    condition: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    end_date_time: Optional[datetime] = None
    duration: Optional[str] = Field(None, description="1 day | 3 days | 7 days | 14 days | 30 days")

    @field_validator("end_date_time")
    @classmethod
    def end_in_utc(cls, value):
        return as_utc(value)


class ItemPatch(BaseModel):
    """Editable listing fields; derived fields cannot be patched"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: Optional[str] = Field(None, alias="itemName")
    description: Optional[str] = None
    starting_bid: Optional[float] = None
    shipping_cost: Optional[float] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    photos: Optional[List[str]] = None
    end_date_time: Optional[datetime] = None

    @field_validator("end_date_time")
    @classmethod
    def end_in_utc(cls, value):
        return as_utc(value)


class Item(Document):
    """Auction listing"""
    name: str = Field(..., alias="itemName")
    description: str
    starting_bid: float = Field(..., gt=0)
    shipping_cost: float = Field(0, ge=0)
    category: str
    condition: str
    photos: List[str] = Field(default_factory=list)
    end_date_time: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    status: str = Field(ACTIVE, description="active | sold | expired")
    total_bids: int = Field(0, ge=0, description="Distinct bidders")
    top_bidder_id: Optional[str] = None
    top_bid_amount: Optional[float] = None

    buyer_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    final_bid_amount: Optional[float] = None
    sold_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    @property
    def has_bids(self) -> bool:
        return self.top_bid_amount is not None

    @property
    def current_price(self) -> float:
        return self.top_bid_amount if self.has_bids else self.starting_bid


class Bid(Document):
    """A single bid; every placement is a new immutable record"""
    bidder_id: str
    bidder_name: Optional[str] = None
    bid_amount: float = Field(..., gt=0)
    bid_time: datetime

    def rank_key(self):
        return (-self.bid_amount, self.bid_time, self.id or "")


# ----------------------------
# Per-user bid records
# ----------------------------

class ActiveBidRecord(Document):
    item_id: str


class PastBidRecord(Document):
    item_id: str
    won: bool
    final_bid: Optional[float] = None


class ActiveBidView(BaseModel):
    item: Item
    user_bid_amount: float
    current_top_bid: Optional[float] = None
    is_top_bidder: bool


class PastBidView(BaseModel):
    item: Item
    user_bid_amount: Optional[float] = None
    final_amount: Optional[float] = None
    won: bool


# ----------------------------
# Users and notifications
# ----------------------------

class User(Document):
    """
    Users collection schema
    Collection name: "users", document id is the auth uid
    """
    uid: Optional[str] = None
    full_name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    is_admin: bool = Field(False, description="Routes the account to admin capabilities")
    is_active: bool = Field(True, description="Inactive accounts cannot sign in")
    profile_image: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or "User"


class Notification(Document):
    user_id: str
    type: NotificationType
    title: str
    message: str
    item_id: Optional[str] = None
    item_name: Optional[str] = None
    amount: Optional[float] = None
    is_read: bool = False
    created_at: Optional[datetime] = None
    priority: str = Field("medium", description="high | medium | low")


# ----------------------------
# Queries
# ----------------------------

class SearchFilters(BaseModel):
    status: str = ACTIVE
    category: Optional[str] = None
    condition: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    ending: Optional[EndingWindow] = None
    order_by: str = Field("ending", description="ending | price_asc | price_desc | newest | bids")
