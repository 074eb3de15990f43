import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from database import DocumentStore, create_document, listing_collection, listing_path
from errors import FieldError, ItemNotActive, NotFoundError, ValidationError, WriteConflict
from schemas import (
    ACTIVE, CATEGORIES, CONDITIONS, DEFAULT_DURATION, DURATIONS, MAX_PHOTOS, STATUSES,
    Item, ItemDraft, ItemPatch, SearchFilters,
)

logger = logging.getLogger(__name__)

ENDING_WINDOWS = [
    ("ending_soon", timedelta(hours=1)),
    ("ending_today", timedelta(hours=24)),
    ("this_week", timedelta(days=7)),
]

ORDERINGS = {
    "ending": (lambda i: i.end_date_time, False),
    "price_asc": (lambda i: i.current_price, False),
    "price_desc": (lambda i: i.current_price, True),
    "newest": (lambda i: i.created_at or datetime.min.replace(tzinfo=timezone.utc), True),
    "bids": (lambda i: i.total_bids, True),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ending_window(item: Item, now: datetime) -> Optional[str]:
    """Bucket a listing by how soon it ends; None once ended or more than a week out"""
    remaining = item.end_date_time - now
    if remaining <= timedelta(0):
        return None
    for name, bound in ENDING_WINDOWS:
        if remaining < bound:
            return name
    return None


def time_remaining(item: Item, now: datetime) -> str:
    remaining = item.end_date_time - now
    if remaining <= timedelta(0):
        return "Expired"
    days = remaining.days
    hours, rest = divmod(remaining.seconds, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def locate_item(store: DocumentStore, item_id: str) -> Tuple[str, Item]:
    """
    Find an item in whichever partition currently holds it. The partition
    is returned separately because an item whose transition has started
    but not finished still sits in `active` with a terminal status.
    """
    for partition in STATUSES:
        try:
            doc = store.get(listing_path(partition, item_id))
        except NotFoundError:
            continue
        return partition, Item.from_document(doc)
    raise NotFoundError(f"listings/*/{item_id}")


def _field_errors(exc: PydanticValidationError) -> List[FieldError]:
    return [
        FieldError(field=".".join(str(p) for p in err["loc"]) or "__root__", message=err["msg"])
        for err in exc.errors()
    ]


def parse_model(model, data):
    """Validate input into `model`, reporting failures as field-level ValidationError"""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_field_errors(e))


def validate_draft(draft: ItemDraft, now: datetime, check_end: bool = True) -> List[FieldError]:
    errors = []
    if not draft.name or len(draft.name.strip()) < 3:
        errors.append(FieldError(field="itemName", message="Item name must be at least 3 characters long"))
    if not draft.description or len(draft.description.strip()) < 10:
        errors.append(FieldError(field="description", message="Description must be at least 10 characters long"))
    if draft.starting_bid is None or draft.starting_bid <= 0:
        errors.append(FieldError(field="startingBid", message="Starting bid must be greater than 0"))
    if draft.shipping_cost is not None and draft.shipping_cost < 0:
        errors.append(FieldError(field="shippingCost", message="Shipping cost cannot be negative"))
    if not draft.category:
        errors.append(FieldError(field="category", message="Category is required"))
    elif draft.category not in CATEGORIES:
        errors.append(FieldError(field="category", message=f"Unknown category {draft.category!r}"))
    if not draft.condition:
        errors.append(FieldError(field="condition", message="Condition is required"))
    elif draft.condition not in CONDITIONS:
        errors.append(FieldError(field="condition", message=f"Unknown condition {draft.condition!r}"))
    if not draft.photos:
        errors.append(FieldError(field="photos", message="At least one photo is required"))
    elif len(draft.photos) > MAX_PHOTOS:
        errors.append(FieldError(field="photos", message=f"No more than {MAX_PHOTOS} photos are allowed"))
    if draft.end_date_time is None and draft.duration is not None and draft.duration not in DURATIONS:
        errors.append(FieldError(field="duration", message=f"Duration must be one of {', '.join(DURATIONS)}"))
    elif check_end and draft.end_date_time is not None and draft.end_date_time <= now:
        errors.append(FieldError(field="endDateTime", message="End date must be in the future"))
    return errors


class ListingCatalog:
    """Item metadata, validation and the queries behind the listing screens"""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def create(self, draft: Union[ItemDraft, Dict]) -> Item:
        draft = parse_model(ItemDraft, draft)
        now = self.clock()
        if draft.end_date_time is None and (draft.duration or DEFAULT_DURATION) in DURATIONS:
            draft = draft.model_copy(update={"end_date_time": now + DURATIONS[draft.duration or DEFAULT_DURATION]})
        errors = validate_draft(draft, now)
        if errors:
            raise ValidationError(errors)

        item = Item(
            name=draft.name.strip(),
            description=draft.description.strip(),
            starting_bid=draft.starting_bid,
            shipping_cost=draft.shipping_cost or 0,
            category=draft.category,
            condition=draft.condition,
            photos=list(draft.photos),
            end_date_time=draft.end_date_time,
            created_at=now,
            updated_at=now,
            status=ACTIVE,
            total_bids=0,
        )
        item.id = create_document(listing_collection(ACTIVE), item, store=self.store)
        logger.info("Listed item %s %r ending %s", item.id, item.name, item.end_date_time.isoformat())
        return item

    def get(self, item_id: str) -> Item:
        return locate_item(self.store, item_id)[1]

    def update(self, item_id: str, patch: Union[ItemPatch, Dict], repair: bool = False) -> Item:
        """
        Edit an item. Active items are fully re-validated. Sold and expired
        items may only be edited with `repair=True`, which skips the end
        date check since the auction is over anyway.
        """
        patch = parse_model(ItemPatch, patch)
        partition, item = locate_item(self.store, item_id)
        if item.status != ACTIVE and not repair:
            raise ItemNotActive(item_id, item.status)

        changes = patch.model_dump(exclude_unset=True)
        merged = parse_model(ItemDraft, {**item.model_dump(include=set(ItemPatch.model_fields)), **changes})
        errors = validate_draft(merged, self.clock(), check_end="end_date_time" in changes and item.status == ACTIVE)
        if errors:
            raise ValidationError(errors)

        doc_patch = patch.model_dump(by_alias=True, exclude_unset=True)
        for key in ("itemName", "description"):
            if key in doc_patch:
                doc_patch[key] = doc_patch[key].strip()
        doc_patch["updatedAt"] = self.clock()
        expected = {"status": ACTIVE} if item.status == ACTIVE else {}
        try:
            doc = self.store.conditional_update(listing_path(partition, item_id), expected, doc_patch)
        except (WriteConflict, NotFoundError):
            # Transitioned between our read and the write
            raise ItemNotActive(item_id, "transitioning")
        logger.info("Updated item %s fields %s", item_id, sorted(changes))
        return Item.from_document(doc)

    def delete(self, item_id: str) -> Item:
        """Administrative removal. Bid records and user pointers are left as they are."""
        partition, item = locate_item(self.store, item_id)
        self.store.delete(listing_path(partition, item_id))
        logger.warning("Deleted %s item %s", partition, item_id)
        return item

    def list(self, status: str = ACTIVE, category: Optional[str] = None, order_by: str = "ending") -> List[Item]:
        return self.search("", SearchFilters(status=status, category=category, order_by=order_by))

    def search(self, term: str = "", filters: Optional[SearchFilters] = None) -> List[Item]:
        filters = filters or SearchFilters()
        if filters.status not in STATUSES:
            raise ValidationError([FieldError(field="status", message=f"Status must be one of {', '.join(STATUSES)}")])
        if filters.order_by not in ORDERINGS:
            raise ValidationError([FieldError(field="order_by", message=f"Order must be one of {', '.join(ORDERINGS)}")])

        # A listing mid-transition still sits in the active partition with its new status
        store_filters = [("status", "==", filters.status)]
        if filters.category:
            store_filters.append(("category", "==", filters.category))
        if filters.condition:
            store_filters.append(("condition", "==", filters.condition))
        items = [Item.from_document(d) for d in self.store.query(listing_collection(filters.status), store_filters)]

        term = (term or "").strip().lower()
        if term:
            items = [
                i for i in items
                if term in i.name.lower() or term in i.category.lower() or term in i.description.lower()
            ]
        if filters.min_price is not None:
            items = [i for i in items if i.current_price >= filters.min_price]
        if filters.max_price is not None:
            items = [i for i in items if i.current_price <= filters.max_price]
        if filters.ending:
            now = self.clock()
            bound = dict(ENDING_WINDOWS)[filters.ending]
            items = [i for i in items if timedelta(0) < i.end_date_time - now < bound]

        key, reverse = ORDERINGS[filters.order_by]
        items.sort(key=key, reverse=reverse)
        return items

    def counts(self) -> Dict[str, int]:
        return {status: len(self.store.query(listing_collection(status))) for status in STATUSES}
