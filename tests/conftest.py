from datetime import datetime, timedelta, timezone

import pytest

from database import MemoryStore
from errors import StoreUnavailable
from marketplace import Marketplace
from notifications import NotificationGateway

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingGateway(NotificationGateway):
    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def emit(self, user_id, type, payload):
        if user_id in self.fail_for:
            raise RuntimeError(f"push to {user_id} refused")
        self.sent.append((user_id, type, dict(payload)))
        return str(len(self.sent))

    def of_type(self, type):
        return [(user_id, payload) for user_id, t, payload in self.sent if t == type]


class FlakyStore(MemoryStore):
    """MemoryStore that can fail writes under given path prefixes and run hooks"""

    def __init__(self):
        super().__init__()
        self.fail_prefixes = set()
        self.before_update = None
        self.before_query = None
        self.before_set = None

    def _check(self, path):
        for prefix in self.fail_prefixes:
            if path.startswith(prefix):
                raise StoreUnavailable(f"injected failure on {path}")

    def set(self, path, data):
        if self.before_set is not None and path.startswith(self.before_set[0]):
            (_, hook), self.before_set = self.before_set, None
            hook(path)
        self._check(path)
        super().set(path, data)

    def delete(self, path):
        self._check(path)
        super().delete(path)

    def conditional_update(self, path, expected, patch):
        if self.before_update is not None:
            hook, self.before_update = self.before_update, None
            hook(path, expected, patch)
        return super().conditional_update(path, expected, patch)

    def query(self, collection, filters=None, order_by=None, limit=None):
        if self.before_query is not None and self.before_query(collection):
            self.before_query = None
        return super().query(collection, filters, order_by, limit)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def market(store, gateway, clock):
    return Marketplace(store, gateway, clock, bid_retry_limit=5)


def make_draft(**overrides):
    draft = {
        "itemName": "Vintage Camera",
        "description": "A working 1970s rangefinder with its original case.",
        "startingBid": 100.0,
        "shippingCost": 12.5,
        "category": "Electronics",
        "condition": "Good",
        "photos": ["https://img.example.com/camera-1.jpg"],
        "endDateTime": START + timedelta(days=3),
    }
    draft.update(overrides)
    return draft


@pytest.fixture
def listing(market):
    def create(**overrides):
        return market.catalog.create(make_draft(**overrides))
    return create


@pytest.fixture
def bidders(market):
    market.users.register("userA", "Alice Archer", "alice@example.com")
    market.users.register("userB", "Bob Baker", "bob@example.com")
    market.users.register("userC", "Cara Cole", "cara@example.com")
    return ["userA", "userB", "userC"]
