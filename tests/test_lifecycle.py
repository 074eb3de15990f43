from datetime import timedelta

import pytest

from conftest import START
from database import bidders_path, listing_collection, listing_path
from errors import ItemNotActive, NoBidsToSell, NothingToResume, NotFoundError, PartialFailure, StoreUnavailable
from lifecycle import ACTIVE_RECORD, FLIP, NOTIFY, PAST_RECORD
from schemas import ACTIVE, EXPIRED, SOLD


@pytest.fixture
def auction(market, listing, bidders, clock):
    """An item with bids A=120 then B=150"""
    item = listing(startingBid=100, endDateTime=START + timedelta(hours=1))
    market.ledger.place_bid(item.id, "userA", 120)
    clock.advance(minutes=1)
    market.ledger.place_bid(item.id, "userB", 150)
    clock.advance(minutes=1)
    return item


def test_expire_moves_item_and_bids(market, store, auction, clock):
    clock.advance(hours=1)

    result = market.lifecycle.expire(auction.id)

    assert result.ok and result.completed
    assert result.winner_id == "userB"
    assert result.final_amount == 150
    doc = store.get(listing_path(EXPIRED, auction.id))
    assert doc["status"] == EXPIRED
    assert doc["topBidderId"] == "userB"
    assert doc["finalBidAmount"] == 150
    assert doc["expiredAt"] == clock.now
    assert len(store.query(bidders_path(EXPIRED, auction.id))) == 2
    assert not store.exists(listing_path(ACTIVE, auction.id))
    assert store.query(bidders_path(ACTIVE, auction.id)) == []


def test_expire_settles_every_bidder(market, store, gateway, auction):
    gateway.sent.clear()

    market.lifecycle.expire(auction.id)

    assert store.get(f"users/userB/past/{auction.id}")["won"] is True
    assert store.get(f"users/userA/past/{auction.id}")["won"] is False
    assert store.get(f"users/userA/past/{auction.id}")["finalBid"] == 150
    assert not store.exists(f"users/userA/active/{auction.id}")
    assert not store.exists(f"users/userB/active/{auction.id}")
    assert gateway.of_type("item_won") == [("userB", {"item_id": auction.id, "item_name": "Vintage Camera", "amount": 150})]
    assert [user for user, _ in gateway.of_type("item_lost")] == ["userA"]


def test_bidder_with_several_bids_is_notified_once(market, gateway, auction, clock):
    market.ledger.place_bid(auction.id, "userA", 175)
    gateway.sent.clear()

    result = market.lifecycle.expire(auction.id)

    assert sorted(result.notified) == ["userA", "userB"]
    assert len(gateway.sent) == 2
    assert result.winner_id == "userA"


def test_expire_without_bids(market, store, gateway, listing):
    item = listing()

    result = market.lifecycle.expire(item.id)

    assert result.ok and result.completed
    assert result.winner_id is None
    assert gateway.sent == []
    assert store.get(listing_path(EXPIRED, item.id))["topBidAmount"] is None


def test_sweep_expires_only_due_items(market, listing, clock):
    due = listing(endDateTime=START + timedelta(hours=1))
    later = listing(endDateTime=START + timedelta(days=2))
    clock.advance(hours=2)

    assert market.lifecycle.sweep_expired() == [due.id]
    assert market.catalog.get(due.id).status == EXPIRED
    assert market.catalog.get(later.id).status == ACTIVE


def test_sweep_is_idempotent(market, gateway, auction, clock):
    clock.advance(hours=2)

    first = market.lifecycle.sweep()
    sent = len(gateway.sent)
    second = market.lifecycle.sweep()

    assert [r.item_id for r in first] == [auction.id]
    assert second == []
    assert len(gateway.sent) == sent


def test_item_ending_exactly_now_is_due(market, listing, clock):
    item = listing(endDateTime=START + timedelta(hours=1))
    clock.advance(hours=1)

    assert market.lifecycle.sweep_expired() == [item.id]


def test_mark_sold_to_chosen_bid(market, store, gateway, auction):
    first_bid = next(b for b in market.ledger.bids(auction.id) if b.bidder_id == "userA")
    gateway.sent.clear()

    result = market.lifecycle.mark_sold(auction.id, first_bid.id)

    assert result.ok
    assert (result.winner_id, result.final_amount) == ("userA", 120)
    sold = market.catalog.get(auction.id)
    assert sold.status == SOLD
    assert sold.buyer_id == "userA"
    assert sold.buyer_name == "Alice Archer"
    assert sold.buyer_email == "alice@example.com"
    assert sold.final_bid_amount == 120
    assert len(store.query(bidders_path(SOLD, auction.id))) == 2
    assert [u for u, _ in gateway.of_type("item_won")] == ["userA"]
    assert [u for u, _ in gateway.of_type("item_lost")] == ["userB"]


def test_mark_sold_accepts_bid_object(market, auction):
    top = market.ledger.top_bid(auction.id)

    result = market.lifecycle.mark_sold(auction.id, top)

    assert result.winner_id == "userB"


def test_mark_sold_without_bids(market, listing):
    item = listing()

    with pytest.raises(NoBidsToSell):
        market.lifecycle.mark_sold(item.id, "anything")
    assert market.catalog.get(item.id).status == ACTIVE


def test_mark_sold_unknown_bid(market, auction):
    with pytest.raises(NotFoundError):
        market.lifecycle.mark_sold(auction.id, "no-such-bid")
    assert market.catalog.get(auction.id).status == ACTIVE


def test_second_transition_is_rejected(market, auction):
    market.lifecycle.expire(auction.id)

    with pytest.raises(ItemNotActive):
        market.lifecycle.mark_sold(auction.id, market.ledger.top_bid(auction.id))
    with pytest.raises(ItemNotActive):
        market.lifecycle.expire(auction.id)


def test_bid_racing_the_flip_is_rejected(market, store, auction):
    raced = []

    def bid_after_flip(collection):
        if collection != bidders_path(ACTIVE, auction.id):
            return False
        store.before_query = None
        try:
            market.ledger.place_bid(auction.id, "userC", 500)
        except ItemNotActive as e:
            raced.append(e)
        return True

    store.before_query = bid_after_flip
    result = market.lifecycle.expire(auction.id)

    assert len(raced) == 1
    assert result.winner_id == "userB"
    assert result.final_amount == 150


def test_bid_landing_before_the_flip_is_counted(market, store, auction):
    def bid_before_flip(path, expected, patch):
        market.ledger.place_bid(auction.id, "userC", 500)

    store.before_update = bid_before_flip
    result = market.lifecycle.expire(auction.id)

    assert result.winner_id == "userC"
    assert result.final_amount == 500
    assert store.get(f"users/userC/past/{auction.id}")["won"] is True


def test_notification_failure_is_partial_and_retryable(market, store, gateway, auction):
    gateway.fail_for.add("userA")

    result = market.lifecycle.expire(auction.id)

    assert not result.ok
    assert result.flipped and not result.completed
    assert [(f.step, f.target) for f in result.failures] == [(NOTIFY, "userA")]
    # bidder data stays in place until every step has gone through
    assert store.exists(listing_path(ACTIVE, auction.id))
    assert store.get(listing_path(ACTIVE, auction.id))["status"] == EXPIRED
    with pytest.raises(PartialFailure) as exc_info:
        result.raise_for_failures()
    assert exc_info.value.result is result

    gateway.fail_for.clear()
    market.lifecycle.retry(result)

    assert result.ok and result.completed
    assert "userA" in result.notified
    assert not store.exists(listing_path(ACTIVE, auction.id))
    assert len(gateway.of_type("item_lost")) == 1


def test_past_record_failure_keeps_active_pointer(market, store, auction):
    store.fail_prefixes.add("users/userA/past")

    result = market.lifecycle.expire(auction.id)

    assert [(f.step, f.target) for f in result.failures] == [(PAST_RECORD, "userA")]
    assert store.exists(f"users/userA/active/{auction.id}")
    assert not store.exists(f"users/userB/active/{auction.id}")

    store.fail_prefixes.clear()
    market.lifecycle.retry(result)

    assert result.completed
    assert store.get(f"users/userA/past/{auction.id}")["won"] is False
    assert not store.exists(f"users/userA/active/{auction.id}")


def test_active_pointer_failure_is_retried(market, store, auction):
    store.fail_prefixes.add("users/userB/active")

    result = market.lifecycle.expire(auction.id)

    assert [(f.step, f.target) for f in result.failures] == [(ACTIVE_RECORD, "userB")]
    assert market.bids.overlapping_items("userB") == {auction.id}

    store.fail_prefixes.clear()
    market.lifecycle.retry(result)

    assert result.completed
    assert market.bids.overlapping_items("userB") == set()


def test_partially_failed_item_is_skipped_by_sweep(market, gateway, auction, clock):
    gateway.fail_for.add("userB")
    clock.advance(hours=2)

    first = market.lifecycle.sweep()
    second = market.lifecycle.sweep()

    assert not first[0].ok
    assert second == []
    with pytest.raises(ItemNotActive):
        market.ledger.place_bid(auction.id, "userC", 1000)


def test_retry_needs_a_flipped_result(market, store, listing, clock, monkeypatch):
    item = listing(endDateTime=START + timedelta(hours=1))
    clock.advance(hours=2)

    def unavailable(path, expected, patch):
        raise StoreUnavailable("store offline")

    monkeypatch.setattr(store, "conditional_update", unavailable)
    results = market.lifecycle.sweep()

    assert [(r.item_id, r.flipped) for r in results] == [(item.id, False)]
    assert results[0].failures[0].step == FLIP
    with pytest.raises(ItemNotActive):
        market.lifecycle.retry(results[0])


def test_sweep_skips_item_deleted_mid_sweep(market, store, listing, clock, monkeypatch):
    gone = listing(endDateTime=START + timedelta(hours=1))
    kept = listing(endDateTime=START + timedelta(hours=2))
    clock.advance(hours=3)
    candidates = store.query

    def query_then_delete(collection, *args, **kwargs):
        docs = candidates(collection, *args, **kwargs)
        if collection == listing_collection(ACTIVE):
            store.delete(listing_path(ACTIVE, gone.id))
        return docs

    monkeypatch.setattr(store, "query", query_then_delete)

    assert market.lifecycle.sweep_expired() == [kept.id]
    assert market.catalog.get(kept.id).status == EXPIRED


def test_failed_steps_are_kept_on_the_listing(market, store, gateway, auction):
    gateway.fail_for.add("userA")

    market.lifecycle.expire(auction.id)

    assert store.get(listing_path(ACTIVE, auction.id))["pendingSteps"] == [
        {"step": NOTIFY, "target": "userA", "error": "push to userA refused"},
    ]


def test_resume_finishes_recorded_steps(market, store, gateway, auction):
    gateway.fail_for.add("userA")
    market.lifecycle.expire(auction.id)

    again = market.lifecycle.resume(auction.id)
    assert [(f.step, f.target) for f in again.failures] == [(NOTIFY, "userA")]
    assert store.get(listing_path(ACTIVE, auction.id))["pendingSteps"][0]["target"] == "userA"

    gateway.fail_for.clear()
    sent = len(gateway.sent)
    result = market.lifecycle.resume(auction.id)

    assert result.ok and result.completed
    assert result.winner_id == "userB"
    assert [user for user, _, _ in gateway.sent[sent:]] == ["userA"]
    assert not store.exists(listing_path(ACTIVE, auction.id))
    assert market.catalog.get(auction.id).status == EXPIRED


def test_resume_without_recorded_steps_does_not_renotify(market, store, gateway, auction):
    store.fail_prefixes.add("users/userA/past")
    market.lifecycle.expire(auction.id)
    store.conditional_update(listing_path(ACTIVE, auction.id), {}, {"pendingSteps": None})
    store.fail_prefixes.clear()
    sent = len(gateway.sent)

    result = market.lifecycle.resume(auction.id)

    assert result.completed
    assert len(gateway.sent) == sent
    assert store.get(f"users/userA/past/{auction.id}")["won"] is False
    assert market.bids.overlapping_items("userA") == set()
    assert len(store.query(bidders_path(EXPIRED, auction.id))) == 2


def test_resume_completes_a_sale(market, gateway, auction):
    chosen = next(b for b in market.ledger.bids(auction.id) if b.bidder_id == "userA")
    gateway.fail_for.add("userB")
    market.lifecycle.mark_sold(auction.id, chosen.id)
    gateway.fail_for.clear()

    result = market.lifecycle.resume(auction.id)

    assert (result.outcome, result.winner_id, result.final_amount) == (SOLD, "userA", 120)
    assert result.completed
    assert [user for user, _ in gateway.of_type("item_lost")] == ["userB"]
    assert market.catalog.get(auction.id).buyer_id == "userA"


def test_resume_of_open_or_finished_items(market, auction):
    with pytest.raises(NothingToResume):
        market.lifecycle.resume(auction.id)

    market.lifecycle.expire(auction.id)
    result = market.lifecycle.resume(auction.id)

    assert result.ok and result.completed
    assert result.winner_id == "userB"
