import asyncio
import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from catalog import ending_window, parse_model, time_remaining
from config import configure_logging, get_settings
from database import db
from errors import (
    AccountInactive, AuctionError, BidTooLow, NotFoundError, StateConflict, StoreUnavailable, ValidationError,
)
from lifecycle import TransitionResult
from marketplace import Marketplace
from schemas import ACTIVE, Item, SearchFilters
from users import ADMIN

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Auction Marketplace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

market = Marketplace(db)


def get_market() -> Marketplace:
    return market


def current_user_id(x_user_id: str = Header(..., description="Signed-in user's uid")) -> str:
    return x_user_id


def require_admin(user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)) -> str:
    try:
        role = m.users.role_for(user_id)
    except (NotFoundError, AccountInactive):
        raise HTTPException(status_code=403, detail="Only administrators can do this")
    if role != ADMIN:
        raise HTTPException(status_code=403, detail="Only administrators can do this")
    return user_id


# ----------------------------
# Error mapping
# ----------------------------

@app.exception_handler(ValidationError)
def validation_error(request, exc: ValidationError):
    return JSONResponse(status_code=422, content={
        "code": exc.code,
        "detail": "Validation Error",
        "errors": [e.model_dump() for e in exc.errors],
    })


@app.exception_handler(NotFoundError)
def not_found(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"code": exc.code, "detail": exc.message})


@app.exception_handler(StateConflict)
def state_conflict(request, exc: StateConflict):
    content = {"code": exc.code, "detail": exc.message}
    if isinstance(exc, BidTooLow):
        content["minimum"] = exc.minimum
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(StoreUnavailable)
def store_unavailable(request, exc: StoreUnavailable):
    logger.error("Store unavailable on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=503, content={
        "code": exc.code,
        "detail": "Something went wrong, please try again",
    })


def item_out(item: Item, m: Marketplace) -> Dict[str, Any]:
    now = m.clock()
    data = item.model_dump(mode="json", by_alias=True)
    data["currentPrice"] = item.current_price
    data["timeLeft"] = time_remaining(item, now) if item.status == ACTIVE else item.status.capitalize()
    data["endingWindow"] = ending_window(item, now) if item.status == ACTIVE else None
    return data


def transition_out(result: TransitionResult) -> JSONResponse:
    body = {
        "item_id": result.item_id,
        "outcome": result.outcome,
        "winner_id": result.winner_id,
        "final_amount": result.final_amount,
        "completed": result.completed,
        "notified": result.notified,
        "failures": [asdict(f) for f in result.failures],
    }
    return JSONResponse(status_code=200 if result.ok else 207, content=body)


# ----------------------------
# Health
# ----------------------------

@app.get("/")
def read_root():
    return {"message": "Auction marketplace API is running"}


@app.get("/test")
def test_database(m: Marketplace = Depends(get_market)):
    response = {
        "backend": "✅ Running",
        "store": m.store.name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = m.store.collections()[:10]
        response["connection_status"] = "Connected"
    except AuctionError as e:
        response["connection_status"] = f"⚠️  Error: {str(e)[:50]}"
    return response


# ----------------------------
# Listings
# ----------------------------

@app.get("/items")
def list_items(
    status: str = ACTIVE,
    q: str = "",
    category: Optional[str] = None,
    condition: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    ending: Optional[str] = Query(None, description="ending_soon | ending_today | this_week"),
    order_by: str = "ending",
    m: Marketplace = Depends(get_market),
):
    filters = parse_model(SearchFilters, dict(
        status=status, category=category, condition=condition,
        min_price=min_price, max_price=max_price, ending=ending, order_by=order_by,
    ))
    return [item_out(i, m) for i in m.catalog.search(q, filters)]


@app.get("/items/{item_id}")
def get_item(item_id: str, m: Marketplace = Depends(get_market)):
    item = m.catalog.get(item_id)
    data = item_out(item, m)
    data["bids"] = [b.model_dump(mode="json", by_alias=True) for b in m.ledger.ranked_bids(item_id)]
    return data


@app.get("/items/{item_id}/bids")
def list_bids(item_id: str, m: Marketplace = Depends(get_market)):
    return [b.model_dump(mode="json", by_alias=True) for b in m.ledger.ranked_bids(item_id)]


class PlaceBidRequest(BaseModel):
    amount: float
    bidder_name: Optional[str] = None


@app.post("/items/{item_id}/bids")
def place_bid(item_id: str, payload: PlaceBidRequest,
              user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)):
    receipt = m.ledger.place_bid(item_id, user_id, payload.amount, bidder_name=payload.bidder_name)
    return asdict(receipt)


@app.post("/admin/items", status_code=201)
def create_item(payload: Dict[str, Any] = Body(...), _: str = Depends(require_admin),
                m: Marketplace = Depends(get_market)):
    return item_out(m.catalog.create(payload), m)


@app.patch("/admin/items/{item_id}")
def update_item(item_id: str, payload: Dict[str, Any] = Body(...), repair: bool = False,
                _: str = Depends(require_admin), m: Marketplace = Depends(get_market)):
    return item_out(m.catalog.update(item_id, payload, repair=repair), m)


@app.delete("/admin/items/{item_id}")
def delete_item(item_id: str, _: str = Depends(require_admin), m: Marketplace = Depends(get_market)):
    item = m.catalog.delete(item_id)
    return {"id": item.id, "deleted": True}


class SellRequest(BaseModel):
    bid_id: str


@app.post("/admin/items/{item_id}/sell")
def sell_item(item_id: str, payload: SellRequest, _: str = Depends(require_admin),
              m: Marketplace = Depends(get_market)):
    return transition_out(m.lifecycle.mark_sold(item_id, payload.bid_id))


@app.post("/admin/items/{item_id}/resume")
def resume_transition(item_id: str, _: str = Depends(require_admin), m: Marketplace = Depends(get_market)):
    return transition_out(m.lifecycle.resume(item_id))


@app.post("/admin/sweep")
def sweep(_: str = Depends(require_admin), m: Marketplace = Depends(get_market)):
    results = m.lifecycle.sweep()
    failed = [r for r in results if not r.ok]
    return JSONResponse(status_code=207 if failed else 200, content={
        "expired": [r.item_id for r in results if r.flipped],
        "failures": {r.item_id: [asdict(f) for f in r.failures] for r in failed},
    })


# ----------------------------
# Bidder views
# ----------------------------

@app.get("/me/bids/active")
def my_active_bids(user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)):
    return [
        {**v.model_dump(mode="json", exclude={"item"}), "item": item_out(v.item, m)}
        for v in m.bids.active_bids_for(user_id)
    ]


@app.get("/me/bids/past")
def my_past_bids(user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)):
    return [
        {**v.model_dump(mode="json", exclude={"item"}), "item": item_out(v.item, m)}
        for v in m.bids.past_bids_for(user_id)
    ]


@app.get("/me/notifications")
def my_notifications(user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)):
    notifications = m.inbox.list_for(user_id)
    return {
        "unread": sum(1 for n in notifications if not n.is_read),
        "notifications": [n.model_dump(mode="json", by_alias=True) for n in notifications],
    }


@app.post("/me/notifications/{notification_id}/read")
def read_notification(notification_id: str, user_id: str = Depends(current_user_id),
                      m: Marketplace = Depends(get_market)):
    return m.inbox.mark_read(notification_id, user_id).model_dump(mode="json", by_alias=True)


@app.post("/me/notifications/read-all")
def read_all_notifications(user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)):
    return {"marked": m.inbox.mark_all_read(user_id)}


# ----------------------------
# Users and admin
# ----------------------------

class RegisterRequest(BaseModel):
    full_name: str
    email: str


@app.post("/users", status_code=201)
def register(payload: RegisterRequest, user_id: str = Depends(current_user_id),
             m: Marketplace = Depends(get_market)):
    user = m.users.register(user_id, payload.full_name, payload.email)
    return user.model_dump(mode="json", by_alias=True)


@app.get("/me/role")
def my_role(user_id: str = Depends(current_user_id), m: Marketplace = Depends(get_market)):
    return {"role": m.users.role_for(user_id)}


@app.get("/admin/users")
def list_users(q: str = "", _: str = Depends(require_admin), m: Marketplace = Depends(get_market)):
    return [u.model_dump(mode="json", by_alias=True) for u in m.users.search(q)]


class ActiveRequest(BaseModel):
    is_active: bool


@app.post("/admin/users/{uid}/active")
def set_user_active(uid: str, payload: ActiveRequest, _: str = Depends(require_admin),
                    m: Marketplace = Depends(get_market)):
    return m.users.set_active(uid, payload.is_active).model_dump(mode="json", by_alias=True)


@app.get("/admin/dashboard")
def dashboard(_: str = Depends(require_admin), m: Marketplace = Depends(get_market)):
    return m.dashboard()


# ----------------------------
# Periodic expiry sweep
# ----------------------------

async def sweep_forever(interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(market.lifecycle.sweep)
        except Exception:
            # One bad run must not stop the schedule
            logger.exception("Scheduled sweep failed")


@app.on_event("startup")
async def startup():
    if settings.sweep_interval_seconds > 0:
        logger.info("Sweeping expired auctions every %ds", settings.sweep_interval_seconds)
        app.state.sweeper = asyncio.create_task(sweep_forever(settings.sweep_interval_seconds))


@app.on_event("shutdown")
async def shutdown():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
