#!/usr/bin/env python3
"""
Orders Example

A small FastAPI service whose handlers emit Pusher events:
- POST /orders          → "order-created" on the static "orders" channel
- PATCH /orders/{id}    → "order-updated" on "order-<id>" (channel builder),
                          skipped for dry runs (send guard)
- GET /orders/{id}      → no event (not declared)

Run from project root (needs PUSHER_APP_ID / PUSHER_KEY / PUSHER_SECRET):
    uvicorn examples.orders_example:app --reload

Clients send their Pusher socket id in ``x-pusher-sid`` so they do not
receive the echo of their own writes.
"""
import sys
from pathlib import Path

from fastapi import HTTPException, Request
from pydantic import BaseModel

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from pushcast.core.registry import (
    get_registry,
    pusher_channel,
    pusher_event,
    pusher_send_guard,
)
from pushcast.transport.http_app import build_dispatcher, create_app
from pushcast.transport.routing import PusherRouter


class OrderIn(BaseModel):
    user_id: str
    item: str
    quantity: int = 1


class Order(OrderIn):
    id: int


class OrderUpdated:
    """Event class; the descriptor name comes from ``event_name``."""
    event_name = "order-updated"


_orders: dict[int, Order] = {}

dispatcher = build_dispatcher(get_registry())
router = PusherRouter(dispatcher, prefix="/orders", tags=["orders"])


def order_channel(request: Request, event) -> str:
    return f"order-{request.path_params['order_id']}"


def skip_dry_runs(request: Request, response, event) -> bool:
    return response.status_code == 200 and request.headers.get("x-dry-run") != "1"


@router.post("", status_code=201)
@pusher_event("order-created")
@pusher_channel("orders")
async def create_order(order: OrderIn) -> Order:
    created = Order(id=len(_orders) + 1, **order.model_dump())
    _orders[created.id] = created
    return created


@router.patch("/{order_id}")
@pusher_event(OrderUpdated)
@pusher_channel(order_channel)
@pusher_send_guard(skip_dry_runs)
async def update_order(order_id: int, order: OrderIn) -> Order:
    if order_id not in _orders:
        raise HTTPException(status_code=404, detail="order not found")
    updated = Order(id=order_id, **order.model_dump())
    _orders[order_id] = updated
    return updated


@router.get("/{order_id}")
def get_order(order_id: int) -> Order:
    if order_id not in _orders:
        raise HTTPException(status_code=404, detail="order not found")
    return _orders[order_id]


app = create_app(dispatcher, routers=[router])
