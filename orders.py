"""
Orders and the order/payment state machine.

    PENDING --(PayNow paid)--> PAID --(admin completes)--> COMPLETED
    PENDING --(admin completes a cash order)------------> COMPLETED
    PENDING / PAID --(admin rejects, customer cancels)--> CANCELLED

COMPLETED and CANCELLED are terminal. Every transition is written as a
compare-and-set on the current status, so of two concurrent transitions on
the same order only one can win.
"""
import logging
import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from auth import get_current_user, require_admin
from database import db, create_document
from helpers import (
    analytics_cache,
    generate_order_number,
    ok,
    round_money,
    serialize_doc,
    serialize_value,
    to_object_id,
    utcnow,
)
from qr import QR_EXPIRY_MINUTES, seconds_remaining
from schemas import Order as OrderSchema, OrderItem, OrderStatus, PaymentType
from stock import release_stock, reserve_stock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}


class OrderStateError(Exception):
    """Raised when an order cannot move to the requested status."""


class OrderConflict(Exception):
    """Raised when the order changed status between read and write."""


def check_transition(order: dict, target: OrderStatus) -> None:
    current = OrderStatus(order["status"])
    payment_type = PaymentType(order["payment_type"])
    if target not in TRANSITIONS[current]:
        raise OrderStateError(f"Cannot move order from {current.value} to {target.value}")
    if target == OrderStatus.PAID and payment_type != PaymentType.PAYNOW:
        raise OrderStateError("Only PayNow orders are paid online")
    if target == OrderStatus.COMPLETED and payment_type == PaymentType.PAYNOW and current != OrderStatus.PAID:
        raise OrderStateError("PayNow order must be paid first")


def transition_order(order: dict, target: OrderStatus, **fields: Any) -> dict:
    """Move `order` to `target`, applying the side effects of the new state.

    Entering CANCELLED releases the reserved stock and retires the QR code;
    entering COMPLETED stamps completion and expires the QR code.
    """
    check_transition(order, target)
    now = utcnow()
    updates: Dict[str, Any] = {"status": target.value, "updated_at": now, **fields}
    if target == OrderStatus.PAID:
        updates.setdefault("paid_at", now)
    elif target == OrderStatus.COMPLETED:
        updates["completed_at"] = now
        if not order.get("paid_at"):
            updates["paid_at"] = now
    elif target == OrderStatus.CANCELLED:
        updates["cancelled_at"] = now

    result = db["order"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": updates})
    if result.modified_count == 0:
        raise OrderConflict("Order status changed concurrently. Reload and try again.")
    analytics_cache.clear("analytics:")

    order_id = str(order["_id"])
    if target == OrderStatus.CANCELLED:
        release_stock(order.get("items", []))
        db["payment_qr"].update_one({"order_id": order_id}, {"$set": {"is_used": True, "updated_at": now}})
    elif target == OrderStatus.COMPLETED:
        db["payment_qr"].update_one(
            {"order_id": order_id},
            {"$set": {"is_used": True, "expires_at": now, "updated_at": now}},
        )
    logger.info("Order %s moved %s -> %s", order.get("order_number"), order["status"], target.value)
    return db["order"].find_one({"_id": order["_id"]})


# Lookups and views
def get_order_or_404(order_id: str, user_id: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {"_id": to_object_id(order_id)}
    if user_id is not None:
        query["user_id"] = user_id
    order = db["order"].find_one(query)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def qr_status(order_id: str) -> Optional[dict]:
    qr = db["payment_qr"].find_one({"order_id": order_id})
    if not qr:
        return None
    return {
        "payment_type": qr["payment_type"],
        "expires_at": serialize_value(qr.get("expires_at")),
        "is_used": qr.get("is_used", False),
        "has_qr": bool(qr.get("qr_data")),
        "seconds_remaining": seconds_remaining(qr.get("expires_at")),
    }


def order_view(order: dict, include_user: bool = False, include_qr: bool = False) -> dict:
    data = serialize_doc(order)
    data["total_items"] = sum(int(i["quantity"]) for i in order.get("items", []))
    if include_user:
        user = db["user"].find_one({"_id": to_object_id(order["user_id"])})
        data["user"] = {"id": str(user["_id"]), "name": user["name"], "email": user["email"]} if user else None
    if include_qr:
        data["payment_qr"] = qr_status(str(order["_id"]))
    return data


def next_step(order_id: str, payment_type: str) -> dict:
    if payment_type == PaymentType.CASH.value:
        return {
            "action": "Generate QR Code",
            "url": f"/api/orders/generate-qr/{order_id}",
            "note": f"QR code expires in {QR_EXPIRY_MINUTES} minutes",
        }
    return {
        "action": "Complete PayNow Payment",
        "url": f"/api/orders/pay/paynow/{order_id}",
        "note": "After payment, QR code will be generated automatically",
    }


# Request models
class CheckoutRequest(BaseModel):
    payment_type: PaymentType = PaymentType.CASH


class RejectRequest(BaseModel):
    reason: Optional[str] = None


# Customer routes
@router.post("/checkout", status_code=201)
def checkout(req: Optional[CheckoutRequest] = None, user=Depends(get_current_user)):
    req = req or CheckoutRequest()
    user_id = str(user["_id"])
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise HTTPException(status_code=400, detail="Cart is empty")

    product_ids = [to_object_id(i["product_id"]) for i in cart["items"]]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": product_ids}})}

    items: List[dict] = []
    for line in cart["items"]:
        product = products.get(line["product_id"])
        if not product:
            raise HTTPException(status_code=400, detail=f"Product {line['product_id']} is no longer available")
        quantity = int(line["quantity"])
        if int(product.get("stock", 0)) < quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product['name']}")
        items.append(OrderItem(
            product_id=line["product_id"],
            name=product["name"],
            price=product["price"],
            quantity=quantity,
            subtotal=round_money(product["price"] * quantity),
        ).model_dump())

    total_amount = round_money(sum(i["subtotal"] for i in items))
    reserve_stock(items)
    order = OrderSchema(
        order_number=generate_order_number(),
        user_id=user_id,
        payment_type=req.payment_type,
        total_amount=total_amount,
        items=items,
    )
    try:
        order_id = create_document("order", order)
    except Exception:
        release_stock(items)
        raise
    analytics_cache.clear("analytics:")
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": [], "updated_at": utcnow()}})
    logger.info("Order %s created for %s (%s, %.2f)", order.order_number, user["email"], order.payment_type, total_amount)

    created = order_view(db["order"].find_one({"_id": to_object_id(order_id)}))
    created["next_step"] = next_step(order_id, order.payment_type)
    return ok(created, "Order created successfully")


@router.get("")
def list_my_orders(user=Depends(get_current_user)):
    orders = db["order"].find({"user_id": str(user["_id"])}).sort("created_at", -1)
    return ok([order_view(o, include_qr=True) for o in orders], "Orders retrieved")


@router.post("/cancel/{order_id}")
def cancel_order(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id, str(user["_id"]))
    if order["status"] != OrderStatus.PENDING.value:
        raise HTTPException(status_code=400, detail="Only pending orders can be cancelled")
    updated = transition_order(order, OrderStatus.CANCELLED, cancel_reason="Cancelled by customer")
    return ok(order_view(updated), "Order cancelled")


# Admin routes
@router.get("/admin/all")
def list_all_orders(
    status: Optional[OrderStatus] = None,
    payment_type: Optional[PaymentType] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin=Depends(require_admin),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status.value
    if payment_type:
        query["payment_type"] = payment_type.value
    total = db["order"].count_documents(query)
    orders = db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({
        "orders": [order_view(o, include_user=True) for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }, "Orders retrieved")


@router.get("/admin/stats")
def order_stats(admin=Depends(require_admin)):
    counts = {s.value.lower(): db["order"].count_documents({"status": s.value}) for s in OrderStatus}
    counts["total"] = db["order"].count_documents({})
    revenue = sum(
        float(o.get("total_amount", 0))
        for o in db["order"].find({"status": {"$in": [OrderStatus.PAID.value, OrderStatus.COMPLETED.value]}})
    )
    return ok({"orders": counts, "revenue": round_money(revenue)}, "Order stats retrieved")


@router.patch("/admin/complete/{order_id}")
def complete_order(order_id: str, admin=Depends(require_admin)):
    order = get_order_or_404(order_id)
    if order["status"] == OrderStatus.COMPLETED.value:
        raise HTTPException(status_code=400, detail="Order already completed")
    updated = transition_order(order, OrderStatus.COMPLETED)
    data = order_view(updated)
    data["qr_status"] = "EXPIRED"
    return ok(data, "Order completed. QR code expired.")


@router.patch("/admin/reject/{order_id}")
def reject_order(order_id: str, req: Optional[RejectRequest] = None, admin=Depends(require_admin)):
    order = get_order_or_404(order_id)
    if order["status"] == OrderStatus.COMPLETED.value:
        raise HTTPException(status_code=400, detail="Cannot reject completed order")
    if order["status"] == OrderStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Order already cancelled")
    reason = (req.reason if req and req.reason else None) or "Rejected by admin"
    updated = transition_order(order, OrderStatus.CANCELLED, cancel_reason=reason)
    return ok(order_view(updated), "Order rejected")


@router.get("/{order_id}")
def get_my_order(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id, str(user["_id"]))
    return ok(order_view(order, include_qr=True), "Order retrieved")
