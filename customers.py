import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from auth import require_admin
from database import db
from helpers import as_utc, ok, round_money, serialize_doc, serialize_value, to_object_id, utcnow
from orders import order_view
from schemas import OrderStatus, Role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customers", tags=["customers"])

SETTLED_STATUSES = [OrderStatus.PAID.value, OrderStatus.COMPLETED.value]


def customer_summary(customer: dict) -> Dict[str, Any]:
    user_id = str(customer["_id"])
    orders = list(db["order"].find({"user_id": user_id}).sort("created_at", -1))
    settled = [o for o in orders if o["status"] in SETTLED_STATUSES]
    last = orders[0] if orders else None
    data = serialize_doc(customer)
    data.update({
        "total_orders": len(orders),
        "completed_orders": len(settled),
        "total_spent": round_money(sum(float(o["total_amount"]) for o in settled)),
        "last_order": {
            "order_number": last["order_number"],
            "amount": last["total_amount"],
            "date": serialize_value(last.get("created_at")),
        } if last else None,
    })
    return data


@router.get("")
def list_customers(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin=Depends(require_admin),
):
    query: Dict[str, Any] = {"role": Role.CUSTOMER.value}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    total = db["user"].count_documents(query)
    customers = db["user"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return ok({
        "customers": [customer_summary(c) for c in customers],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }, "Customers retrieved successfully")


@router.get("/stats")
def customer_stats(admin=Depends(require_admin)):
    customers = list(db["user"].find({"role": Role.CUSTOMER.value}))
    now = utcnow()
    month_start = datetime(now.year, now.month, 1, tzinfo=now.tzinfo)

    spend: Dict[str, Dict[str, Any]] = {}
    for order in db["order"].find({"status": {"$in": SETTLED_STATUSES}}):
        entry = spend.setdefault(order["user_id"], {"total_spent": 0.0, "order_count": 0})
        entry["total_spent"] += float(order["total_amount"])
        entry["order_count"] += 1

    by_id = {str(c["_id"]): c for c in customers}
    active = [c for c in customers if str(c["_id"]) in spend]
    top: List[Dict[str, Any]] = []
    for user_id, entry in sorted(spend.items(), key=lambda kv: kv[1]["total_spent"], reverse=True)[:5]:
        customer = by_id.get(user_id, {})
        top.append({
            "user_id": user_id,
            "name": customer.get("name", "Unknown"),
            "email": customer.get("email", "Unknown"),
            "total_spent": round_money(entry["total_spent"]),
            "order_count": entry["order_count"],
        })

    return ok({
        "total_customers": len(customers),
        "active_customers": len(active),
        "inactive_customers": len(customers) - len(active),
        "new_customers_this_month": len([c for c in customers if as_utc(c["created_at"]) >= month_start]),
        "top_customers": top,
    }, "Customer statistics retrieved successfully")


@router.get("/{customer_id}")
def get_customer(customer_id: str, admin=Depends(require_admin)):
    customer = db["user"].find_one({"_id": to_object_id(customer_id)})
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    if customer.get("role") != Role.CUSTOMER.value:
        raise HTTPException(status_code=400, detail="User is not a customer")

    orders = list(db["order"].find({"user_id": customer_id}).sort("created_at", -1))
    settled = [o for o in orders if o["status"] in SETTLED_STATUSES]
    total_spent = sum(float(o["total_amount"]) for o in settled)
    breakdown = {s.value.lower(): len([o for o in orders if o["status"] == s.value]) for s in OrderStatus}
    return ok({
        "customer": serialize_doc(customer),
        "stats": {
            "total_orders": len(orders),
            "total_spent": round_money(total_spent),
            "average_order_value": round_money(total_spent / len(settled)) if settled else 0,
            "status_breakdown": breakdown,
        },
        "recent_orders": [order_view(o) for o in orders[:10]],
    }, "Customer details retrieved successfully")


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, admin=Depends(require_admin)):
    customer = db["user"].find_one({"_id": to_object_id(customer_id)})
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    if customer.get("role") != Role.CUSTOMER.value:
        raise HTTPException(status_code=400, detail="Cannot delete admin users")
    order_count = db["order"].count_documents({"user_id": customer_id})
    if order_count > 0:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete customer. They have {order_count} order(s).",
        )
    db["user"].delete_one({"_id": customer["_id"]})
    db["cart"].delete_one({"user_id": customer_id})
    logger.info("Customer %s deleted by %s", customer["email"], admin["email"])
    return ok({"id": customer_id}, "Customer deleted successfully")
