"""Admin dashboard and sales analytics."""
import logging
import os
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from auth import require_admin
from database import db, get_documents
from helpers import analytics_cache, as_utc, ok, round_money, utcnow
from orders import order_view
from schemas import OrderStatus, Role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

LOW_STOCK_THRESHOLD = 10
DEFAULT_RANGE_DAYS = 30
DASHBOARD_CACHE_SECONDS = int(os.getenv("DASHBOARD_CACHE_SECONDS", "60"))
ANALYTICS_CACHE_SECONDS = int(os.getenv("ANALYTICS_CACHE_SECONDS", "120"))
REVENUE_STATUSES = {OrderStatus.PAID.value, OrderStatus.COMPLETED.value}


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@router.get("/dashboard")
def dashboard_stats(admin=Depends(require_admin)):
    cache_key = "analytics:dashboard:stats"
    cached = analytics_cache.get(cache_key)
    if cached is not None:
        return ok(cached, "Dashboard stats retrieved successfully (cached)")

    orders = get_documents("order")
    completed = [o for o in orders if o["status"] == OrderStatus.COMPLETED.value]
    today = day_start(utcnow().date())
    stats = {
        "total_orders": len(orders),
        "pending_orders": len([o for o in orders if o["status"] == OrderStatus.PENDING.value]),
        "completed_orders": len(completed),
        "total_products": db["product"].count_documents({}),
        "low_stock_products": db["product"].count_documents({"stock": {"$lte": LOW_STOCK_THRESHOLD}}),
        "total_customers": db["user"].count_documents({"role": Role.CUSTOMER.value}),
        "total_revenue": round_money(sum(float(o["total_amount"]) for o in completed)),
        "today_revenue": round_money(sum(
            float(o["total_amount"]) for o in completed
            if o.get("completed_at") and as_utc(o["completed_at"]) >= today
        )),
    }
    analytics_cache.set(cache_key, stats, DASHBOARD_CACHE_SECONDS)
    return ok(stats, "Dashboard stats retrieved successfully")


@router.get("")
def analytics(start_date: Optional[date] = None, end_date: Optional[date] = None, admin=Depends(require_admin)):
    end_day = end_date or utcnow().date()
    start_day = start_date or end_day - timedelta(days=DEFAULT_RANGE_DAYS)
    if start_day > end_day:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")
    cache_key = f"analytics:data:{start_day.isoformat()}:{end_day.isoformat()}"
    cached = analytics_cache.get(cache_key)
    if cached is not None:
        return ok(cached, "Analytics data retrieved successfully (cached)")

    start = day_start(start_day)
    end = day_start(end_day + timedelta(days=1))
    previous_start = start - (end - start)

    orders = get_documents("order")
    settled = [o for o in orders if o["status"] in REVENUE_STATUSES]
    revenue = sum(float(o["total_amount"]) for o in settled)

    in_range = [o for o in orders if start <= as_utc(o["created_at"]) < end]
    daily: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"sales": 0, "revenue": 0.0})
    for order in in_range:
        key = as_utc(order["created_at"]).date().isoformat()
        daily[key]["sales"] += 1
        if order["status"] in REVENUE_STATUSES:
            daily[key]["revenue"] += float(order["total_amount"])
    daily_stats = [
        {"date": key, "sales": value["sales"], "revenue": round_money(value["revenue"])}
        for key, value in sorted(daily.items())
    ]

    current_revenue = sum(float(o["total_amount"]) for o in in_range if o["status"] in REVENUE_STATUSES)
    previous_revenue = sum(
        float(o["total_amount"]) for o in settled
        if previous_start <= as_utc(o["created_at"]) < start
    )
    growth = (current_revenue - previous_revenue) / previous_revenue * 100 if previous_revenue > 0 else 0

    sold: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        if order["status"] == OrderStatus.CANCELLED.value:
            continue
        for item in order.get("items", []):
            entry = sold.setdefault(item["product_id"], {"name": item["name"], "total_sold": 0, "order_count": 0})
            entry["total_sold"] += int(item["quantity"])
            entry["order_count"] += 1
    top_products = [
        {"product_id": product_id, **entry}
        for product_id, entry in sorted(sold.items(), key=lambda kv: kv[1]["total_sold"], reverse=True)[:5]
    ]

    recent = sorted(orders, key=lambda o: as_utc(o["created_at"]), reverse=True)[:10]
    data = {
        "summary": {
            "total_users": db["user"].count_documents({}),
            "total_products": db["product"].count_documents({}),
            "total_sales": len([o for o in orders if o["status"] == OrderStatus.COMPLETED.value]),
            "total_revenue": round_money(revenue),
            "average_order_value": round_money(revenue / len(settled)) if settled else 0,
            "total_orders": len(orders),
            "revenue_growth": round_money(growth),
        },
        "daily_stats": daily_stats,
        "top_products": top_products,
        "recent_orders": [order_view(o, include_user=True) for o in recent],
        "date_range": {"start": start_day.isoformat(), "end": end_day.isoformat()},
    }
    analytics_cache.set(cache_key, data, ANALYTICS_CACHE_SECONDS)
    return ok(data, "Analytics data retrieved successfully")
