"""
Payment QR payloads, their signatures and expiry.

A QR code carries a JSON payload describing the order. The payload is signed
as an HS256 JWT so the admin scanner can trust what it reads without another
lookup; the storefront renders the signed string as the QR image.

CASH QR codes expire after QR_EXPIRY_MINUTES. Expiry only retires the code:
the order itself stays PENDING until an admin completes or rejects it.
"""
import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from jose import jwt, JWTError
from starlette.concurrency import run_in_threadpool

from auth import JWT_ALG, JWT_SECRET
from database import db
from helpers import as_utc, serialize_value, utcnow
from schemas import OrderStatus, PaymentQR as PaymentQRSchema, PaymentType

logger = logging.getLogger(__name__)

QR_SIGNING_SECRET = os.getenv("QR_SIGNING_SECRET") or JWT_SECRET
QR_EXPIRY_MINUTES = int(os.getenv("QR_EXPIRY_MINUTES", "15"))
QR_SWEEP_INTERVAL_SECONDS = int(os.getenv("QR_SWEEP_INTERVAL_SECONDS", "60"))


def build_qr_payload(order: dict, customer: dict, expires_at: Optional[datetime] = None) -> Dict[str, Any]:
    items = [
        {
            "name": item["name"],
            "quantity": item["quantity"],
            "price": item["price"],
            "subtotal": item["subtotal"],
        }
        for item in order.get("items", [])
    ]
    return {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "payment_type": order["payment_type"],
        "payment_status": "PAID" if order["status"] == OrderStatus.PAID.value else "PENDING",
        "customer": {"name": customer.get("name"), "email": customer.get("email")},
        "order_summary": {
            "items": items,
            "total_items": sum(i["quantity"] for i in items),
            "total_amount": order["total_amount"],
        },
        "expires_at": serialize_value(expires_at),
        "paid_at": serialize_value(order.get("paid_at")),
        "issued_at": serialize_value(utcnow()),
    }


def sign_qr_payload(payload: Dict[str, Any]) -> str:
    return jwt.encode(payload, QR_SIGNING_SECRET, algorithm=JWT_ALG)


def decode_qr_data(qr_data: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(qr_data, QR_SIGNING_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        return None


def time_left(expires_at: Any, now: Optional[datetime] = None) -> float:
    if isinstance(expires_at, str):
        expires_at = datetime.fromisoformat(expires_at)
    return (as_utc(expires_at) - (now or utcnow())).total_seconds()


def seconds_remaining(expires_at: Optional[Any], now: Optional[datetime] = None) -> Optional[int]:
    """Whole seconds until `expires_at`, floored at zero. None means no expiry."""
    if expires_at is None:
        return None
    return max(0, int(time_left(expires_at, now)))


def is_expired(expires_at: Optional[Any], now: Optional[datetime] = None) -> bool:
    return expires_at is not None and time_left(expires_at, now) <= 0


def save_qr(order: dict, payment_type: PaymentType, **fields: Any) -> dict:
    """Create or replace the single QR record of an order."""
    order_id = str(order["_id"])
    record = PaymentQRSchema(order_id=order_id, payment_type=payment_type, **fields).model_dump()
    now = utcnow()
    db["payment_qr"].update_one(
        {"order_id": order_id},
        {"$set": {**record, "updated_at": now}, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    return db["payment_qr"].find_one({"order_id": order_id})


def issue_cash_qr(order: dict, customer: dict) -> dict:
    expires_at = utcnow() + timedelta(minutes=QR_EXPIRY_MINUTES)
    payload = build_qr_payload(order, customer, expires_at)
    qr_data = sign_qr_payload(payload)
    save_qr(order, PaymentType.CASH, qr_data=qr_data, expires_at=expires_at, is_used=False)
    logger.info("Cash QR issued for order %s, expires %s", order["order_number"], payload["expires_at"])
    return {"payload": payload, "qr_data": qr_data, "expires_at": expires_at}


def issue_paid_qr(order: dict, customer: dict, payment_ref: Optional[str] = None) -> dict:
    payload = build_qr_payload(order, customer)
    qr_data = sign_qr_payload(payload)
    save_qr(order, PaymentType.PAYNOW, qr_data=qr_data, payment_ref=payment_ref, expires_at=None, is_used=False)
    logger.info("PayNow QR issued for order %s", order["order_number"])
    return {"payload": payload, "qr_data": qr_data}


def sweep_expired_qr_codes(now: Optional[datetime] = None) -> int:
    """Retire unused CASH QR codes whose expiry has passed. Returns the count."""
    now = now or utcnow()
    marked = 0
    candidates = db["payment_qr"].find({
        "payment_type": PaymentType.CASH.value,
        "is_used": False,
        "expires_at": {"$ne": None},
    })
    for qr in candidates:
        if as_utc(qr["expires_at"]) > now:
            continue
        result = db["payment_qr"].update_one(
            {"_id": qr["_id"], "is_used": False},
            {"$set": {"is_used": True, "updated_at": now}},
        )
        marked += result.modified_count
    if marked:
        logger.info("Expired %s cash QR code(s)", marked)
    return marked


async def run_qr_sweeper(interval: int = QR_SWEEP_INTERVAL_SECONDS) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(sweep_expired_qr_codes)
        except Exception:
            logger.exception("QR expiry sweep failed")
