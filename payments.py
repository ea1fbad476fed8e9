import logging
import os
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import get_current_user, require_admin
from database import db
from helpers import DetailedHTTPException, as_utc, ok, serialize_value, to_base36, to_object_id, utcnow
from orders import get_order_or_404, transition_order
from qr import QR_EXPIRY_MINUTES, decode_qr_data, is_expired, issue_cash_qr, issue_paid_qr, save_qr, seconds_remaining
from schemas import OrderStatus, PaymentType

logger = logging.getLogger(__name__)

BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")

router = APIRouter(prefix="/api/orders", tags=["payments"])


class ScanRequest(BaseModel):
    qr_data: str


def get_customer(order: dict) -> dict:
    return db["user"].find_one({"_id": to_object_id(order["user_id"])}) or {}


@router.post("/generate-qr/{order_id}")
def generate_cash_qr(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id, str(user["_id"]))
    if order["payment_type"] != PaymentType.CASH.value:
        raise HTTPException(status_code=400, detail="This is not a Cash order")
    if order["status"] != OrderStatus.PENDING.value:
        raise HTTPException(status_code=400, detail=f"Order already {order['status'].lower()}")

    issued = issue_cash_qr(order, user)
    return ok({
        **issued["payload"],
        "qr_data": issued["qr_data"],
        "expires_in": seconds_remaining(issued["expires_at"]),
    }, f"Cash QR code generated (expires in {QR_EXPIRY_MINUTES} minutes)")


@router.get("/pay/paynow/process/{order_id}")
def process_paynow_payment(order_id: str, ref: Optional[str] = None):
    """Mock PayNow callback: marks the order paid and issues its pickup QR."""
    order = get_order_or_404(order_id)
    qr = db["payment_qr"].find_one({"order_id": str(order["_id"])})
    if not ref or not qr or qr.get("payment_ref") != ref:
        raise HTTPException(status_code=400, detail="Invalid payment reference")
    if order["status"] == OrderStatus.PAID.value:
        raise HTTPException(status_code=400, detail="Order already paid")

    paid = transition_order(order, OrderStatus.PAID)
    issued = issue_paid_qr(paid, get_customer(paid), payment_ref=ref)
    logger.info("PayNow payment %s processed for order %s", ref, paid["order_number"])
    return ok({
        **issued["payload"],
        "qr_data": issued["qr_data"],
        "note": "Show this QR to admin for pickup. Expires when order is completed.",
    }, "Payment successful! QR code generated.")


@router.get("/pay/paynow/{order_id}")
def initiate_paynow(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id, str(user["_id"]))
    if order["payment_type"] != PaymentType.PAYNOW.value:
        raise HTTPException(status_code=400, detail="This is not a PayNow order")
    if order["status"] != OrderStatus.PENDING.value:
        raise HTTPException(status_code=400, detail=f"Order already {order['status'].lower()}")

    payment_ref = f"PAY-{order['order_number']}-{to_base36(int(time.time() * 1000))}"
    save_qr(order, PaymentType.PAYNOW, payment_ref=payment_ref, is_used=False)
    payment_url = f"{BASE_URL}/api/orders/pay/paynow/process/{order_id}?ref={payment_ref}"
    logger.info("PayNow payment %s initiated for order %s", payment_ref, order["order_number"])
    return ok({
        "order_id": order_id,
        "order_number": order["order_number"],
        "amount": order["total_amount"],
        "currency": "USD",
        "payment_ref": payment_ref,
        "payment_url": payment_url,
        "instructions": "Complete payment using the link. QR code will be generated after successful payment.",
    }, "PayNow payment initiated")


@router.get("/qr/{order_id}")
def get_order_qr(order_id: str, user=Depends(get_current_user)):
    order = get_order_or_404(order_id, str(user["_id"]))
    qr = db["payment_qr"].find_one({"order_id": str(order["_id"])})
    if not qr or not qr.get("qr_data"):
        raise HTTPException(status_code=400, detail="QR code not generated yet")
    if qr["payment_type"] == PaymentType.CASH.value and is_expired(qr.get("expires_at")):
        raise DetailedHTTPException(
            status_code=400,
            detail="QR code expired. Generate a new one.",
            data={"generate_url": f"/api/orders/generate-qr/{order_id}"},
        )
    payload = decode_qr_data(qr["qr_data"]) or {}
    return ok({
        **payload,
        "qr_data": qr["qr_data"],
        "is_used": qr.get("is_used", False),
        "seconds_remaining": seconds_remaining(qr.get("expires_at")),
    }, "QR code retrieved")


@router.post("/admin/scan-qr")
def scan_qr_code(req: ScanRequest, admin=Depends(require_admin)):
    decoded = decode_qr_data(req.qr_data)
    if not decoded or not decoded.get("order_id"):
        raise HTTPException(status_code=400, detail="Invalid QR code - unable to decode data")

    order = db["order"].find_one({"_id": to_object_id(decoded["order_id"])})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found in database")
    if order["order_number"] != decoded.get("order_number"):
        raise HTTPException(status_code=400, detail="Order number mismatch - QR code may be invalid")
    if order["status"] == OrderStatus.COMPLETED.value:
        raise DetailedHTTPException(
            status_code=400,
            detail="Order already completed",
            data={"order_id": str(order["_id"]), "status": order["status"], "completed_at": serialize_value(order.get("completed_at"))},
        )
    if order["status"] == OrderStatus.CANCELLED.value:
        raise HTTPException(status_code=400, detail="Order has been cancelled")

    qr = db["payment_qr"].find_one({"order_id": str(order["_id"])})
    if not qr or qr.get("qr_data") != req.qr_data:
        raise HTTPException(status_code=400, detail="QR code has been replaced. Ask the customer for the latest one.")

    now = utcnow()
    expires_at = decoded.get("expires_at")
    if decoded.get("payment_type") == PaymentType.CASH.value and is_expired(expires_at, now):
        db["payment_qr"].update_one({"_id": qr["_id"]}, {"$set": {"is_used": True, "updated_at": now}})
        minutes_ago = int((now - as_utc(qr["expires_at"])).total_seconds() // 60)
        logger.warning("Expired cash QR scanned for order %s", order["order_number"])
        raise DetailedHTTPException(
            status_code=400,
            detail=f"Cash QR expired ({QR_EXPIRY_MINUTES} minute limit)",
            data={
                "suggestion": "Customer needs to generate new QR code",
                "expired_at": expires_at,
                "expired_minutes_ago": minutes_ago,
            },
        )
    if qr.get("is_used"):
        raise HTTPException(status_code=400, detail="QR code already used")

    if decoded["payment_type"] == PaymentType.PAYNOW.value and order["status"] != OrderStatus.PAID.value:
        raise DetailedHTTPException(
            status_code=400,
            detail="PayNow order not yet paid",
            data={
                "order_id": str(order["_id"]),
                "order_number": order["order_number"],
                "status": order["status"],
                "suggestion": "Payment must be completed before pickup",
            },
        )

    is_paynow = decoded["payment_type"] == PaymentType.PAYNOW.value
    data = {
        "payment_method": {
            "type": decoded["payment_type"],
            "label": "PayNow (Paid Online)" if is_paynow else "Cash (Pay at Counter)",
            "status": decoded.get("payment_status"),
        },
        "customer": decoded.get("customer"),
        "order_summary": decoded.get("order_summary"),
        "order_info": {
            "order_id": str(order["_id"]),
            "order_number": order["order_number"],
            "status": order["status"],
            "created_at": serialize_value(order.get("created_at")),
            "paid_at": serialize_value(order.get("paid_at")),
        },
        "instructions": (
            "Payment confirmed. Hand over items and mark complete."
            if is_paynow
            else "Collect cash payment, then mark complete."
        ),
        "action": {"complete": f"/api/orders/admin/complete/{order['_id']}"},
    }
    if not is_paynow and expires_at:
        data["expiry_info"] = {
            "expires_at": expires_at,
            "minutes_remaining": seconds_remaining(expires_at, now) // 60,
        }
    logger.info("QR scanned for order %s by %s", order["order_number"], admin["email"])
    return ok(data, "QR scanned successfully")
