import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import ASCENDING
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import auth
import cart
import catalog
import customers
import orders
import payments
from database import db
from orders import OrderConflict, OrderStateError
from qr import run_qr_sweeper
from schemas import Role
from stock import InsufficientStock

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("etuckshop")

# App init
app = FastAPI(title="eTuckshop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(catalog.categories_router)
app.include_router(catalog.products_router)
app.include_router(cart.router)
app.include_router(payments.router)
app.include_router(orders.router)
app.include_router(customers.router)
app.include_router(analytics.router)


# Error envelope
def error_response(status_code: int, message: str, data=None) -> JSONResponse:
    body = {"success": False, "message": message}
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "data", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
    return error_response(422, "Validation error", errors)


@app.exception_handler(OrderStateError)
async def order_state_handler(request: Request, exc: OrderStateError):
    logger.warning("Rejected order transition on %s: %s", request.url.path, exc)
    return error_response(400, str(exc))


@app.exception_handler(OrderConflict)
async def order_conflict_handler(request: Request, exc: OrderConflict):
    logger.warning("Order conflict on %s", request.url.path)
    return error_response(409, str(exc))


@app.exception_handler(InsufficientStock)
async def insufficient_stock_handler(request: Request, exc: InsufficientStock):
    return error_response(400, str(exc), {"available": exc.available, "requested": exc.requested})


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logger.exception("Server error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "error": str(exc)},
    )


# Routes
@app.get("/")
def root():
    return {"message": "eTuckshop API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# Seed demo catalog on startup
DEMO_CATALOG: List[dict] = [
    {
        "name": "Snacks",
        "description": "Crisps, biscuits and quick bites",
        "products": [
            {"name": "Salted Crisps", "description": "30g packet", "price": 0.8, "stock": 40},
            {"name": "Chocolate Biscuits", "description": "Pack of 6", "price": 1.5, "stock": 12},
            {"name": "Popcorn", "description": "Butter flavour", "price": 1.0, "stock": 4},
        ],
    },
    {
        "name": "Drinks",
        "description": "Cold drinks and juices",
        "products": [
            {"name": "Orange Juice", "description": "330ml carton", "price": 1.2, "stock": 30},
            {"name": "Still Water", "description": "500ml bottle", "price": 0.6, "stock": 60},
            {"name": "Cola", "description": "330ml can", "price": 1.0, "stock": 0},
        ],
    },
    {
        "name": "Meals",
        "description": "Hot lunches from the kitchen",
        "products": [
            {"name": "Chicken Wrap", "description": "Grilled chicken, lettuce, mayo", "price": 3.5, "stock": 10},
            {"name": "Veggie Pie", "description": "Mixed vegetables in pastry", "price": 2.8, "stock": 8},
        ],
    },
]


def ensure_indexes() -> None:
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["category"].create_index([("name", ASCENDING)], unique=True)
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["order"].create_index([("user_id", ASCENDING)])
    db["payment_qr"].create_index([("order_id", ASCENDING)], unique=True)
    db["cart"].create_index([("user_id", ASCENDING)], unique=True)


def seed_catalog() -> None:
    if db["product"].count_documents({}) > 0:
        return
    now = datetime.now(timezone.utc)
    for cat in DEMO_CATALOG:
        existing = db["category"].find_one({"name": cat["name"]})
        if existing:
            cat_id = existing["_id"]
        else:
            cat_id = db["category"].insert_one({
                "name": cat["name"],
                "description": cat["description"],
                "created_at": now,
                "updated_at": now,
            }).inserted_id
        for prod in cat["products"]:
            db["product"].insert_one({
                **prod,
                "category_id": str(cat_id),
                "image": None,
                "created_at": now,
                "updated_at": now,
            })
    logger.info("Seeded demo catalog")


def seed_admin(email: Optional[str], password: Optional[str]) -> None:
    if not email or not password or db["user"].find_one({"email": email}):
        return
    auth.create_user("Administrator", email, password, role=Role.ADMIN)
    logger.info("Seeded admin user %s", email)


@app.on_event("startup")
async def on_startup():
    if db is None:
        logger.warning("Database not configured; skipping startup tasks")
        return
    ensure_indexes()
    seed_catalog()
    seed_admin(os.getenv("ADMIN_EMAIL"), os.getenv("ADMIN_PASSWORD"))
    app.state.qr_sweeper = asyncio.create_task(run_qr_sweeper())


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "qr_sweeper", None)
    if task:
        task.cancel()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
