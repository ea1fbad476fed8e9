"""
Per-user shopping cart.

Cart lines store only the product id and quantity. Price and stock are read
from the product on every view, so a line can end up asking for more than is
left in stock; such lines are flagged with a warning rather than corrected.
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_current_user
from catalog import categories_by_id, get_product_or_404
from database import db, create_document
from helpers import ok, round_money, to_object_id, utcnow
from schemas import Cart as CartSchema, CartItem
from stock import get_stock_level

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


def get_or_create_cart(user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart:
        return cart
    create_document("cart", CartSchema(user_id=user_id))
    return db["cart"].find_one({"user_id": user_id})


def save_items(cart: dict, items: List[Dict[str, Any]]) -> None:
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": utcnow()}})


def build_cart_view(cart: dict) -> Dict[str, Any]:
    """Join cart lines with current product data and compute totals."""
    cats = categories_by_id()
    product_ids = [to_object_id(i["product_id"]) for i in cart.get("items", [])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": product_ids}})}

    lines = []
    warnings = []
    for item in cart.get("items", []):
        product = products.get(item["product_id"])
        if not product:
            warnings.append(f"Product {item['product_id']} is no longer available")
            continue
        stock = int(product.get("stock", 0))
        quantity = int(item["quantity"])
        cat = cats.get(product.get("category_id"))
        line = {
            "product_id": item["product_id"],
            "name": product["name"],
            "description": product.get("description", ""),
            "price": product["price"],
            "quantity": quantity,
            "subtotal": round_money(product["price"] * quantity),
            "stock": stock,
            "stock_level": get_stock_level(stock).value,
            "category": {"id": str(cat["_id"]), "name": cat["name"]} if cat else None,
            "image": product.get("image"),
            "stock_warning": None,
        }
        if quantity > stock:
            line["stock_warning"] = f"Only {stock} available" if stock else "Out of stock"
            warnings.append(f"{product['name']}: requested {quantity}, only {stock} available")
        lines.append(line)

    return {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": lines,
        "total_items": sum(line["quantity"] for line in lines),
        "total_amount": round_money(sum(line["subtotal"] for line in lines)),
        "has_stock_issues": any(line["stock_warning"] for line in lines),
        "warnings": warnings,
    }


@router.get("")
def get_cart(user=Depends(get_current_user)):
    cart = get_or_create_cart(str(user["_id"]))
    return ok(build_cart_view(cart), "Cart retrieved successfully")


@router.get("/summary")
def get_cart_summary(user=Depends(get_current_user)):
    view = build_cart_view(get_or_create_cart(str(user["_id"])))
    return ok({
        "total_items": view["total_items"],
        "total_amount": view["total_amount"],
        "item_count": len(view["items"]),
    }, "Cart summary retrieved successfully")


@router.post("/add")
def add_to_cart(req: AddToCartRequest, user=Depends(get_current_user)):
    product = get_product_or_404(req.product_id)
    product_id = str(product["_id"])
    stock = int(product.get("stock", 0))
    if stock < req.quantity:
        raise HTTPException(status_code=400, detail=f"Insufficient stock. Only {stock} available")

    cart = get_or_create_cart(str(user["_id"]))
    items = list(cart.get("items", []))
    existing = next((i for i in items if i["product_id"] == product_id), None)
    if existing:
        new_quantity = existing["quantity"] + req.quantity
        if new_quantity > stock:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot add {req.quantity} more. Only {max(stock - existing['quantity'], 0)} available",
            )
        existing["quantity"] = new_quantity
    else:
        items.append(CartItem(product_id=product_id, quantity=req.quantity, added_at=utcnow()).model_dump())
    save_items(cart, items)
    logger.info("User %s added %s x %s to cart", user["email"], req.quantity, product["name"])
    return ok(build_cart_view(get_or_create_cart(str(user["_id"]))), "Product added to cart successfully")


@router.patch("/update")
def update_cart_item(req: UpdateCartItemRequest, user=Depends(get_current_user)):
    product_id = str(to_object_id(req.product_id))
    cart = get_or_create_cart(str(user["_id"]))
    items = list(cart.get("items", []))
    existing = next((i for i in items if i["product_id"] == product_id), None)
    if not existing:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    product = get_product_or_404(product_id)
    stock = int(product.get("stock", 0))
    if req.quantity > stock:
        raise HTTPException(status_code=400, detail=f"Insufficient stock. Only {stock} available")
    existing["quantity"] = req.quantity
    save_items(cart, items)
    return ok(build_cart_view(get_or_create_cart(str(user["_id"]))), "Cart updated successfully")


@router.delete("/remove/{product_id}")
def remove_from_cart(product_id: str, user=Depends(get_current_user)):
    product_id = str(to_object_id(product_id))
    cart = get_or_create_cart(str(user["_id"]))
    items = [i for i in cart.get("items", []) if i["product_id"] != product_id]
    if len(items) == len(cart.get("items", [])):
        raise HTTPException(status_code=404, detail="Item not found in cart")
    save_items(cart, items)
    return ok(build_cart_view(get_or_create_cart(str(user["_id"]))), "Item removed from cart")


@router.post("/clear")
def clear_cart(user=Depends(get_current_user)):
    cart = get_or_create_cart(str(user["_id"]))
    save_items(cart, [])
    return ok(build_cart_view(get_or_create_cart(str(user["_id"]))), "Cart cleared successfully")
