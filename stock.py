"""
Stock levels, reservation and inventory summaries.

Reservation relies on single-document conditional updates so that stock can
never go negative, even when two checkouts race for the last units.
"""
import logging
from typing import Any, Dict, Iterable, List

from database import db
from helpers import round_money, to_object_id, utcnow
from schemas import StockLevel

logger = logging.getLogger(__name__)

LOW_STOCK_MAX = 5
MEDIUM_STOCK_MAX = 15


class InsufficientStock(Exception):
    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock for {product_name}")


def get_stock_level(stock: int) -> StockLevel:
    if stock <= 0:
        return StockLevel.OUT_OF_STOCK
    if stock <= LOW_STOCK_MAX:
        return StockLevel.LOW
    if stock <= MEDIUM_STOCK_MAX:
        return StockLevel.MEDIUM
    return StockLevel.HIGH


def release_stock(items: Iterable[Dict[str, Any]]) -> None:
    for item in items:
        db["product"].update_one(
            {"_id": to_object_id(item["product_id"])},
            {"$inc": {"stock": int(item["quantity"])}, "$set": {"updated_at": utcnow()}},
        )
        logger.info("Released %s unit(s) of product %s", item["quantity"], item["product_id"])


def reserve_stock(items: List[Dict[str, Any]]) -> None:
    """Decrement stock for every item or for none of them.

    Each item needs `product_id` and `quantity`; `name` is used in the error.
    """
    reserved: List[Dict[str, Any]] = []
    for item in items:
        quantity = int(item["quantity"])
        result = db["product"].update_one(
            {"_id": to_object_id(item["product_id"]), "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            if reserved:
                release_stock(reserved)
            product = db["product"].find_one({"_id": to_object_id(item["product_id"])})
            available = product.get("stock", 0) if product else 0
            name = item.get("name") or (product or {}).get("name", item["product_id"])
            logger.warning("Stock reservation failed for %s: requested %s, available %s", name, quantity, available)
            raise InsufficientStock(name, available, quantity)
        reserved.append(item)


def inventory_summary(products: List[Dict[str, Any]], categories: List[Dict[str, Any]]) -> Dict[str, Any]:
    total_products = len(products)
    total_stock = sum(int(p.get("stock", 0)) for p in products)
    total_value = sum(int(p.get("stock", 0)) * float(p.get("price", 0)) for p in products)
    low_stock = [p for p in products if get_stock_level(p.get("stock", 0)) == StockLevel.LOW]
    out_of_stock = [p for p in products if int(p.get("stock", 0)) == 0]

    breakdown = []
    for cat in categories:
        cat_id = str(cat["_id"])
        cat_products = [p for p in products if p.get("category_id") == cat_id]
        if not cat_products:
            continue
        breakdown.append({
            "id": cat_id,
            "name": cat["name"],
            "product_count": len(cat_products),
            "total_stock": sum(int(p.get("stock", 0)) for p in cat_products),
            "total_value": round_money(sum(int(p.get("stock", 0)) * float(p.get("price", 0)) for p in cat_products)),
            "low_stock_count": len([p for p in cat_products if get_stock_level(p.get("stock", 0)) == StockLevel.LOW]),
        })

    return {
        "total_products": total_products,
        "total_stock": total_stock,
        "total_value": round_money(total_value),
        "low_stock_count": len(low_stock),
        "out_of_stock_count": len(out_of_stock),
        "avg_stock_per_product": round_money(total_stock / total_products) if total_products else 0,
        "category_breakdown": breakdown,
    }
