import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator

from auth import require_admin
from database import db, create_document, get_documents
from helpers import ok, serialize_doc, to_object_id, utcnow
from schemas import Category as CategorySchema, Product as ProductSchema, StockLevel
from stock import get_stock_level, inventory_summary

logger = logging.getLogger(__name__)

categories_router = APIRouter(prefix="/api/categories", tags=["categories"])
products_router = APIRouter(prefix="/api/products", tags=["products"])


# Views
def category_view(cat: dict, include_products: bool = False) -> dict:
    cat_id = str(cat["_id"])
    data = serialize_doc(cat)
    data["product_count"] = db["product"].count_documents({"category_id": cat_id})
    if include_products:
        products = db["product"].find({"category_id": cat_id}).sort("name", 1)
        data["products"] = [
            {
                "id": str(p["_id"]),
                "name": p["name"],
                "description": p.get("description", ""),
                "price": p["price"],
                "stock": p.get("stock", 0),
                "stock_level": get_stock_level(p.get("stock", 0)).value,
            }
            for p in products
        ]
    return data


def product_view(prod: dict, categories: Optional[Dict[str, dict]] = None) -> dict:
    data = serialize_doc(prod)
    data["stock_level"] = get_stock_level(prod.get("stock", 0)).value
    category_id = prod.get("category_id")
    if categories is not None:
        cat = categories.get(category_id)
    else:
        cat = db["category"].find_one({"_id": to_object_id(category_id)}) if category_id else None
    data["category"] = {"id": str(cat["_id"]), "name": cat["name"]} if cat else None
    return data


def categories_by_id() -> Dict[str, dict]:
    return {str(c["_id"]): c for c in db["category"].find({})}


def get_category_or_404(category_id: str) -> dict:
    cat = db["category"].find_one({"_id": to_object_id(category_id)})
    if not cat:
        raise HTTPException(status_code=404, detail="Category not found")
    return cat


def get_product_or_404(product_id: str) -> dict:
    prod = db["product"].find_one({"_id": to_object_id(product_id)})
    if not prod:
        raise HTTPException(status_code=404, detail="Product not found")
    return prod


# Request models
class CategoryCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category_id: str
    image: Optional[str] = None


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None
    image: Optional[str] = None


class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class StockUpdateRequest(BaseModel):
    stock: Optional[int] = Field(None, ge=0)
    adjustment: Optional[int] = None

    @model_validator(mode="after")
    def exactly_one(self):
        if (self.stock is None) == (self.adjustment is None):
            raise ValueError("Provide either stock or adjustment")
        return self


# Categories
@categories_router.get("")
def list_categories():
    cats = db["category"].find({}).sort("created_at", -1)
    return ok([category_view(c) for c in cats], "Categories retrieved successfully")


@categories_router.get("/admin/stats")
def category_stats(admin=Depends(require_admin)):
    views = [category_view(c) for c in db["category"].find({})]
    with_products = [v for v in views if v["product_count"] > 0]
    top = max(with_products, key=lambda v: v["product_count"]) if with_products else None
    return ok({
        "total_categories": len(views),
        "categories_with_products": len(with_products),
        "empty_categories": len(views) - len(with_products),
        "top_category": {"id": top["id"], "name": top["name"], "product_count": top["product_count"]} if top else None,
    }, "Category stats retrieved successfully")


@categories_router.get("/{category_id}")
def get_category(category_id: str):
    cat = get_category_or_404(category_id)
    return ok(category_view(cat, include_products=True), "Category retrieved successfully")


@categories_router.post("", status_code=201)
def create_category(req: CategoryCreateRequest, admin=Depends(require_admin)):
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    if db["category"].find_one({"name": name}):
        raise HTTPException(status_code=400, detail="Category already exists")
    description = req.description.strip() if req.description and req.description.strip() else None
    cat_id = create_document("category", CategorySchema(name=name, description=description))
    logger.info("Category %r created by %s", name, admin["email"])
    return ok(category_view(get_category_or_404(cat_id)), "Category created successfully")


@categories_router.put("/{category_id}")
def update_category(category_id: str, req: CategoryUpdateRequest, admin=Depends(require_admin)):
    cat = get_category_or_404(category_id)
    updates: Dict[str, Any] = {}
    if req.name is not None:
        name = req.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Category name is required")
        if name != cat["name"] and db["category"].find_one({"name": name}):
            raise HTTPException(status_code=400, detail="Category name already exists")
        updates["name"] = name
    if "description" in req.model_fields_set:
        updates["description"] = req.description.strip() if req.description and req.description.strip() else None
    updates["updated_at"] = utcnow()
    db["category"].update_one({"_id": cat["_id"]}, {"$set": updates})
    return ok(category_view(get_category_or_404(category_id)), "Category updated successfully")


@categories_router.delete("/{category_id}")
def delete_category(category_id: str, admin=Depends(require_admin)):
    cat = get_category_or_404(category_id)
    product_count = db["product"].count_documents({"category_id": str(cat["_id"])})
    if product_count > 0:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete category. It has {product_count} product(s) associated with it.",
        )
    db["category"].delete_one({"_id": cat["_id"]})
    logger.info("Category %r deleted by %s", cat["name"], admin["email"])
    return ok({"id": category_id}, "Category deleted successfully")


# Products
@products_router.get("")
def list_products(search: Optional[str] = None, category_id: Optional[str] = None, stock_level: Optional[StockLevel] = None):
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    if category_id:
        query["category_id"] = str(to_object_id(category_id))
    cats = categories_by_id()
    products = [product_view(p, cats) for p in db["product"].find(query).sort("created_at", -1)]
    if stock_level:
        products = [p for p in products if p["stock_level"] == stock_level.value]
    return ok(products, "Products retrieved successfully")


@products_router.get("/admin/inventory")
def inventory(admin=Depends(require_admin)):
    products = get_documents("product")
    categories = get_documents("category")
    return ok(inventory_summary(products, categories), "Inventory summary retrieved successfully")


@products_router.get("/category/{category_id}")
def list_products_by_category(category_id: str):
    category = get_category_or_404(category_id)
    cats = categories_by_id()
    products = db["product"].find({"category_id": str(category["_id"])}).sort("created_at", -1)
    return ok([product_view(p, cats) for p in products], "Products retrieved successfully")


@products_router.get("/{product_id}")
def get_product(product_id: str):
    return ok(product_view(get_product_or_404(product_id)), "Product retrieved successfully")


@products_router.post("", status_code=201)
def create_product(req: ProductCreateRequest, admin=Depends(require_admin)):
    category = get_category_or_404(req.category_id)
    fields = {**req.model_dump(), "category_id": str(category["_id"])}
    prod_id = create_document("product", ProductSchema(**fields))
    logger.info("Product %r created by %s", req.name, admin["email"])
    return ok(product_view(get_product_or_404(prod_id)), "Product created successfully")


@products_router.put("/{product_id}")
def update_product(product_id: str, req: ProductUpdateRequest, admin=Depends(require_admin)):
    prod = get_product_or_404(product_id)
    updates = {k: v for k, v in req.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    if "category_id" in updates:
        updates["category_id"] = str(get_category_or_404(updates["category_id"])["_id"])
    updates["updated_at"] = utcnow()
    db["product"].update_one({"_id": prod["_id"]}, {"$set": updates})
    return ok(product_view(get_product_or_404(product_id)), "Product updated successfully")


@products_router.patch("/{product_id}/stock")
def update_stock(product_id: str, req: StockUpdateRequest, admin=Depends(require_admin)):
    prod = get_product_or_404(product_id)
    if req.stock is not None:
        db["product"].update_one({"_id": prod["_id"]}, {"$set": {"stock": req.stock, "updated_at": utcnow()}})
    else:
        # conditional so a concurrent checkout cannot push stock below zero
        result = db["product"].update_one(
            {"_id": prod["_id"], "stock": {"$gte": -req.adjustment}},
            {"$inc": {"stock": req.adjustment}, "$set": {"updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            raise HTTPException(status_code=400, detail="Stock cannot be negative")
    updated = get_product_or_404(product_id)
    logger.info("Stock for %r set to %s by %s", updated["name"], updated["stock"], admin["email"])
    return ok(product_view(updated), "Stock updated successfully")


@products_router.delete("/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin)):
    prod = get_product_or_404(product_id)
    db["product"].delete_one({"_id": prod["_id"]})
    logger.info("Product %r deleted by %s", prod["name"], admin["email"])
    return ok({"id": product_id}, "Product deleted successfully")


@products_router.post("/bulk-delete")
def bulk_delete_products(req: BulkDeleteRequest, admin=Depends(require_admin)):
    ids = [to_object_id(i) for i in req.ids]
    result = db["product"].delete_many({"_id": {"$in": ids}})
    logger.info("Bulk deleted %s product(s) by %s", result.deleted_count, admin["email"])
    return ok({"deleted_count": result.deleted_count}, f"{result.deleted_count} product(s) deleted successfully")
