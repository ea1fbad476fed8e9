import pytest
from bson import ObjectId

from database import db
from schemas import StockLevel
from stock import InsufficientStock, get_stock_level, inventory_summary, release_stock, reserve_stock


@pytest.mark.parametrize("stock, level", [
    (0, StockLevel.OUT_OF_STOCK),
    (1, StockLevel.LOW),
    (5, StockLevel.LOW),
    (6, StockLevel.MEDIUM),
    (15, StockLevel.MEDIUM),
    (16, StockLevel.HIGH),
])
def test_stock_levels(stock, level):
    assert get_stock_level(stock) == level


def insert_product(name, stock):
    return str(db["product"].insert_one({"name": name, "price": 1.0, "stock": stock}).inserted_id)


def stock_of(product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


def test_reserve_and_release():
    pid = insert_product("Crisps", 5)
    reserve_stock([{"product_id": pid, "quantity": 3, "name": "Crisps"}])
    assert stock_of(pid) == 2
    release_stock([{"product_id": pid, "quantity": 3}])
    assert stock_of(pid) == 5


def test_reserve_is_all_or_nothing():
    first = insert_product("Crisps", 5)
    second = insert_product("Cola", 1)
    items = [
        {"product_id": first, "quantity": 2, "name": "Crisps"},
        {"product_id": second, "quantity": 2, "name": "Cola"},
    ]
    with pytest.raises(InsufficientStock) as excinfo:
        reserve_stock(items)
    assert excinfo.value.product_name == "Cola"
    assert excinfo.value.available == 1
    assert excinfo.value.requested == 2
    assert stock_of(first) == 5
    assert stock_of(second) == 1


def test_inventory_summary_without_products():
    summary = inventory_summary([], [])
    assert summary["total_products"] == 0
    assert summary["avg_stock_per_product"] == 0
    assert summary["category_breakdown"] == []
