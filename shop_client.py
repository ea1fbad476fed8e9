"""
Typed client for the eTuckshop API.

Reads go through a small query cache. Catalog and stock mutations are applied
optimistically: the cached data is edited before the request is sent, rolled
back if the request fails, and marked stale once the request settles so the
next read reconciles with the server.
"""
import copy
import itertools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

CacheKey = Tuple[Any, ...]

_MISSING = object()


class ApiError(Exception):
    def __init__(self, status_code: int, message: str, data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.data = data


class QueryCache:
    def __init__(self):
        self._values: Dict[CacheKey, Any] = {}
        self._stale: Dict[CacheKey, bool] = {}

    def get(self, key: CacheKey, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: CacheKey, value: Any) -> None:
        self._values[key] = value
        self._stale[key] = False

    def is_stale(self, key: CacheKey) -> bool:
        return self._stale.get(key, True)

    def keys(self, prefix: CacheKey = ()) -> List[CacheKey]:
        return [k for k in self._values if k[:len(prefix)] == prefix]

    def fetch(self, key: CacheKey, loader: Callable[[], Any]) -> Any:
        if key in self._values and not self.is_stale(key):
            return self._values[key]
        value = loader()
        self.set(key, value)
        return value

    def snapshot(self, keys: Iterable[CacheKey]) -> Dict[CacheKey, Any]:
        return {k: copy.deepcopy(self._values[k]) if k in self._values else _MISSING for k in keys}

    def restore(self, snapshot: Dict[CacheKey, Any]) -> None:
        for key, value in snapshot.items():
            if value is _MISSING:
                self._values.pop(key, None)
                self._stale.pop(key, None)
            else:
                self._values[key] = value

    def invalidate(self, prefix: CacheKey) -> None:
        """Mark every entry under `prefix` stale; data stays readable until refetched."""
        for key in self.keys(prefix):
            self._stale[key] = True


def optimistic_update(
    cache: QueryCache,
    prefixes: List[CacheKey],
    apply: Callable[[QueryCache], None],
    call: Callable[[], Any],
) -> Any:
    keys = [k for prefix in prefixes for k in cache.keys(prefix)]
    snapshot = cache.snapshot(keys)
    apply(cache)
    try:
        return call()
    except Exception:
        cache.restore(snapshot)
        raise
    finally:
        for prefix in prefixes:
            cache.invalidate(prefix)


class QRCountdown:
    """Read-only countdown for a QR code's expiry."""

    def __init__(self, expires_at: Optional[Any]):
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        self.expires_at = expires_at

    def seconds_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.expires_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.expires_at - now).total_seconds()))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (self.expires_at - now).total_seconds() <= 0

    def display(self, now: Optional[datetime] = None) -> str:
        remaining = self.seconds_remaining(now)
        if remaining is None:
            return "No expiry"
        if self.is_expired(now):
            return "Expired"
        minutes, seconds = divmod(remaining, 60)
        return f"{minutes:02d}:{seconds:02d}"


def _edit_list(cache: QueryCache, prefix: CacheKey, edit: Callable[[List[dict]], List[dict]]) -> None:
    for key in cache.keys(prefix):
        value = cache.get(key)
        if isinstance(value, list):
            cache.set(key, edit(list(value)))


class ShopClient:
    def __init__(self, http: httpx.Client, token: Optional[str] = None, cache: Optional[QueryCache] = None):
        self.http = http
        self.token = token
        self.refresh_token: Optional[str] = None
        self.cache = cache or QueryCache()
        self._temp_ids = itertools.count(1)

    # Transport
    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.http.request(method, path, headers=headers, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or body.get("success") is False:
            message = body.get("message") or response.reason_phrase
            logger.warning("%s %s failed with %s: %s", method, path, response.status_code, message)
            raise ApiError(response.status_code, message, body.get("data"))
        return body.get("data")

    def _temp_id(self) -> str:
        return f"temp-{next(self._temp_ids)}"

    # Auth
    def _store_tokens(self, data: dict) -> None:
        self.token = data["access_token"]
        self.refresh_token = data.get("refresh_token")

    def register(self, name: str, email: str, password: str) -> dict:
        data = self._request("POST", "/api/auth/register", json={"name": name, "email": email, "password": password})
        self._store_tokens(data)
        return data

    def login(self, email: str, password: str) -> dict:
        data = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
        self._store_tokens(data)
        return data

    def refresh(self) -> str:
        data = self._request("POST", "/api/auth/refresh", json={"refresh_token": self.refresh_token})
        self.token = data["access_token"]
        return self.token

    def logout(self) -> None:
        try:
            if self.refresh_token:
                self._request("POST", "/api/auth/logout", json={"refresh_token": self.refresh_token})
        finally:
            self.token = None
            self.refresh_token = None
            self.cache = QueryCache()

    def profile(self) -> dict:
        return self.cache.fetch(("profile",), lambda: self._request("GET", "/api/auth/profile"))

    # Categories
    def list_categories(self) -> List[dict]:
        return self.cache.fetch(("categories",), lambda: self._request("GET", "/api/categories"))

    def create_category(self, name: str, description: Optional[str] = None) -> dict:
        placeholder = {"id": self._temp_id(), "name": name, "description": description, "product_count": 0}

        def apply(cache):
            _edit_list(cache, ("categories",), lambda items: [placeholder] + items)

        return optimistic_update(
            self.cache, [("categories",)], apply,
            lambda: self._request("POST", "/api/categories", json={"name": name, "description": description}),
        )

    def update_category(self, category_id: str, **fields) -> dict:
        def apply(cache):
            _edit_list(cache, ("categories",), lambda items: [
                {**c, **fields} if c.get("id") == category_id else c for c in items
            ])

        return optimistic_update(
            self.cache, [("categories",)], apply,
            lambda: self._request("PUT", f"/api/categories/{category_id}", json=fields),
        )

    def delete_category(self, category_id: str) -> dict:
        def apply(cache):
            _edit_list(cache, ("categories",), lambda items: [c for c in items if c.get("id") != category_id])

        return optimistic_update(
            self.cache, [("categories",), ("products",)], apply,
            lambda: self._request("DELETE", f"/api/categories/{category_id}"),
        )

    # Products
    def list_products(self, **filters) -> List[dict]:
        params = {k: v for k, v in filters.items() if v is not None}
        key = ("products", "list", tuple(sorted(params.items())))
        return self.cache.fetch(key, lambda: self._request("GET", "/api/products", params=params))

    def get_product(self, product_id: str) -> dict:
        return self.cache.fetch(("products", product_id), lambda: self._request("GET", f"/api/products/{product_id}"))

    def create_product(self, **fields) -> dict:
        placeholder = {"id": self._temp_id(), **fields}

        def apply(cache):
            _edit_list(cache, ("products", "list"), lambda items: [placeholder] + items)

        return optimistic_update(
            self.cache, [("products",), ("categories",), ("inventory",)], apply,
            lambda: self._request("POST", "/api/products", json=fields),
        )

    def update_product(self, product_id: str, **fields) -> dict:
        def apply(cache):
            _edit_list(cache, ("products", "list"), lambda items: [
                {**p, **fields} if p.get("id") == product_id else p for p in items
            ])
            detail = cache.get(("products", product_id))
            if detail is not None:
                cache.set(("products", product_id), {**detail, **fields})

        return optimistic_update(
            self.cache, [("products",), ("inventory",)], apply,
            lambda: self._request("PUT", f"/api/products/{product_id}", json=fields),
        )

    def delete_product(self, product_id: str) -> dict:
        def apply(cache):
            _edit_list(cache, ("products", "list"), lambda items: [p for p in items if p.get("id") != product_id])

        return optimistic_update(
            self.cache, [("products",), ("categories",), ("inventory",)], apply,
            lambda: self._request("DELETE", f"/api/products/{product_id}"),
        )

    def update_stock(self, product_id: str, stock: Optional[int] = None, adjustment: Optional[int] = None) -> dict:
        body = {"stock": stock} if stock is not None else {"adjustment": adjustment}

        def change(product: dict) -> dict:
            new_stock = stock if stock is not None else product.get("stock", 0) + adjustment
            return {**product, "stock": new_stock}

        def apply(cache):
            _edit_list(cache, ("products", "list"), lambda items: [
                change(p) if p.get("id") == product_id else p for p in items
            ])
            detail = cache.get(("products", product_id))
            if detail is not None:
                cache.set(("products", product_id), change(detail))

        return optimistic_update(
            self.cache, [("products",), ("inventory",)], apply,
            lambda: self._request("PATCH", f"/api/products/{product_id}/stock", json=body),
        )

    def inventory(self) -> dict:
        return self.cache.fetch(("inventory",), lambda: self._request("GET", "/api/products/admin/inventory"))

    # Cart
    def get_cart(self) -> dict:
        return self.cache.fetch(("cart",), lambda: self._request("GET", "/api/cart"))

    def _cart_mutation(self, method: str, path: str, **kwargs) -> dict:
        cart = self._request(method, path, **kwargs)
        self.cache.set(("cart",), cart)
        return cart

    def add_to_cart(self, product_id: str, quantity: int = 1) -> dict:
        return self._cart_mutation("POST", "/api/cart/add", json={"product_id": product_id, "quantity": quantity})

    def update_cart_item(self, product_id: str, quantity: int) -> dict:
        return self._cart_mutation("PATCH", "/api/cart/update", json={"product_id": product_id, "quantity": quantity})

    def remove_from_cart(self, product_id: str) -> dict:
        return self._cart_mutation("DELETE", f"/api/cart/remove/{product_id}")

    def clear_cart(self) -> dict:
        return self._cart_mutation("POST", "/api/cart/clear")

    # Orders
    def checkout(self, payment_type: str = "CASH") -> dict:
        try:
            return self._request("POST", "/api/orders/checkout", json={"payment_type": payment_type})
        finally:
            for prefix in [("cart",), ("orders",), ("products",), ("inventory",)]:
                self.cache.invalidate(prefix)

    def my_orders(self) -> List[dict]:
        return self.cache.fetch(("orders",), lambda: self._request("GET", "/api/orders"))

    def get_order(self, order_id: str) -> dict:
        return self.cache.fetch(("orders", order_id), lambda: self._request("GET", f"/api/orders/{order_id}"))

    def cancel_order(self, order_id: str) -> dict:
        try:
            return self._request("POST", f"/api/orders/cancel/{order_id}")
        finally:
            self.cache.invalidate(("orders",))
            self.cache.invalidate(("products",))

    def generate_qr(self, order_id: str) -> dict:
        data = self._request("POST", f"/api/orders/generate-qr/{order_id}")
        self.cache.invalidate(("orders", order_id))
        return data

    def get_qr(self, order_id: str) -> dict:
        return self._request("GET", f"/api/orders/qr/{order_id}")

    def qr_countdown(self, order_id: str) -> QRCountdown:
        return QRCountdown(self.get_qr(order_id).get("expires_at"))

    def initiate_paynow(self, order_id: str) -> dict:
        return self._request("GET", f"/api/orders/pay/paynow/{order_id}")

    def process_paynow(self, order_id: str, ref: str) -> dict:
        data = self._request("GET", f"/api/orders/pay/paynow/process/{order_id}", params={"ref": ref})
        self.cache.invalidate(("orders",))
        return data

    # Admin orders
    def all_orders(self, **filters) -> dict:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._request("GET", "/api/orders/admin/all", params=params)

    def order_stats(self) -> dict:
        return self._request("GET", "/api/orders/admin/stats")

    def scan_qr(self, qr_data: str) -> dict:
        return self._request("POST", "/api/orders/admin/scan-qr", json={"qr_data": qr_data})

    def complete_order(self, order_id: str) -> dict:
        try:
            return self._request("PATCH", f"/api/orders/admin/complete/{order_id}")
        finally:
            self.cache.invalidate(("orders",))

    def reject_order(self, order_id: str, reason: Optional[str] = None) -> dict:
        try:
            return self._request("PATCH", f"/api/orders/admin/reject/{order_id}", json={"reason": reason})
        finally:
            self.cache.invalidate(("orders",))
            self.cache.invalidate(("products",))
            self.cache.invalidate(("inventory",))
