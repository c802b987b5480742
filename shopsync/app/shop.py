"""
Shop operations: every user-facing write lands in the local store first and is then queued
for the remote backend. Nothing here waits on the network.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from .db import LocalStore
from .models import (
    DEFAULT_LOW_STOCK_LEVEL,
    NotificationInsert,
    ProductInsert,
    ProductUpdate,
    mint_placeholder,
    utcnow_iso,
)
from .outbox import MutationQueue
from .validation import RecordId


class CartLine(BaseModel):
    product_id: RecordId
    quantity: int = Field(gt=0)


def stock_status(product: dict[str, Any]) -> str:
    qty = int(product.get("quantity") or 0)
    threshold = product.get("low_stock_level")
    threshold = DEFAULT_LOW_STOCK_LEVEL if threshold is None else int(threshold)
    if qty <= 0:
        return "out_of_stock"
    if qty <= threshold:
        return "low_stock"
    return "in_stock"


class ShopOperations:
    def __init__(self, store: LocalStore, queue: MutationQueue) -> None:
        self.store = store
        self.queue = queue

    # Products

    async def list_products(self) -> list[dict[str, Any]]:
        return await self.store.list("products", order_by="name")

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]:
        return await self.store.get("products", product_id)

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        clean = ProductInsert.model_validate(data).model_dump(mode="json")
        now = utcnow_iso()
        product_id = mint_placeholder("products")
        record = {**clean, "id": product_id, "created_at": now, "updated_at": now}
        await self.store.add("products", {**record, "synced": False})
        await self.queue.enqueue("products", "insert", product_id, record)
        return await self.store.get("products", product_id)

    async def update_product(self, product_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        if "quantity" in fields:
            raise ValueError("quantity changes only through restock or a sale")
        current = await self._require_product(product_id)
        patch = ProductUpdate.model_validate(fields).model_dump(mode="json", exclude_unset=True)
        if not patch:
            return current
        patch["updated_at"] = utcnow_iso()
        await self.store.update("products", product_id, {**patch, "synced": False})
        await self.queue.enqueue("products", "update", product_id, patch)
        return await self.store.get("products", product_id)

    async def restock(self, product_id: str, amount: int) -> dict[str, Any]:
        if int(amount) <= 0:
            raise ValueError("restock amount must be positive")
        current = await self._require_product(product_id)
        return await self._set_quantity(current, int(current.get("quantity") or 0) + int(amount))

    async def delete_product(self, product_id: str) -> None:
        await self._require_product(product_id)
        await self.store.delete("products", product_id)
        await self.queue.enqueue("products", "delete", product_id, {})

    async def _require_product(self, product_id: str) -> dict[str, Any]:
        product = await self.store.get("products", product_id)
        if not product:
            raise LookupError(f"product not found: {product_id}")
        return product

    async def _set_quantity(self, product: dict[str, Any], quantity: int) -> dict[str, Any]:
        patch = {"quantity": quantity, "updated_at": utcnow_iso()}
        await self.store.update("products", product["id"], {**patch, "synced": False})
        await self.queue.enqueue("products", "update", product["id"], patch)
        return {**product, **patch, "synced": False}

    # Sales

    async def list_sales(self, limit: Optional[int] = None) -> list[dict[str, Any]]:
        return await self.store.list("sales", order_by="sale_date", desc=True, limit=limit)

    async def record_sale(self, cart: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Check out a cart. Each line becomes one sale row (unit price and product name are
        snapshotted) and one stock decrement. The whole cart is rejected if any line would
        sell more than is on hand.
        """
        lines = [CartLine.model_validate(line) for line in cart]
        if not lines:
            raise ValueError("cart is empty")

        wanted: dict[str, int] = {}
        for line in lines:
            wanted[line.product_id] = wanted.get(line.product_id, 0) + line.quantity
        products: dict[str, dict[str, Any]] = {}
        for product_id, qty in wanted.items():
            product = await self._require_product(product_id)
            on_hand = int(product.get("quantity") or 0)
            if qty > on_hand:
                raise ValueError(f"insufficient stock for {product['name']}: {on_hand} on hand, {qty} requested")
            products[product_id] = product

        sale_date = utcnow_iso()
        sales: list[dict[str, Any]] = []
        for line in lines:
            product = products[line.product_id]
            unit_price = float(product.get("selling_price") or 0)
            sale_id = mint_placeholder("sales")
            record = {
                "id": sale_id,
                "product_id": product["id"],
                "product_name": product["name"],
                "quantity_sold": line.quantity,
                "unit_price": unit_price,
                "total_price": round(unit_price * line.quantity, 2),
                "sale_date": sale_date,
                "created_at": sale_date,
            }
            products[line.product_id] = await self._set_quantity(
                product, int(product.get("quantity") or 0) - line.quantity
            )
            await self.store.add("sales", {**record, "synced": False})
            await self.queue.enqueue("sales", "insert", sale_id, record)
            sales.append({**record, "synced": False})
        return sales

    # Notifications

    async def list_notifications(self, include_cleared: bool = False) -> list[dict[str, Any]]:
        where = None if include_cleared else {"cleared": False}
        return await self.store.list("notifications", where, order_by="created_at", desc=True)

    async def create_notification(
        self, type: str, message: str, product_id: Optional[str] = None
    ) -> dict[str, Any]:
        clean = NotificationInsert(type=type, message=message, product_id=product_id).model_dump(mode="json")
        notif_id = mint_placeholder("notifications")
        record = {**clean, "id": notif_id, "created_at": utcnow_iso()}
        await self.store.add("notifications", {**record, "synced": False})
        await self.queue.enqueue("notifications", "insert", notif_id, record)
        return {**record, "synced": False}

    async def clear_notification(self, notification_id: str) -> bool:
        n = await self.store.update("notifications", notification_id, {"cleared": True, "synced": False})
        if not n:
            return False
        await self.queue.enqueue("notifications", "update", notification_id, {"cleared": True})
        return True

    async def clear_all_notifications(self) -> int:
        pending = await self.store.list("notifications", {"cleared": False})
        for notif in pending:
            await self.clear_notification(notif["id"])
        return len(pending)

    # Settings

    async def get_setting(self, key: str) -> Any:
        rows = await self.store.list("settings", {"key": key}, order_by="updated_at", desc=True, limit=1)
        return rows[0]["value"] if rows else None

    async def set_setting(self, key: str, value: Any) -> dict[str, Any]:
        now = utcnow_iso()
        rows = await self.store.list("settings", {"key": key}, order_by="updated_at", desc=True, limit=1)
        if rows:
            setting_id = rows[0]["id"]
            await self.store.update("settings", setting_id, {"value": value, "updated_at": now, "synced": False})
            await self.queue.enqueue("settings", "update", setting_id, {"value": value, "updated_at": now})
            return await self.store.get("settings", setting_id)
        setting_id = mint_placeholder("settings")
        record = {"id": setting_id, "key": key, "value": value, "created_at": now, "updated_at": now}
        await self.store.add("settings", {**record, "synced": False})
        await self.queue.enqueue("settings", "insert", setting_id, record)
        return {**record, "synced": False}
