from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .validation import (
    CollectionName,
    Money,
    MutationStatus,
    NotificationType,
    Operation,
    RecordId,
    StockCount,
)


# Tables that exist on the remote backend. `images` only travels through object storage.
REMOTE_COLLECTIONS: tuple[str, ...] = ("products", "sales", "notifications", "settings")

# Ids minted while offline carry a per-collection marker until the first push assigns a UUID.
PLACEHOLDER_PREFIXES: dict[str, str] = {
    "products": "local_",
    "sales": "sale_",
    "notifications": "notif_",
    "settings": "setting_",
    "images": "img_",
}

# collection -> {fk field -> referenced collection}
FOREIGN_KEYS: dict[str, dict[str, str]] = {
    "sales": {"product_id": "products"},
    "notifications": {"product_id": "products"},
    "images": {"product_id": "products"},
}

LOCAL_ONLY_FIELDS = frozenset({"synced", "last_synced_at"})

DEFAULT_LOW_STOCK_LEVEL = 7

_ID_ALPHABET = string.digits + string.ascii_lowercase


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def mint_placeholder(collection: str) -> str:
    prefix = PLACEHOLDER_PREFIXES[collection]
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}{int(time.time() * 1000)}_{suffix}"


def is_placeholder(collection: str, record_id: Optional[str]) -> bool:
    prefix = PLACEHOLDER_PREFIXES.get(collection)
    return bool(prefix) and str(record_id or "").startswith(prefix)


# ---------------------------------------------------------------------------
# Entities (local store rows)
# ---------------------------------------------------------------------------

class _Entity(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Product(_Entity):
    id: RecordId
    name: str
    category: str = ""
    buying_price: Money = 0
    selling_price: Money = 0
    quantity: int = 0
    low_stock_level: int = DEFAULT_LOW_STOCK_LEVEL
    image_url: Optional[str] = ""
    created_at: str
    updated_at: str
    synced: bool = False
    last_synced_at: Optional[str] = None


class Sale(_Entity):
    id: RecordId
    product_id: Optional[str] = None
    product_name: str
    quantity_sold: int = Field(gt=0)
    unit_price: Money
    total_price: Money
    sale_date: str
    created_at: str
    synced: bool = False
    last_synced_at: Optional[str] = None


class Notification(_Entity):
    id: RecordId
    type: NotificationType
    message: str
    product_id: Optional[str] = None
    created_at: str
    cleared: bool = False
    synced: bool = False


class Setting(_Entity):
    id: RecordId
    key: str
    value: Any = None
    created_at: str
    updated_at: str
    synced: bool = False


class ImageAsset(_Entity):
    id: RecordId
    product_id: str
    filename: str
    content_hash: str
    size: int
    mimetype: str = "image/webp"
    remote_url: Optional[str] = None
    data: Optional[bytes] = None
    created_at: str
    synced: bool = False
    last_synced_at: Optional[str] = None


class Mutation(_Entity):
    id: str
    client_id: str
    collection: CollectionName
    operation: Operation
    record_id: RecordId
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    seq: int = 0
    status: MutationStatus = "pending"
    retries: int = 0
    last_error: Optional[str] = None


class SyncMetadata(_Entity):
    client_id: str
    last_synced_at: Optional[str] = None


ENTITY_MODELS: dict[str, type[_Entity]] = {
    "products": Product,
    "sales": Sale,
    "notifications": Notification,
    "settings": Setting,
    "images": ImageAsset,
}


def remote_fields(collection: str) -> list[str]:
    model = ENTITY_MODELS[collection]
    return [name for name in model.model_fields if name not in LOCAL_ONLY_FIELDS]


# ---------------------------------------------------------------------------
# Mutation payloads: one model per (collection, operation) tag
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProductInsert(_Payload):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    category: str = ""
    buying_price: Money
    selling_price: Money
    quantity: StockCount
    low_stock_level: StockCount = DEFAULT_LOW_STOCK_LEVEL
    image_url: Optional[str] = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProductUpdate(_Payload):
    name: Optional[str] = Field(default=None, min_length=1)
    category: Optional[str] = None
    buying_price: Optional[Money] = None
    selling_price: Optional[Money] = None
    quantity: Optional[StockCount] = None
    low_stock_level: Optional[StockCount] = None
    image_url: Optional[str] = None
    updated_at: Optional[str] = None


class SaleInsert(_Payload):
    id: Optional[str] = None
    product_id: Optional[str] = None
    product_name: str
    quantity_sold: int = Field(gt=0)
    unit_price: Money
    total_price: Money
    sale_date: str
    created_at: Optional[str] = None

    @model_validator(mode="after")
    def _total_matches(self):
        if abs(round(self.unit_price * self.quantity_sold, 2) - self.total_price) > 0.005:
            raise ValueError("total_price must equal unit_price * quantity_sold")
        return self


class SaleUpdate(_Payload):
    # Sales are immutable apart from the product reference rewritten by id remapping.
    product_id: Optional[str] = None


class NotificationInsert(_Payload):
    id: Optional[str] = None
    type: NotificationType
    message: str
    product_id: Optional[str] = None
    cleared: bool = False
    created_at: Optional[str] = None


class NotificationUpdate(_Payload):
    message: Optional[str] = None
    cleared: Optional[bool] = None
    product_id: Optional[str] = None


class SettingInsert(_Payload):
    id: Optional[str] = None
    key: str = Field(min_length=1)
    value: Any = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class SettingUpdate(_Payload):
    key: Optional[str] = Field(default=None, min_length=1)
    value: Any = None
    updated_at: Optional[str] = None


class DeletePayload(_Payload):
    pass


PAYLOAD_MODELS: dict[tuple[str, str], type[_Payload]] = {
    ("products", "insert"): ProductInsert,
    ("products", "update"): ProductUpdate,
    ("products", "delete"): DeletePayload,
    ("sales", "insert"): SaleInsert,
    ("sales", "update"): SaleUpdate,
    ("sales", "delete"): DeletePayload,
    ("notifications", "insert"): NotificationInsert,
    ("notifications", "update"): NotificationUpdate,
    ("notifications", "delete"): DeletePayload,
    ("settings", "insert"): SettingInsert,
    ("settings", "update"): SettingUpdate,
    ("settings", "delete"): DeletePayload,
}


def validate_payload(collection: str, operation: str, payload: Optional[dict[str, Any]]) -> dict[str, Any]:
    model = PAYLOAD_MODELS.get((collection, operation))
    if model is None:
        raise ValueError(f"unsupported mutation: {operation} {collection}")
    clean = model.model_validate(payload or {}).model_dump(mode="json", exclude_unset=True)
    if operation == "update" and not clean:
        raise ValueError(f"empty update for {collection}")
    return clean
