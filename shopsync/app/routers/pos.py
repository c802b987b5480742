from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ...workers.images import store_image
from ..agent import SyncAgent
from ..deps import get_agent
from ..reports import build_report, period_range
from ..shop import CartLine, stock_status
from ..validation import Money, StockCount

router = APIRouter(prefix="/api", tags=["pos"])


class ProductIn(BaseModel):
    name: str = Field(min_length=1)
    category: str = ""
    buying_price: Money
    selling_price: Money
    quantity: StockCount = 0
    low_stock_level: StockCount = 7
    image_url: Optional[str] = ""


class ProductPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    category: Optional[str] = None
    buying_price: Optional[Money] = None
    selling_price: Optional[Money] = None
    low_stock_level: Optional[StockCount] = None
    image_url: Optional[str] = None


class RestockIn(BaseModel):
    amount: int = Field(gt=0)


class SaleIn(BaseModel):
    items: list[CartLine] = Field(min_length=1)


class SettingIn(BaseModel):
    value: Any = None


def _with_status(p: dict) -> dict:
    return {**p, "stock_status": stock_status(p)}


@router.get("/products")
async def list_products(agent: SyncAgent = Depends(get_agent)):
    return {"products": [_with_status(p) for p in await agent.shop.list_products()]}


@router.post("/products")
async def create_product(data: ProductIn, agent: SyncAgent = Depends(get_agent)):
    product = await agent.shop.create_product(data.model_dump())
    return {"product": _with_status(product)}


@router.get("/products/{product_id}")
async def get_product(product_id: str, agent: SyncAgent = Depends(get_agent)):
    product = await agent.shop.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return {"product": _with_status(product)}


@router.patch("/products/{product_id}")
async def update_product(product_id: str, data: ProductPatch, agent: SyncAgent = Depends(get_agent)):
    product = await agent.shop.update_product(product_id, data.model_dump(exclude_unset=True))
    return {"product": _with_status(product)}


@router.post("/products/{product_id}/restock")
async def restock_product(product_id: str, data: RestockIn, agent: SyncAgent = Depends(get_agent)):
    product = await agent.shop.restock(product_id, data.amount)
    return {"product": _with_status(product)}


@router.delete("/products/{product_id}")
async def delete_product(product_id: str, agent: SyncAgent = Depends(get_agent)):
    await agent.shop.delete_product(product_id)
    return {"ok": True}


@router.post("/products/{product_id}/images")
async def upload_product_image(product_id: str, request: Request, filename: str = "image.webp", agent: SyncAgent = Depends(get_agent)):
    if not await agent.shop.get_product(product_id):
        raise HTTPException(status_code=404, detail="product not found")
    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="empty body")
    mimetype = (request.headers.get("content-type") or "image/webp").split(";", 1)[0].strip()
    image = await store_image(agent.store, product_id, data, filename, mimetype)
    return {"image": image}


@router.get("/sales")
async def list_sales(limit: Optional[int] = None, agent: SyncAgent = Depends(get_agent)):
    return {"sales": await agent.shop.list_sales(limit=limit)}


@router.post("/sales")
async def record_sale(data: SaleIn, agent: SyncAgent = Depends(get_agent)):
    sales = await agent.shop.record_sale([line.model_dump() for line in data.items])
    return {"sales": sales, "total": round(sum(s["total_price"] for s in sales), 2)}


@router.get("/notifications")
async def list_notifications(include_cleared: bool = False, agent: SyncAgent = Depends(get_agent)):
    return {"notifications": await agent.shop.list_notifications(include_cleared=include_cleared)}


@router.post("/notifications/clear-all")
async def clear_all_notifications(agent: SyncAgent = Depends(get_agent)):
    return {"cleared": await agent.shop.clear_all_notifications()}


@router.post("/notifications/{notification_id}/clear")
async def clear_notification(notification_id: str, agent: SyncAgent = Depends(get_agent)):
    if not await agent.shop.clear_notification(notification_id):
        raise HTTPException(status_code=404, detail="notification not found")
    return {"ok": True}


@router.get("/settings/{key}")
async def get_setting(key: str, agent: SyncAgent = Depends(get_agent)):
    return {"key": key, "value": await agent.shop.get_setting(key)}


@router.put("/settings/{key}")
async def set_setting(key: str, data: SettingIn, agent: SyncAgent = Depends(get_agent)):
    return {"setting": await agent.shop.set_setting(key, data.value)}


@router.get("/reports/summary")
async def report_summary(
    period: Literal["daily", "weekly", "monthly", "all"] = "daily",
    agent: SyncAgent = Depends(get_agent),
):
    start, end = (None, None) if period == "all" else period_range(period)
    products = await agent.store.list("products")
    sales = await agent.store.list("sales")
    return {"period": period, **build_report(products, sales, start=start, end=end)}
