from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional


def sale_profit(sale: dict[str, Any], buying_price: float) -> float:
    # total_price is the price actually charged at sale time; never recomputed.
    return float(sale.get("total_price") or 0) - float(buying_price or 0) * int(sale.get("quantity_sold") or 0)


def margin_pct(profit: float, revenue: float) -> float:
    return (profit / revenue) * 100 if revenue else 0.0


def period_range(kind: str, now: Optional[datetime] = None) -> tuple[str, str]:
    """
    ISO bounds for a report period: "daily" (today), "weekly" (since Sunday) or "monthly"
    (calendar month). Both ends inclusive.
    """
    now = now or datetime.now(timezone.utc)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if kind == "daily":
        start, end = day_start, day_start + timedelta(days=1)
    elif kind == "weekly":
        # Python weekday(): Monday=0 .. Sunday=6; weeks start on Sunday.
        start = day_start - timedelta(days=(now.weekday() + 1) % 7)
        end = day_start + timedelta(days=1)
    elif kind == "monthly":
        start = day_start.replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
    else:
        raise ValueError(f"unknown report period: {kind}")
    return start.isoformat(), (end - timedelta(microseconds=1)).isoformat()


def build_report(
    products: Iterable[dict[str, Any]],
    sales: Iterable[dict[str, Any]],
    *,
    start: Optional[str] = None,
    end: Optional[str] = None,
    top_n: int = 5,
) -> dict[str, Any]:
    products = list(products)
    by_id = {p["id"]: p for p in products}
    by_name = {p["name"]: p for p in products}

    rows = [
        s
        for s in sales
        if (start is None or str(s.get("sale_date") or "") >= start)
        and (end is None or str(s.get("sale_date") or "") <= end)
    ]

    per_product: dict[str, dict[str, Any]] = {}
    sales_by_time: list[dict[str, Any]] = []
    for s in rows:
        product = by_id.get(s.get("product_id")) or by_name.get(s.get("product_name"))
        buying_price = float((product or {}).get("buying_price") or 0)
        qty = int(s.get("quantity_sold") or 0)
        revenue = float(s.get("total_price") or 0)
        profit = sale_profit(s, buying_price)
        name = s.get("product_name") or (product or {}).get("name") or ""

        agg = per_product.setdefault(name, {"name": name, "quantity": 0, "revenue": 0.0, "cost": 0.0, "profit": 0.0})
        agg["quantity"] += qty
        agg["revenue"] += revenue
        agg["cost"] += buying_price * qty
        agg["profit"] += profit
        sales_by_time.append(
            {"id": s.get("id"), "product_name": name, "sale_date": s.get("sale_date"), "revenue": revenue, "profit": profit}
        )

    total_revenue = sum(p["revenue"] for p in per_product.values())
    total_cost = sum(p["cost"] for p in per_product.values())
    total_profit = sum(p["profit"] for p in per_product.values())

    by_quantity = sorted(per_product.values(), key=lambda p: p["quantity"], reverse=True)
    sold_names = set(per_product.keys())
    unsold = [{"name": p["name"], "quantity": 0} for p in products if p["name"] not in sold_names]
    slow = [{"name": p["name"], "quantity": p["quantity"]} for p in reversed(by_quantity)][:3] + unsold[:2]

    return {
        "start": start,
        "end": end,
        "total_revenue": round(total_revenue, 2),
        "total_cost": round(total_cost, 2),
        "total_profit": round(total_profit, 2),
        "margin_pct": round(margin_pct(total_profit, total_revenue), 2),
        "items_sold": sum(p["quantity"] for p in per_product.values()),
        "transactions": len(rows),
        "top_selling": [
            {"name": p["name"], "quantity": p["quantity"], "revenue": p["revenue"], "profit": p["profit"]}
            for p in by_quantity[:top_n]
        ],
        "slow_selling": slow[:top_n],
        "profit_by_product": [
            {"name": p["name"], "profit": p["profit"], "margin_pct": round(margin_pct(p["profit"], p["revenue"]), 2)}
            for p in sorted(per_product.values(), key=lambda p: p["profit"], reverse=True)
        ],
        "sales_by_time": sorted(sales_by_time, key=lambda r: str(r["sale_date"] or ""), reverse=True),
    }
