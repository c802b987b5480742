from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, Field, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_enum_str(v):
    # "weekly-report" / "Weekly Report" -> "weekly_report"
    if v is None:
        return v
    return "_".join(str(v).strip().lower().replace("-", " ").split())


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Collections mirror the remote tables; `images` is local-only (pushed through object storage).
CollectionName = Annotated[
    Literal["products", "sales", "notifications", "settings", "images"],
    BeforeValidator(_to_lower_str),
]
Operation = Annotated[Literal["insert", "update", "delete"], BeforeValidator(_to_lower_str)]
MutationStatus = Annotated[Literal["pending", "synced", "failed"], BeforeValidator(_to_lower_str)]
NotificationType = Annotated[
    Literal["low_stock", "weekly_report", "monthly_report", "info"],
    BeforeValidator(_to_enum_str),
]

RecordId = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=128)]
Money = Annotated[float, Field(ge=0)]
StockCount = Annotated[int, Field(ge=0)]
