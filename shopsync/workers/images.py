import hashlib
from typing import Any, Optional

from ..app.db import LocalStore
from ..app.jsonlog import json_log
from ..app.models import ImageAsset, is_placeholder, mint_placeholder, utcnow_iso
from ..app.storage.s3 import S3ObjectStorage


async def store_image(
    store: LocalStore,
    product_id: str,
    data: bytes,
    filename: str,
    mimetype: str = "image/webp",
) -> dict[str, Any]:
    """Keep an image locally until the next sync uploads it (works offline)."""
    if not data:
        raise ValueError("empty image")
    asset = ImageAsset(
        id=mint_placeholder("images"),
        product_id=product_id,
        filename=filename or "image.webp",
        content_hash=hashlib.sha256(data).hexdigest(),
        size=len(data),
        mimetype=mimetype or "image/webp",
        data=data,
        created_at=utcnow_iso(),
        synced=False,
    )
    await store.add("images", asset.model_dump())
    return asset.model_dump(exclude={"data"})


def image_path(product_id: str, image_id: str) -> str:
    return f"{product_id}/{image_id}.webp"


class ImageSync:
    def __init__(self, store: LocalStore, storage: Optional[S3ObjectStorage], *, prefix: str = "") -> None:
        self.store = store
        self.storage = storage
        self.prefix = prefix.strip("/")

    async def sync_images(self, mappings: Optional[dict[str, dict[str, str]]] = None) -> dict[str, int]:
        summary = {"synced": 0, "failed": 0, "skipped": 0}
        if self.storage is None:
            return summary
        product_ids = (mappings or {}).get("products") or {}

        for image in await self.store.list("images", {"synced": False}, order_by="created_at"):
            product_id = product_ids.get(image["product_id"], image["product_id"])
            if is_placeholder("products", product_id):
                # Uploaded under the server id once the product itself has been pushed.
                summary["skipped"] += 1
                continue
            if not image.get("data"):
                json_log("warning", "sync.images.missing_blob", image_id=image["id"])
                summary["skipped"] += 1
                continue
            path = image_path(product_id, image["id"])
            if self.prefix:
                path = f"{self.prefix}/{path}"
            try:
                await self.storage.upload(path, image["data"], image.get("mimetype") or "image/webp", upsert=True)
                url = self.storage.public_url(path)
                await self.store.update(
                    "images",
                    image["id"],
                    {
                        "remote_url": url,
                        "product_id": product_id,
                        "synced": True,
                        "last_synced_at": utcnow_iso(),
                        "data": None,
                    },
                )
            except Exception as ex:
                summary["failed"] += 1
                json_log("error", "sync.images.upload_failed", image_id=image["id"], path=path, error=str(ex))
                continue
            summary["synced"] += 1

        json_log("info", "sync.images.done", **summary)
        return summary
