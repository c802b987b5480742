from shopsync.workers.images import store_image
from shopsync.workers.remap import ReferenceRemapper


async def _sale(store, sale_id, product_id, synced=True):
    await store.add(
        "sales",
        {
            "id": sale_id,
            "product_id": product_id,
            "product_name": "Hair Cream",
            "quantity_sold": 1,
            "unit_price": 500,
            "total_price": 500,
            "sale_date": "2026-01-01T10:00:00+00:00",
            "created_at": "2026-01-01T10:00:00+00:00",
            "synced": synced,
        },
    )


async def test_rewrites_references_across_collections(store, queue):
    placeholder = "local_1700000000000_abcdefghi"
    await _sale(store, "0f4b8a9e-1111-4000-8000-000000000001", placeholder)
    await _sale(store, "sale_1700000000001_abcdefghi", placeholder, synced=False)
    await store.add(
        "notifications",
        {"id": "n-1", "type": "low_stock", "message": "low", "product_id": placeholder, "created_at": "1", "synced": True},
    )
    image = await store_image(store, placeholder, b"webp-bytes", "front.webp")

    summary = await ReferenceRemapper(store, queue).apply({"products": {placeholder: "uuid-p"}})

    assert summary == {"rewritten": 4, "enqueued": 2}
    assert (await store.get("sales", "0f4b8a9e-1111-4000-8000-000000000001"))["product_id"] == "uuid-p"
    assert (await store.get("sales", "sale_1700000000001_abcdefghi"))["product_id"] == "uuid-p"
    assert (await store.get("notifications", "n-1"))["product_id"] == "uuid-p"
    assert (await store.get("images", image["id"]))["product_id"] == "uuid-p"

    queued = {(m.collection, m.record_id): m.payload for m in await queue.list_pending()}
    assert queued == {
        ("sales", "0f4b8a9e-1111-4000-8000-000000000001"): {"product_id": "uuid-p"},
        ("notifications", "n-1"): {"product_id": "uuid-p"},
    }
    assert (await store.get("sales", "0f4b8a9e-1111-4000-8000-000000000001"))["synced"] is False


async def test_empty_mapping_is_a_no_op(store, queue):
    await _sale(store, "s-1", "local_x")
    assert await ReferenceRemapper(store, queue).apply({}) == {"rewritten": 0, "enqueued": 0}
    assert await ReferenceRemapper(store, queue).apply({"products": {}}) == {"rewritten": 0, "enqueued": 0}
    assert (await store.get("sales", "s-1"))["product_id"] == "local_x"
