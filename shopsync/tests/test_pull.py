from shopsync.workers.pull import PullReconciler


def _remote_product(pid="8b0c1b52-0000-4000-8000-000000000001", **extra):
    return {
        "id": pid,
        "name": "Hair Cream",
        "category": "Hair",
        "buying_price": 200,
        "selling_price": 500,
        "quantity": 10,
        "low_stock_level": 7,
        "image_url": "",
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
        **extra,
    }


def _dump(store):
    return list(store._conn.iterdump())


async def test_pull_upserts_remote_rows_as_synced(store, remote):
    remote.tables["products"]["p1"] = _remote_product("p1")
    remote.tables["settings"]["s1"] = {
        "id": "s1",
        "key": "currency",
        "value": {"code": "KES"},
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }

    summary = await PullReconciler(store, remote).pull_all()

    assert summary["ok"] is True
    assert summary["collections"]["products"] == {"pulled": 1, "changed": 1, "invalid": 0, "error": None}
    p = await store.get("products", "p1")
    assert p["synced"] is True
    assert p["last_synced_at"]
    assert p["selling_price"] == 500
    assert (await store.get("settings", "s1"))["value"] == {"code": "KES"}


async def test_pull_twice_is_byte_for_byte_identical(store, remote):
    remote.tables["products"]["p1"] = _remote_product("p1")
    remote.tables["notifications"]["n1"] = {
        "id": "n1",
        "type": "low_stock",
        "message": "Hair Cream is running low",
        "product_id": "p1",
        "created_at": "2026-01-01T00:00:00+00:00",
        "cleared": False,
    }
    puller = PullReconciler(store, remote)

    await puller.pull_all()
    first = _dump(store)
    summary = await puller.pull_all()

    assert _dump(store) == first
    assert summary["collections"]["products"]["changed"] == 0


async def test_pull_server_wins_and_never_deletes_local_rows(store, remote):
    await store.put(
        "products",
        {**_remote_product("p1"), "name": "Local edit", "synced": False},
    )
    await store.put("products", {**_remote_product("local_1_abc"), "synced": False})
    remote.tables["products"]["p1"] = _remote_product("p1", name="Server name")

    await PullReconciler(store, remote).pull_all()

    assert (await store.get("products", "p1"))["name"] == "Server name"
    assert (await store.get("products", "p1"))["synced"] is True
    local_only = await store.get("products", "local_1_abc")
    assert local_only is not None and local_only["synced"] is False


async def test_missing_relation_counts_as_empty(store, remote):
    remote.missing = {"products", "sales", "notifications", "settings"}

    summary = await PullReconciler(store, remote).pull_all()

    assert summary["ok"] is True
    for name in ("products", "sales", "notifications", "settings"):
        assert summary["collections"][name]["pulled"] == 0
        assert summary["collections"][name]["error"] is None
    assert await store.count("products") == 0


async def test_one_failing_collection_does_not_stop_the_others(store, remote):
    remote.failing_tables = {"sales"}
    remote.tables["products"]["p1"] = _remote_product("p1")

    summary = await PullReconciler(store, remote).pull_all()

    assert summary["ok"] is False
    assert summary["collections"]["sales"]["error"]
    assert summary["collections"]["products"]["changed"] == 1
    assert await store.get("products", "p1") is not None


async def test_invalid_remote_rows_are_skipped(store, remote):
    remote.tables["products"]["p1"] = _remote_product("p1")
    remote.tables["products"]["bad"] = {"id": "bad", "name": "no timestamps"}

    summary = await PullReconciler(store, remote).pull_all()

    assert summary["collections"]["products"]["invalid"] == 1
    assert await store.get("products", "bad") is None


async def test_queued_local_updates_survive_a_pull(store, queue, remote):
    await store.put("products", {**_remote_product("p1", quantity=9), "synced": False})
    await queue.enqueue("products", "update", "p1", {"quantity": 9, "updated_at": "2026-01-02T00:00:00+00:00"})
    remote.tables["products"]["p1"] = _remote_product("p1", name="Server name")
    puller = PullReconciler(store, remote, queue=queue)

    await puller.pull_all()
    first = _dump(store)
    summary = await puller.pull_all()

    local = await store.get("products", "p1")
    assert local["quantity"] == 9
    assert local["name"] == "Server name"
    assert local["synced"] is False
    assert summary["collections"]["products"]["changed"] == 0
    assert _dump(store) == first


async def test_parked_updates_also_survive_a_pull(store, queue, remote):
    await store.put("products", {**_remote_product("p1", quantity=4), "synced": False})
    m = await queue.enqueue("products", "update", "p1", {"quantity": 4})
    for _ in range(5):
        await queue.mark_failed(m.id, "rejected")
    remote.tables["products"]["p1"] = _remote_product("p1")

    await PullReconciler(store, remote, queue=queue).pull_all()

    assert (await store.get("products", "p1"))["quantity"] == 4
