import json

from shopsync.app.identity import get_or_create_client_id, load_identity


def test_client_id_is_created_once(tmp_path):
    path = str(tmp_path / "state" / "identity.json")

    first = get_or_create_client_id(path)
    second = get_or_create_client_id(path)

    assert first.startswith("client_")
    assert first == second
    assert load_identity(path) == {"client_id": first}


def test_corrupt_identity_file_is_replaced(tmp_path):
    path = tmp_path / "identity.json"
    path.write_text("{not json", encoding="utf-8")

    client_id = get_or_create_client_id(str(path))

    assert json.loads(path.read_text(encoding="utf-8"))["client_id"] == client_id


def test_other_keys_are_preserved(tmp_path):
    path = tmp_path / "identity.json"
    path.write_text(json.dumps({"device_name": "till-1"}), encoding="utf-8")

    client_id = get_or_create_client_id(str(path))

    assert load_identity(str(path)) == {"device_name": "till-1", "client_id": client_id}
