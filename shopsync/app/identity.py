import json
import os
import secrets
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase


def _new_client_id() -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"client_{int(time.time() * 1000)}_{suffix}"


def load_identity(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError:
            return {}
    return data if isinstance(data, dict) else {}


def save_identity(path: str, data: dict) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


def get_or_create_client_id(path: str) -> str:
    """
    Per-installation id attached to every queued mutation.
    Kept in its own file so wiping the local database does not change it.
    """
    data = load_identity(path)
    client_id = str(data.get("client_id") or "").strip()
    if client_id:
        return client_id
    client_id = _new_client_id()
    save_identity(path, {**data, "client_id": client_id})
    return client_id
