import os
from typing import List


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("SHOPSYNC_ENV", "local")
        self.db_path = os.getenv("SHOPSYNC_DB_PATH", "shopsync.sqlite")
        # Lives outside the local database so a store reset keeps the same client id.
        self.identity_path = os.getenv("SHOPSYNC_IDENTITY_PATH", "shopsync-client.json")

        # Remote backend: "postgrest" (Supabase REST) or "postgres" (direct connection).
        self.remote = (os.getenv("SHOPSYNC_REMOTE", "postgrest").strip().lower() or "postgrest")
        self.supabase_url = (os.getenv("SUPABASE_URL") or "").strip()
        self.supabase_key = (os.getenv("SUPABASE_KEY") or "").strip()
        self.database_url = os.getenv("DATABASE_URL", "postgresql://localhost/shopsync")

        # Reachability probe: any same-origin resource that answers HEAD quickly.
        self.probe_url = (os.getenv("SHOPSYNC_PROBE_URL") or "").strip() or (
            f"{self.supabase_url.rstrip('/')}/rest/v1/" if self.supabase_url else ""
        )
        self.probe_timeout_s = _env_float("SHOPSYNC_PROBE_TIMEOUT_S", 1.0)
        self.probe_retry_delay_s = _env_float("SHOPSYNC_PROBE_RETRY_DELAY_S", 1.0)
        self.request_timeout_s = _env_float("SHOPSYNC_REQUEST_TIMEOUT_S", 5.0)

        self.sync_debounce_s = _env_float("SHOPSYNC_SYNC_DEBOUNCE_S", 1.0)
        self.auto_sync_interval_s = _env_float("SHOPSYNC_AUTO_SYNC_INTERVAL_S", 60.0)
        self.max_retries = _env_int("SHOPSYNC_MAX_RETRIES", 5)
        # Probe the backend (and start auto-sync) as soon as the local API is up.
        self.auto_connect = (os.getenv("SHOPSYNC_AUTO_CONNECT", "1").strip().lower() not in {"0", "false", "no", "off"})

        self.image_prefix = (os.getenv("SHOPSYNC_IMAGE_PREFIX") or "").strip().strip("/")

        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"


settings = Settings()
