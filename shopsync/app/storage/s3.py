import asyncio
import os
from dataclasses import dataclass
from typing import Optional

PRODUCT_IMAGES_BUCKET = "product-images"


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str
    use_ssl: bool
    public_base_url: str


def get_s3_config() -> Optional[S3Config]:
    endpoint = (os.environ.get("S3_ENDPOINT_URL") or "").strip()
    access = (os.environ.get("S3_ACCESS_KEY_ID") or "").strip()
    secret = (os.environ.get("S3_SECRET_ACCESS_KEY") or "").strip()
    bucket = (os.environ.get("S3_BUCKET") or PRODUCT_IMAGES_BUCKET).strip() or PRODUCT_IMAGES_BUCKET
    region = (os.environ.get("S3_REGION") or "us-east-1").strip() or "us-east-1"
    use_ssl_raw = (os.environ.get("S3_USE_SSL") or "").strip().lower()
    use_ssl = use_ssl_raw not in {"0", "false", "no"}
    public_base = (os.environ.get("S3_PUBLIC_BASE_URL") or "").strip().rstrip("/")

    if not endpoint or not access or not secret:
        return None
    return S3Config(
        endpoint_url=endpoint,
        access_key_id=access,
        secret_access_key=secret,
        bucket=bucket,
        region=region,
        use_ssl=use_ssl,
        public_base_url=public_base or f"{endpoint.rstrip('/')}/{bucket}",
    )


def _client(cfg: S3Config):
    import boto3
    from botocore.config import Config

    # Force v4 signatures so MinIO works consistently.
    bc = Config(signature_version="s3v4", s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        endpoint_url=cfg.endpoint_url,
        aws_access_key_id=cfg.access_key_id,
        aws_secret_access_key=cfg.secret_access_key,
        region_name=cfg.region,
        use_ssl=cfg.use_ssl,
        config=bc,
    )


class ObjectExistsError(RuntimeError):
    pass


def put_bytes(cfg: S3Config, *, key: str, data: bytes, content_type: str, upsert: bool = True, client=None) -> str:
    c = client or _client(cfg)
    if not upsert:
        from botocore.exceptions import ClientError

        try:
            c.head_object(Bucket=cfg.bucket, Key=key)
        except ClientError as ex:
            status = (ex.response or {}).get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status != 404:
                raise
        else:
            raise ObjectExistsError(f"object exists: {key}")
    res = c.put_object(
        Bucket=cfg.bucket,
        Key=key,
        Body=data or b"",
        ContentType=content_type or "application/octet-stream",
    )
    etag = (res.get("ETag") or "").strip('"')  # ETag is often quoted.
    return etag


class S3ObjectStorage:
    """
    Object storage for product images (S3 / MinIO / Supabase storage S3 endpoint).
    boto3 is blocking, so uploads run in a worker thread and never touch the local store.
    """

    def __init__(self, cfg: S3Config, client=None) -> None:
        self.cfg = cfg
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = _client(self.cfg)
        return self._client

    async def upload(self, path: str, data: bytes, content_type: str = "image/webp", *, upsert: bool = True) -> str:
        return await asyncio.to_thread(
            put_bytes,
            self.cfg,
            key=path,
            data=data,
            content_type=content_type,
            upsert=upsert,
            client=self._get_client(),
        )

    def public_url(self, path: str) -> str:
        return f"{self.cfg.public_base_url}/{path.lstrip('/')}"
