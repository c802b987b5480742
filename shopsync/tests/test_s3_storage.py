import pytest
from botocore.exceptions import ClientError

from shopsync.app.storage.s3 import ObjectExistsError, S3Config, S3ObjectStorage, get_s3_config


CFG = S3Config(
    endpoint_url="http://minio.test:9000",
    access_key_id="key",
    secret_access_key="secret",
    bucket="product-images",
    region="us-east-1",
    use_ssl=False,
    public_base_url="https://cdn.test/product-images",
)


class RecordingClient:
    def __init__(self, existing=()):
        self.existing = set(existing)
        self.puts = []

    def head_object(self, Bucket, Key):
        if Key not in self.existing:
            raise ClientError({"Error": {"Code": "404"}, "ResponseMetadata": {"HTTPStatusCode": 404}}, "HeadObject")
        return {}

    def put_object(self, Bucket, Key, Body, ContentType):
        self.puts.append((Bucket, Key, Body, ContentType))
        self.existing.add(Key)
        return {"ETag": '"abc123"'}


async def test_upload_puts_object_and_returns_etag():
    client = RecordingClient()
    storage = S3ObjectStorage(CFG, client=client)

    etag = await storage.upload("p1/img_1.webp", b"webp", "image/webp")

    assert etag == "abc123"
    assert client.puts == [("product-images", "p1/img_1.webp", b"webp", "image/webp")]
    assert storage.public_url("/p1/img_1.webp") == "https://cdn.test/product-images/p1/img_1.webp"


async def test_upload_without_upsert_refuses_existing_object():
    client = RecordingClient(existing={"p1/img_1.webp"})
    storage = S3ObjectStorage(CFG, client=client)

    with pytest.raises(ObjectExistsError):
        await storage.upload("p1/img_1.webp", b"webp", upsert=False)
    assert await storage.upload("p1/img_2.webp", b"webp", upsert=False) == "abc123"


def test_config_requires_credentials(monkeypatch):
    for name in ("S3_ENDPOINT_URL", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "S3_BUCKET", "S3_PUBLIC_BASE_URL"):
        monkeypatch.delenv(name, raising=False)
    assert get_s3_config() is None

    monkeypatch.setenv("S3_ENDPOINT_URL", "http://minio.test:9000/")
    monkeypatch.setenv("S3_ACCESS_KEY_ID", "key")
    monkeypatch.setenv("S3_SECRET_ACCESS_KEY", "secret")
    cfg = get_s3_config()
    assert cfg.bucket == "product-images"
    assert cfg.public_base_url == "http://minio.test:9000/product-images"
