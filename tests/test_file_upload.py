import hashlib
from urllib.parse import parse_qs, urlparse

import pytest

from server_api.core.errors import UpstreamUnavailableError, ValidationError
from server_api.models import File
from server_api.services import file_upload
from server_api.services.file_upload import (
    FileUploadService,
    ObjectStorage,
    get_file_extension,
    validate_image,
)

from conftest import FakeResponse

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class RecordingHttp:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.calls = []

    def __call__(self, method, url, data=None, timeout=None):
        self.calls.append((method, url, data))
        return FakeResponse(status_code=self.status_code, text="denied")


@pytest.fixture
def http(monkeypatch):
    recorder = RecordingHttp()
    monkeypatch.setattr(file_upload.requests, "request", recorder)
    return recorder


@pytest.fixture
def storage():
    return ObjectStorage(
        endpoint_url="http://s3.test:9000",
        access_key="test-access",
        secret_key="test-secret",
        bucket="uploads-bucket",
        region="us-east-1",
    )


@pytest.fixture
def uploads(store, storage):
    return FileUploadService(store, storage)


def expires(url):
    return parse_qs(urlparse(url).query)["X-Amz-Expires"][0]


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("world.backup.tar.gz", ".backup.tar.gz"),
        ("world.backup.tar.zst", ".backup.tar.zst"),
        ("world.tar.gz", ".tar.gz"),
        ("world.tar.bz2", ".tar.bz2"),
        ("world.tar.xz", ".tar.xz"),
        ("cover.png", ".png"),
        ("README", ""),
    ],
)
def test_file_extension(filename, expected):
    assert get_file_extension(filename) == expected


def test_validate_image_formats():
    assert validate_image(PNG) == "png"
    assert validate_image(b"\xff\xd8\xff\xe0rest") == "jpeg"
    assert validate_image(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "webp"
    with pytest.raises(ValidationError):
        validate_image(b"GIF89a....")
    with pytest.raises(ValidationError):
        validate_image(b"")
    with pytest.raises(ValidationError):
        validate_image(PNG, max_bytes=8)


async def test_upload_is_deduplicated(uploads, http, factory):
    first = await uploads.upload(PNG, "cover.png")
    second = await uploads.upload(PNG, "other-name.png")

    assert first.hash_value == second.hash_value == hashlib.sha256(PNG).hexdigest()
    assert first.file_path == second.file_path
    assert factory.count(File) == 1
    assert len(http.calls) == 1


async def test_upload_puts_to_signed_url(uploads, http):
    row = await uploads.upload(PNG, "cover.png")

    method, url, data = http.calls[0]
    assert method == "PUT"
    assert data == PNG
    assert expires(url) == "3600"
    assert "/uploads-bucket/uploads/" in url
    assert row.file_path.startswith("http://s3.test:9000/uploads-bucket/uploads/")
    assert row.file_path.endswith(".png")


async def test_delete_uses_short_lived_url(uploads, http):
    row = await uploads.upload(PNG, "cover.png")

    await uploads.delete(row)

    method, url, _ = http.calls[-1]
    assert method == "DELETE"
    assert expires(url) == "60"
    assert urlparse(url).path.endswith(row.file_path.rsplit("/", 1)[-1])


async def test_failed_put_raises_and_stores_nothing(uploads, http, factory):
    http.status_code = 403

    with pytest.raises(UpstreamUnavailableError):
        await uploads.upload(PNG, "cover.png")
    assert factory.count(File) == 0


async def test_upload_image_rejects_unknown_format(uploads, http):
    with pytest.raises(ValidationError):
        await uploads.upload_image(b"not an image", "cover")
    assert http.calls == []


async def test_concurrent_insert_returns_existing_row(store):
    first, created = await store.insert_file("9" * 64, "a")
    second, created_again = await store.insert_file("9" * 64, "b")

    assert created and not created_again
    assert second.file_path == first.file_path == "a"
