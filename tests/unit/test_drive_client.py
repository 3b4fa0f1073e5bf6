"""
Tests for the Drive REST client and media resolution.
"""

import base64
import json

import httpx
import pytest

from proofsync.config import DriveConfig
from proofsync.drive import DriveClient, LocalFileResolver, build_multipart_body
from proofsync.drive.client import BOUNDARY
from proofsync.exceptions import (
    NetworkError,
    ProviderError,
    SourceUnavailable,
    TokenExpiredError,
)
from proofsync.upload import encode_payload

from tests.unit.fakes import RecordingHandler


def make_drive(responder):
    handler = RecordingHandler(responder)
    client = DriveClient(DriveConfig(folder_id="folder-1"), transport=handler.transport())
    return client, handler


class TestMultipartBody:
    """Tests for the multipart/related request body."""

    def test_parts_in_order(self):
        payload = encode_payload(b"\xff\xd8\xffimage", "image/jpeg")

        body = build_multipart_body({"name": "photo.jpg", "parents": ["folder-1"]}, payload).decode()
        parts = body.split(f"--{BOUNDARY}")

        # Leading CRLF, metadata, media, closing marker
        assert len(parts) == 4
        assert "application/json" in parts[1]
        assert json.loads(parts[1].split("\r\n\r\n", 1)[1])["name"] == "photo.jpg"
        assert "Content-Type: image/jpeg" in parts[2]
        assert "Content-Transfer-Encoding: base64" in parts[2]
        assert parts[2].split("\r\n\r\n", 1)[1].strip() == payload.data_b64
        assert parts[3] == "--"


class TestDriveClient:
    """Tests for Drive API calls."""

    @pytest.mark.asyncio
    async def test_create_file(self):
        client, handler = make_drive(
            lambda request: httpx.Response(200, json={"id": "abc123", "name": "photo.jpg"})
        )
        payload = encode_payload(b"\xff\xd8\xffimage", "image/jpeg")

        result = await client.create_file("access-1", "photo.jpg", payload, description="proof")

        assert result == {"id": "abc123", "name": "photo.jpg"}
        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url.params["uploadType"] == "multipart"
        assert request.url.params["fields"] == "id,name"
        assert request.headers["Authorization"] == "Bearer access-1"
        assert request.headers["Content-Type"] == f'multipart/related; boundary="{BOUNDARY}"'
        assert base64.b64encode(b"\xff\xd8\xffimage") in request.content
        assert b'"parents": ["folder-1"]' in request.content

    @pytest.mark.asyncio
    async def test_create_rejected_token(self):
        client, _ = make_drive(lambda request: httpx.Response(401, json={
            "error": {"code": 401, "status": "UNAUTHENTICATED"}
        }))

        with pytest.raises(TokenExpiredError) as exc_info:
            await client.create_file("expired", "photo.jpg", encode_payload(b"x", "image/jpeg"))

        assert exc_info.value.code == "UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_rate_limited_is_retryable(self):
        client, _ = make_drive(lambda request: httpx.Response(429, json={
            "error": {"code": 429, "errors": [{"reason": "rateLimitExceeded"}]}
        }))

        with pytest.raises(ProviderError) as exc_info:
            await client.create_file("access-1", "photo.jpg", encode_payload(b"x", "image/jpeg"))

        assert exc_info.value.retryable is True
        assert exc_info.value.code == "rateLimitExceeded"

    @pytest.mark.asyncio
    async def test_create_without_id(self):
        client, _ = make_drive(lambda request: httpx.Response(200, json={"name": "photo.jpg"}))

        with pytest.raises(ProviderError):
            await client.create_file("access-1", "photo.jpg", encode_payload(b"x", "image/jpeg"))

    @pytest.mark.asyncio
    async def test_grant_public_read(self):
        client, handler = make_drive(lambda request: httpx.Response(200, json={"id": "perm"}))

        await client.grant_public_read("access-1", "abc123")

        request = handler.requests[0]
        assert request.url.path == "/drive/v3/files/abc123/permissions"
        assert json.loads(request.content) == {"role": "reader", "type": "anyone"}

    @pytest.mark.asyncio
    async def test_check_folder(self):
        client, handler = make_drive(
            lambda request: httpx.Response(200, json={"id": "folder-1", "name": "Proof Photos"})
        )

        folder = await client.check_folder("access-1")

        assert folder["name"] == "Proof Photos"
        assert handler.requests[0].url.path == "/drive/v3/files/folder-1"

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def offline(request):
            raise httpx.ConnectError("offline", request=request)

        client, _ = make_drive(offline)

        with pytest.raises(NetworkError):
            await client.grant_public_read("access-1", "abc123")

    def test_remote_ref_urls(self):
        client, _ = make_drive(lambda request: httpx.Response(200))

        ref = client.remote_ref("abc123", "photo.jpg")

        assert ref.view_url == "https://drive.google.com/file/d/abc123/view"
        assert ref.download_url == "https://drive.google.com/uc?id=abc123"


class TestLocalFileResolver:
    """Tests for resolving source refs."""

    @pytest.mark.asyncio
    async def test_path_and_sniffed_type(self, tmp_path):
        path = tmp_path / "capture"
        path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 10)
        resolver = LocalFileResolver()

        info = await resolver.stat(str(path))

        assert info.media_type == "image/png"
        assert info.size == 18
        assert await resolver.read(path.as_uri()) == path.read_bytes()

    @pytest.mark.asyncio
    async def test_data_uri(self):
        data = b"\xff\xd8\xff\xe0jpeg"
        uri = "data:image/jpeg;base64," + base64.b64encode(data).decode()
        resolver = LocalFileResolver()

        info = await resolver.stat(uri)

        assert info.media_type == "image/jpeg"
        assert info.size == len(data)
        assert await resolver.read(uri) == data

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(SourceUnavailable):
            await LocalFileResolver().stat(str(tmp_path / "nope.jpg"))

    @pytest.mark.asyncio
    async def test_bad_data_uri(self):
        with pytest.raises(SourceUnavailable):
            await LocalFileResolver().read("data:image/jpeg;base64,@@@")
