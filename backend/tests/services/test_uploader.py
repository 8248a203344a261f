"""
Unit tests for the reference upload pipeline.
"""

import asyncio
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from jimeng_api.core.exceptions import UploadFailed, UpstreamCallFailed
from jimeng_api.core.http_client import UpstreamClient
from jimeng_api.models.generation import ReferenceAsset, ReferenceRole
from jimeng_api.services.generation.uploader import (
    UPLOAD_TOKEN_URI,
    AssetUploader,
    crc32_hex,
    decode_inline_data,
    parse_commit_uri,
)
from tests.factories import ReferenceAssetFactory

TICKET = {
    "access_key_id": "AKTEST",
    "secret_access_key": "SKTEST",
    "session_token": "STTEST",
    "service_id": "svc123",
}

APPLY_RESPONSE = {
    "ResponseMetadata": {"RequestId": "r1"},
    "Result": {
        "UploadAddress": {
            "StoreInfos": [{"StoreUri": "tos-cn-i/abc", "Auth": "SpaceKey/abc/token"}],
            "UploadHosts": ["tos-upload.example.com"],
            "SessionKey": "session-key-1",
        }
    },
}

COMMIT_RESPONSE = {
    "ResponseMetadata": {"RequestId": "r2"},
    "Result": {
        "Results": [{"Uri": "tos-cn-i/abc", "UriStatus": 2000}],
        "PluginResult": [{"ImageUri": "tos-cn-i/plugin-abc"}],
    },
}


@pytest.fixture
def uploader(mock_upstream_client, upstream_script, test_settings):
    upstream_script.on(UPLOAD_TOKEN_URI, TICKET)
    mock_upstream_client.storage_request.side_effect = [APPLY_RESPONSE, {"success": 1}, COMMIT_RESPONSE]
    return AssetUploader(mock_upstream_client, "tok", test_settings)


class TestHelpers:

    @pytest.mark.unit
    def test_crc32_hex(self):
        assert crc32_hex(b"hello") == "3610a686"
        assert crc32_hex(b"") == "00000000"

    @pytest.mark.unit
    def test_decode_inline_data(self):
        assert decode_inline_data("data:image/png;base64,aGVsbG8=") == b"hello"

    @pytest.mark.unit
    def test_decode_inline_data_requires_base64(self):
        with pytest.raises(UploadFailed):
            decode_inline_data("data:text/plain,hello")

    @pytest.mark.unit
    def test_commit_prefers_plugin_result(self):
        assert parse_commit_uri(COMMIT_RESPONSE) == "tos-cn-i/plugin-abc"

    @pytest.mark.unit
    def test_commit_falls_back_to_results_uri(self):
        response = {"Result": {"Results": [{"Uri": "tos-cn-i/plain", "UriStatus": 2000}]}}
        assert parse_commit_uri(response) == "tos-cn-i/plain"

    @pytest.mark.unit
    def test_commit_rejects_bad_status(self):
        response = {"Result": {"Results": [{"Uri": "tos-cn-i/plain", "UriStatus": 2001}]}}
        with pytest.raises(UploadFailed):
            parse_commit_uri(response)

    @pytest.mark.unit
    def test_commit_rejects_empty_results(self):
        with pytest.raises(UploadFailed):
            parse_commit_uri({"Result": {"Results": []}})


class TestAssetUploader:

    @pytest.mark.unit
    async def test_upload_remote_file(self, uploader, mock_upstream_client):
        data = mock_upstream_client.download_file.return_value

        uri = await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))

        assert uri == "tos-cn-i/plugin-abc"
        mock_upstream_client.probe_file.assert_awaited_once_with("https://example.com/cat.png")

        apply_call, transfer_call, commit_call = mock_upstream_client.storage_request.await_args_list

        method, url = apply_call.args
        query = parse_qs(urlsplit(url).query)
        assert method == "GET"
        assert query["Action"] == ["ApplyImageUpload"]
        assert query["Version"] == ["2018-08-01"]
        assert query["ServiceId"] == ["svc123"]
        assert query["FileSize"] == [str(len(data))]
        headers = apply_call.kwargs["headers"]
        assert headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKTEST/")
        assert "SignedHeaders=x-amz-date;x-amz-security-token," in headers["Authorization"]
        assert headers["x-amz-security-token"] == "STTEST"

        method, url = transfer_call.args
        assert method == "POST"
        assert url == "https://tos-upload.example.com/upload/v1/tos-cn-i/abc"
        assert transfer_call.kwargs["headers"]["Authorization"] == "SpaceKey/abc/token"
        assert transfer_call.kwargs["headers"]["Content-CRC32"] == crc32_hex(data)
        assert transfer_call.kwargs["content"] == data

        method, url = commit_call.args
        assert method == "POST"
        assert "Action=CommitImageUpload" in url
        assert b"session-key-1" in commit_call.kwargs["content"]
        assert "x-amz-content-sha256" in commit_call.kwargs["headers"]

    @pytest.mark.unit
    async def test_inline_data_skips_probe(self, uploader, mock_upstream_client):
        uri = await uploader.upload(ReferenceAsset(source="data:image/png;base64,aGVsbG8="))

        assert uri == "tos-cn-i/plugin-abc"
        mock_upstream_client.probe_file.assert_not_awaited()
        mock_upstream_client.download_file.assert_not_awaited()
        transfer_call = mock_upstream_client.storage_request.await_args_list[1]
        assert transfer_call.kwargs["content"] == b"hello"

    @pytest.mark.unit
    async def test_oversized_file_rejected_before_download(self, uploader, mock_upstream_client, test_settings):
        mock_upstream_client.probe_file.return_value = test_settings.MAX_FILE_SIZE + 1

        with pytest.raises(UploadFailed):
            await uploader.upload(ReferenceAsset(source="https://example.com/huge.png"))

        mock_upstream_client.download_file.assert_not_awaited()
        mock_upstream_client.storage_request.assert_not_awaited()

    @pytest.mark.unit
    async def test_incomplete_ticket_fails(self, mock_upstream_client, upstream_script, test_settings):
        upstream_script.on(UPLOAD_TOKEN_URI, {"access_key_id": "AK"})
        uploader = AssetUploader(mock_upstream_client, "tok", test_settings)

        with pytest.raises(UploadFailed):
            await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))

    @pytest.mark.unit
    async def test_missing_service_id_uses_default(self, mock_upstream_client, upstream_script, test_settings):
        upstream_script.on(UPLOAD_TOKEN_URI, {k: v for k, v in TICKET.items() if k != "service_id"})
        mock_upstream_client.storage_request.side_effect = [APPLY_RESPONSE, {}, COMMIT_RESPONSE]
        uploader = AssetUploader(mock_upstream_client, "tok", test_settings)

        await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))

        apply_url = mock_upstream_client.storage_request.await_args_list[0].args[1]
        assert f"ServiceId={test_settings.IMAGEX_DEFAULT_SERVICE_ID}" in apply_url

    @pytest.mark.unit
    async def test_apply_error_fails(self, uploader, mock_upstream_client):
        mock_upstream_client.storage_request.side_effect = [
            {"ResponseMetadata": {"Error": {"Code": "SignatureDoesNotMatch"}}}
        ]

        with pytest.raises(UploadFailed) as exc_info:
            await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))
        assert "SignatureDoesNotMatch" in exc_info.value.message

    @pytest.mark.unit
    async def test_storage_failures_become_upload_failed(self, uploader, mock_upstream_client):
        mock_upstream_client.storage_request.side_effect = UpstreamCallFailed("HTTP 500")

        with pytest.raises(UploadFailed) as exc_info:
            await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))
        assert exc_info.value.source == "https://example.com/cat.png"

    @pytest.mark.unit
    async def test_transport_errors_become_upload_failed(self, uploader, mock_upstream_client):
        mock_upstream_client.storage_request.side_effect = httpx.ReadTimeout("read timed out")

        with pytest.raises(UploadFailed) as exc_info:
            await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))
        assert "read timed out" in exc_info.value.message

    @pytest.mark.unit
    async def test_missing_store_uri_fails(self, uploader, mock_upstream_client):
        apply_response = {
            "Result": {
                "UploadAddress": {
                    "StoreInfos": [{"Auth": "SpaceKey/abc/token"}],
                    "UploadHosts": ["tos-upload.example.com"],
                }
            }
        }
        mock_upstream_client.storage_request.side_effect = [apply_response]

        with pytest.raises(UploadFailed) as exc_info:
            await uploader.upload(ReferenceAsset(source="https://example.com/cat.png"))

        assert "Store URI missing" in exc_info.value.message
        assert mock_upstream_client.storage_request.await_count == 1


class TestUploadReferences:

    @pytest.mark.unit
    async def test_primary_failure_aborts(self, mock_upstream_client, test_settings):
        uploader = AssetUploader(mock_upstream_client, "tok", test_settings)
        references = [ReferenceAssetFactory(), ReferenceAssetFactory(role=ReferenceRole.SECONDARY)]

        with patch.object(uploader, "upload", AsyncMock(side_effect=UploadFailed("boom"))) as upload:
            with pytest.raises(UploadFailed):
                await uploader.upload_references(references)

        assert upload.await_count == 1

    @pytest.mark.unit
    async def test_secondary_failure_is_skipped(self, mock_upstream_client, test_settings):
        uploader = AssetUploader(mock_upstream_client, "tok", test_settings)
        references = [
            ReferenceAssetFactory(),
            ReferenceAssetFactory(role=ReferenceRole.SECONDARY),
            ReferenceAssetFactory(role=ReferenceRole.SECONDARY),
        ]
        side_effect = ["uri-primary", UploadFailed("bad secondary"), "uri-third"]

        with patch.object(uploader, "upload", AsyncMock(side_effect=side_effect)):
            uploaded = await uploader.upload_references(references)

        assert [ref.uri for ref in uploaded] == ["uri-primary", "uri-third"]
        assert references[1].uri is None

    @pytest.mark.unit
    async def test_all_secondaries_failing_keeps_primary(self, mock_upstream_client, test_settings):
        uploader = AssetUploader(mock_upstream_client, "tok", test_settings)
        references = [ReferenceAssetFactory(), ReferenceAssetFactory(role=ReferenceRole.SECONDARY)]

        with patch.object(uploader, "upload", AsyncMock(side_effect=["uri-primary", UploadFailed("x")])):
            uploaded = await uploader.upload_references(references)

        assert len(uploaded) == 1
        assert uploaded[0].role == ReferenceRole.PRIMARY


@pytest_asyncio.fixture
async def stalled_file_url():
    """URL of a file server that answers slower than the upload timeout"""
    async def stall(request):
        await asyncio.sleep(1)
        return web.Response(body=b"late")

    app = web.Application()
    app.router.add_get("/frame.png", stall)

    async with test_utils.TestServer(app) as server:
        yield str(server.make_url("/frame.png"))


class TestStalledReferences:

    @pytest.mark.unit
    async def test_stalled_secondary_is_skipped(self, identity, test_settings, stalled_file_url):
        client = UpstreamClient(identity=identity, config=test_settings.model_copy(update={"UPLOAD_TIMEOUT": 0.2}))
        client.request = AsyncMock(return_value=TICKET)
        client.storage_request = AsyncMock(side_effect=[APPLY_RESPONSE, {}, COMMIT_RESPONSE])
        uploader = AssetUploader(client, "tok", test_settings)

        primary = ReferenceAsset(source="data:image/png;base64,aGVsbG8=")
        secondary = ReferenceAsset(source=stalled_file_url, role=ReferenceRole.SECONDARY)
        try:
            uploaded = await uploader.upload_references([primary, secondary])
        finally:
            await client.close()

        assert uploaded == [primary]
        assert primary.uri == "tos-cn-i/plugin-abc"
        assert secondary.uri is None
        assert client.storage_request.await_count == 3

    @pytest.mark.unit
    async def test_stalled_primary_aborts(self, identity, test_settings, stalled_file_url):
        client = UpstreamClient(identity=identity, config=test_settings.model_copy(update={"UPLOAD_TIMEOUT": 0.2}))
        client.request = AsyncMock(return_value=TICKET)
        client.storage_request = AsyncMock()
        uploader = AssetUploader(client, "tok", test_settings)

        try:
            with pytest.raises(UploadFailed):
                await uploader.upload_references([ReferenceAsset(source=stalled_file_url)])
        finally:
            await client.close()

        client.storage_request.assert_not_awaited()
