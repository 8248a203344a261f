"""
Upload pipeline moving reference images into upstream object storage.

Flow per asset:
    1. Probe remote URLs (HEAD) and reject oversized files
    2. Materialize bytes (decode inline data or download)
    3. Obtain an upload ticket from the web API
    4. CRC32 the bytes
    5. Signed ApplyImageUpload -> upload host, store URI, per-object auth
    6. POST the bytes to the upload host
    7. Signed CommitImageUpload -> logical image URI
"""

import base64
import binascii
import json
import logging
import random
import string
import zlib
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from jimeng_api.core.config import Settings, settings
from jimeng_api.core.exceptions import UpstreamCallFailed, UploadFailed
from jimeng_api.core.http_client import UpstreamClient
from jimeng_api.models.generation import ReferenceAsset, ReferenceRole, UploadTicket
from .signer import amz_timestamp, sign_request

logger = logging.getLogger(__name__)

UPLOAD_TOKEN_URI = "/mweb/v1/get_upload_token"
UPLOAD_SCENE_AIGC_IMAGE = 2
URI_STATUS_OK = 2000

STORAGE_HEADERS = {
    "Accept": "*/*",
    "Accept-Language": "zh-CN,zh;q=0.9",
    "Origin": "https://jimeng.jianying.com",
    "Referer": "https://jimeng.jianying.com/ai-tool/generate",
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "cross-site",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36"
    ),
}


def crc32_hex(data: bytes) -> str:
    return format(zlib.crc32(data) & 0xFFFFFFFF, "08x")


def decode_inline_data(source: str) -> bytes:
    """Decode a `data:<mime>;base64,<payload>` URI"""
    header, _, payload = source.partition(",")
    if not payload or ";base64" not in header:
        raise UploadFailed("Inline data must be a base64 data URI", source=source[:64])
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise UploadFailed(f"Invalid base64 data: {e}", source=source[:64]) from e


def _random_nonce(length: int = 10) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


class AssetUploader:
    """Uploads reference assets for one generation request"""

    def __init__(self, client: UpstreamClient, token: str, config: Settings = None):
        self.client = client
        self.token = token
        self.config = config or settings

    async def upload(self, reference: ReferenceAsset, is_secondary: bool = False) -> str:
        """Upload one asset and return its logical storage URI"""
        label = "secondary" if is_secondary else "primary"
        display = reference.source[:64] if reference.is_inline else reference.source
        logger.info(f"Uploading {label} reference: {display}")

        try:
            data = await self._materialize(reference)
            ticket = await self._get_ticket()
            crc32 = crc32_hex(data)
            logger.info(f"Reference materialized: size={len(data)} crc32={crc32}")

            upload_address = await self._apply(ticket, len(data))
            await self._transfer(upload_address, data, crc32)
            uri = await self._commit(ticket)
        except UploadFailed:
            raise
        except UpstreamCallFailed as e:
            raise UploadFailed(f"Upload of {label} reference failed: {e.message}", source=display) from e
        except httpx.HTTPError as e:
            raise UploadFailed(f"Upload of {label} reference failed: {e}", source=display) from e

        logger.info(f"Reference uploaded: {uri}")
        return uri

    async def upload_references(self, references: List[ReferenceAsset]) -> List[ReferenceAsset]:
        """Upload all references, aborting only when the primary one fails"""
        uploaded: List[ReferenceAsset] = []

        for index, reference in enumerate(references):
            is_secondary = index > 0 or reference.role == ReferenceRole.SECONDARY
            try:
                reference.uri = await self.upload(reference, is_secondary=is_secondary)
            except UploadFailed as e:
                if not is_secondary:
                    logger.error(f"Primary reference upload failed, aborting job: {e.message}")
                    raise
                logger.warning(f"Skipping reference {index + 1}/{len(references)}: {e.message}")
                continue
            uploaded.append(reference)

        logger.info(f"Uploaded {len(uploaded)}/{len(references)} references")
        return uploaded

    async def _materialize(self, reference: ReferenceAsset) -> bytes:
        source = reference.source
        if reference.is_inline:
            return decode_inline_data(source)

        size = await self.client.probe_file(source)
        if size is not None and size > self.config.MAX_FILE_SIZE:
            raise UploadFailed(
                f"File {source} exceeds the {self.config.MAX_FILE_SIZE} byte limit",
                source=source
            )
        return await self.client.download_file(source, self.config.MAX_FILE_SIZE)

    async def _get_ticket(self) -> UploadTicket:
        result = await self.client.request(
            "POST",
            UPLOAD_TOKEN_URI,
            self.token,
            data={"scene": UPLOAD_SCENE_AIGC_IMAGE}
        )
        ticket = UploadTicket.from_response(result or {}, self.config.IMAGEX_DEFAULT_SERVICE_ID)
        if not ticket.is_complete:
            raise UploadFailed("Failed to obtain upload ticket")
        logger.debug(f"Upload ticket issued for service_id={ticket.service_id}")
        return ticket

    def _storage_url(self, action: str, ticket: UploadTicket, **extra) -> str:
        # Parameter order matches the browser client; the signer sorts its own copy
        query = {
            "Action": action,
            "Version": self.config.IMAGEX_API_VERSION,
            "ServiceId": ticket.service_id,
            **extra,
        }
        return f"{self.config.IMAGEX_BASE_URL}?{urlencode(query)}"

    def _signed_headers(self, method: str, url: str, ticket: UploadTicket, payload: str = None) -> Dict[str, str]:
        timestamp = amz_timestamp()
        headers = {
            "x-amz-date": timestamp,
            "x-amz-security-token": ticket.session_token,
        }
        signed = sign_request(
            method,
            url,
            headers,
            ticket.access_key_id,
            ticket.secret_access_key,
            session_token=ticket.session_token,
            payload=payload,
            region=self.config.IMAGEX_REGION,
            service=self.config.IMAGEX_SERVICE
        )
        if payload:
            headers["x-amz-content-sha256"] = signed.payload_hash
        return {**STORAGE_HEADERS, **headers, "Authorization": signed.authorization}

    async def _apply(self, ticket: UploadTicket, file_size: int) -> Dict[str, Any]:
        url = self._storage_url("ApplyImageUpload", ticket, FileSize=file_size, s=_random_nonce())
        result = await self.client.storage_request("GET", url, headers=self._signed_headers("GET", url, ticket))
        _raise_for_storage_error(result, "ApplyImageUpload")

        upload_address = (result.get("Result") or {}).get("UploadAddress") or {}
        store_infos = upload_address.get("StoreInfos") or []
        if not store_infos or not upload_address.get("UploadHosts"):
            raise UploadFailed(f"Upload address missing in response: {json.dumps(result)[:300]}")
        if not store_infos[0].get("StoreUri"):
            raise UploadFailed(f"Store URI missing in response: {json.dumps(result)[:300]}")

        ticket.session_key = upload_address.get("SessionKey")
        return upload_address

    async def _transfer(self, upload_address: Dict[str, Any], data: bytes, crc32: str):
        store_info = upload_address["StoreInfos"][0]
        upload_host = upload_address["UploadHosts"][0]
        upload_url = f"https://{upload_host}/upload/v1/{store_info['StoreUri']}"

        await self.client.storage_request(
            "POST",
            upload_url,
            headers={
                **STORAGE_HEADERS,
                "Authorization": store_info.get("Auth", ""),
                "Content-CRC32": crc32,
                "Content-Disposition": 'attachment; filename="undefined"',
                "Content-Type": "application/octet-stream",
            },
            content=data
        )

    async def _commit(self, ticket: UploadTicket) -> str:
        url = self._storage_url("CommitImageUpload", ticket)
        payload = json.dumps({"SessionKey": ticket.session_key, "SuccessActionStatus": "200"})

        result = await self.client.storage_request(
            "POST",
            url,
            headers={
                **self._signed_headers("POST", url, ticket, payload),
                "Content-Type": "application/json",
            },
            content=payload.encode("utf-8")
        )
        _raise_for_storage_error(result, "CommitImageUpload")
        return parse_commit_uri(result)


def _raise_for_storage_error(result: Dict[str, Any], action: str):
    error = (result.get("ResponseMetadata") or {}).get("Error")
    if error:
        raise UploadFailed(f"{action} failed: {json.dumps(error)}")


def parse_commit_uri(result: Dict[str, Any]) -> str:
    """Pick the logical URI out of a commit response.

    PluginResult[0].ImageUri wins over Results[0].Uri when both are present.
    """
    body = result.get("Result") or {}
    results = body.get("Results") or []
    if not results:
        raise UploadFailed(f"Commit response has no results: {json.dumps(result)[:300]}")

    first = results[0]
    if first.get("UriStatus") != URI_STATUS_OK:
        raise UploadFailed(f"Unexpected upload status: UriStatus={first.get('UriStatus')}")

    plugin_results: Optional[List[Dict[str, Any]]] = body.get("PluginResult")
    if plugin_results and plugin_results[0].get("ImageUri"):
        return plugin_results[0]["ImageUri"]

    if not first.get("Uri"):
        raise UploadFailed("Commit response has no image URI")
    return first["Uri"]
