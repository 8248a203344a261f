"""
HTTP client for the upstream web API, its object storage and remote assets
"""

import asyncio
import base64
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote_plus
import aiohttp
import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from jimeng_api.core.config import Settings, UpstreamIdentity, build_identity, settings
from jimeng_api.core.exceptions import InsufficientCredit, UpstreamCallFailed

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Encoding": "gzip, deflate, br",
    "Accept-Language": "zh-CN,zh;q=0.9",
    "Cache-Control": "no-cache",
    "Last-Event-Id": "undefined",
    "Origin": "https://jimeng.jianying.com",
    "Pragma": "no-cache",
    "Priority": "u=1, i",
    "Referer": "https://jimeng.jianying.com",
    "Sec-Ch-Ua": '"Google Chrome";v="131", "Chromium";v="131", "Not_A Brand";v="24"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
}

# ret value the upstream uses for "not enough credit"
RET_OK = "0"
RET_INSUFFICIENT_CREDIT = "5000"

# Lifetime the web app gives a session cookie (60 days)
SESSION_TTL = 5184000


def check_result(body: Any) -> Any:
    """Unwrap the upstream `{ret, errmsg, data}` envelope"""
    if not isinstance(body, dict):
        return body

    ret = body.get("ret")
    try:
        float(ret)
    except (TypeError, ValueError):
        # Not an enveloped response
        return body

    ret = str(ret)
    if ret == RET_OK:
        return body.get("data")
    errmsg = body.get("errmsg", "")
    if ret == RET_INSUFFICIENT_CREDIT:
        raise InsufficientCredit(f"Insufficient credit for generation: {errmsg}")
    raise UpstreamCallFailed(f"Upstream request failed [ret={ret}]: {errmsg}", transient=False)


def session_expiry(now: int) -> str:
    """Cookie-style expiry date of a session issued at `now`, form-encoded"""
    expires = time.strftime("%a, %d-%b-%Y %H:%M:%S GMT", time.gmtime(now + SESSION_TTL))
    return quote_plus(expires)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamCallFailed) and exc.transient


class UpstreamClient:
    """Signed client for the upstream web API.

    httpx serves the JSON API and object storage calls, aiohttp serves probes
    and downloads of arbitrary remote files.
    """

    def __init__(
        self,
        identity: UpstreamIdentity = None,
        config: Settings = None,
        transport: httpx.AsyncBaseTransport = None,
        retry_wait=None
    ):
        self.config = config or settings
        self.identity = identity or build_identity(self.config)
        self._transport = transport
        self._retry_wait = retry_wait or wait_incrementing(start=1, increment=1)
        self._httpx_client: Optional[httpx.AsyncClient] = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._create_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _create_session(self):
        if self._httpx_client is None:
            self._httpx_client = httpx.AsyncClient(
                timeout=self.config.UPSTREAM_REQUEST_TIMEOUT,
                follow_redirects=True,
                transport=self._transport
            )

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.UPLOAD_TIMEOUT),
                headers={"User-Agent": BROWSER_HEADERS["User-Agent"]}
            )
        return self._session

    async def close(self):
        """Close HTTP sessions"""
        if self._httpx_client:
            await self._httpx_client.aclose()
            self._httpx_client = None

        if self._session:
            await self._session.close()
            self._session = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._httpx_client is None:
            raise RuntimeError("Client not initialized. Use async context manager.")
        return self._httpx_client

    def sign(self, uri: str, device_time: int) -> str:
        """Short-lived request signature expected by the web API"""
        raw = (
            f"9e2c|{uri[-7:]}|{self.identity.platform_code}|"
            f"{self.identity.version_code}|{device_time}||11ac"
        )
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def generate_cookie(self, token: str, now: int = None) -> str:
        now = now or int(time.time())
        return "; ".join([
            f"_tea_web_id={self.identity.web_id}",
            "is_staff_user=false",
            "store-region=cn-gd",
            "store-region-src=uid",
            f"sid_guard={token}%7C{now}%7C{SESSION_TTL}%7C{session_expiry(now)}",
            f"uid_tt={self.identity.user_id}",
            f"uid_tt_ss={self.identity.user_id}",
            f"sid_tt={token}",
            f"sessionid={token}",
            f"sessionid_ss={token}",
        ])

    def build_headers(self, uri: str, token: str, extra: Dict[str, str] = None) -> Dict[str, str]:
        device_time = int(time.time())
        return {
            **BROWSER_HEADERS,
            "Appid": self.identity.assistant_id,
            "Appvr": self.identity.version_code,
            "Pf": self.identity.platform_code,
            "Cookie": self.generate_cookie(token, device_time),
            "Device-Time": str(device_time),
            "Sign": self.sign(uri, device_time),
            "Sign-Ver": "1",
            **(extra or {}),
        }

    async def request(
        self,
        method: str,
        uri: str,
        token: str,
        params: Dict[str, Any] = None,
        data: Dict[str, Any] = None,
        headers: Dict[str, str] = None
    ) -> Any:
        """Call the web API with per-call retry on transient failures"""
        await self._create_session()

        url = f"{self.config.UPSTREAM_BASE_URL.rstrip('/')}{uri}"
        request_params = {
            "aid": self.identity.assistant_id,
            "device_platform": "web",
            "region": "CN",
            "web_id": self.identity.web_id,
            **(params or {}),
        }

        logger.debug(f"Upstream request: {method.upper()} {url}")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.UPSTREAM_MAX_RETRIES + 1),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(method, url, uri, token, request_params, data, headers)

    async def _send(
        self,
        method: str,
        url: str,
        uri: str,
        token: str,
        params: Dict[str, Any],
        data: Optional[Dict[str, Any]],
        headers: Optional[Dict[str, str]]
    ) -> Any:
        try:
            response = await self.http.request(
                method.upper(),
                url,
                params=params,
                json=data if data is not None else {},
                headers=self.build_headers(uri, token, headers)
            )
        except httpx.TransportError as e:
            logger.error(f"Upstream request {uri} failed: {e}")
            raise UpstreamCallFailed(f"Request to {uri} failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"HTTP {response.status_code} from {uri}")
            raise UpstreamCallFailed(f"HTTP {response.status_code} from {uri}")

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise UpstreamCallFailed(f"Invalid JSON from {uri}", transient=False) from e

        return check_result(body)

    async def storage_request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str] = None,
        content: bytes = None
    ) -> Dict[str, Any]:
        """Call object storage; signing is the caller's job"""
        await self._create_session()
        try:
            response = await self.http.request(
                method.upper(),
                url,
                headers=headers,
                content=content,
                timeout=self.config.UPLOAD_TIMEOUT
            )
        except httpx.TransportError as e:
            raise UpstreamCallFailed(f"Storage request failed: {e}") from e

        if response.status_code >= 400:
            raise UpstreamCallFailed(
                f"Storage request failed: HTTP {response.status_code} - {response.text[:200]}",
                transient=False
            )

        try:
            return response.json()
        except json.JSONDecodeError:
            return {"response": response.text}

    async def probe_file(self, url: str) -> Optional[int]:
        """HEAD a remote file; returns its declared size when known"""
        session = self._get_aiohttp_session()
        try:
            async with session.head(url, allow_redirects=True) as response:
                if response.status >= 400:
                    raise UpstreamCallFailed(
                        f"File {url} is not valid: [{response.status}] {response.reason}",
                        transient=False
                    )
                length = response.headers.get("Content-Length")
                return int(length) if length and length.isdigit() else None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamCallFailed(f"File {url} is not reachable: {e}") from e

    async def download_file(self, url: str, max_size: int = None) -> bytes:
        """Download a remote file into memory"""
        max_size = max_size or self.config.MAX_FILE_SIZE
        session = self._get_aiohttp_session()
        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise UpstreamCallFailed(
                        f"Download of {url} failed: HTTP {response.status}",
                        transient=False
                    )
                data = bytearray()
                async for chunk in response.content.iter_chunked(64 * 1024):
                    data.extend(chunk)
                    if len(data) > max_size:
                        raise UpstreamCallFailed(f"File {url} exceeds {max_size} bytes", transient=False)
                return bytes(data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamCallFailed(f"Download of {url} failed: {e}") from e

    async def fetch_file_base64(self, url: str) -> str:
        return base64.b64encode(await self.download_file(url)).decode("ascii")


# Singleton instance for global use
_upstream_client: Optional[UpstreamClient] = None


async def get_upstream_client() -> UpstreamClient:
    """Get the process-wide upstream client"""
    global _upstream_client

    if _upstream_client is None:
        _upstream_client = UpstreamClient(build_identity())
        await _upstream_client._create_session()

    return _upstream_client


async def close_upstream_client():
    global _upstream_client

    if _upstream_client is not None:
        await _upstream_client.close()
        _upstream_client = None
