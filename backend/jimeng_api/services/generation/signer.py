"""
AWS4-HMAC-SHA256 style request signing for the object storage API.

The storage service accepts the SigV4 scheme with its own region and service
name. Only the date, the session token and (for requests with a body) the
payload hash are signed; the browser client signs nothing else and the
service rejects requests whose signed header set differs.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

ALGORITHM = "AWS4-HMAC-SHA256"
SCOPE_TERMINATOR = "aws4_request"
DEFAULT_REGION = "cn-north-1"
DEFAULT_SERVICE = "imagex"

EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


@dataclass(frozen=True)
class SignedRequest:
    """Everything that went into a signature, for logging and tests"""
    method: str
    url: str
    canonical_query: str
    canonical_headers: str
    signed_headers: str
    payload_hash: str
    credential_scope: str
    signature: str
    authorization: str


def amz_timestamp(now: datetime = None) -> str:
    """Format a UTC time as YYYYMMDD'T'HHMMSS'Z'"""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def sha256_hex(payload) -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def canonical_query_string(query: str) -> str:
    """Sort query pairs by key (byte order, stable) without re-encoding"""
    pairs: List[Tuple[str, str]] = parse_qsl(query, keep_blank_values=True)
    pairs.sort(key=lambda pair: pair[0].encode("utf-8"))
    return "&".join(f"{key}={value}" for key, value in pairs)


def derive_signing_key(secret_access_key: str, date: str, region: str, service: str) -> bytes:
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, SCOPE_TERMINATOR)


def sign_request(
    method: str,
    url: str,
    headers: Dict[str, str],
    access_key_id: str,
    secret_access_key: str,
    session_token: Optional[str] = None,
    payload=None,
    region: str = DEFAULT_REGION,
    service: str = DEFAULT_SERVICE
) -> SignedRequest:
    """Sign a storage request.

    `headers` must carry `x-amz-date`; the signature depends on nothing but
    the arguments, so identical inputs give identical signatures.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    timestamp = lowered.get("x-amz-date")
    if not timestamp:
        raise ValueError("x-amz-date header is required for signing")
    date = timestamp[:8]

    parts = urlsplit(url)
    path = parts.path or "/"
    canonical_query = canonical_query_string(parts.query)

    headers_to_sign = {"x-amz-date": timestamp}
    if session_token:
        headers_to_sign["x-amz-security-token"] = session_token

    payload_hash = EMPTY_PAYLOAD_HASH
    if payload:
        payload_hash = sha256_hex(payload)
        headers_to_sign["x-amz-content-sha256"] = payload_hash

    names = sorted(headers_to_sign)
    signed_headers = ";".join(names)
    canonical_headers = "".join(f"{name}:{headers_to_sign[name].strip()}\n" for name in names)

    canonical_request = "\n".join([
        method.upper(),
        path,
        canonical_query,
        canonical_headers,
        signed_headers,
        payload_hash,
    ])

    credential_scope = f"{date}/{region}/{service}/{SCOPE_TERMINATOR}"
    string_to_sign = "\n".join([
        ALGORITHM,
        timestamp,
        credential_scope,
        sha256_hex(canonical_request),
    ])

    signing_key = derive_signing_key(secret_access_key, date, region, service)
    signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    authorization = (
        f"{ALGORITHM} Credential={access_key_id}/{credential_scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    return SignedRequest(
        method=method.upper(),
        url=url,
        canonical_query=canonical_query,
        canonical_headers=canonical_headers,
        signed_headers=signed_headers,
        payload_hash=payload_hash,
        credential_scope=credential_scope,
        signature=signature,
        authorization=authorization,
    )
