"""
Request signing for the Polymarket CLOB API (level 2 auth).

Authenticated endpoints expect these headers:
    POLY_API_KEY     - API key
    POLY_SIGNATURE   - HMAC of timestamp + method + path + body, built by
                       py-clob-client with the url-safe base64 secret
    POLY_TIMESTAMP   - unix seconds, as a string
    POLY_PASSPHRASE  - API passphrase
    POLY_ADDRESS     - wallet address the key belongs to, when configured

The path is signed exactly as sent, query string included.
"""

import json
import time
from typing import Optional

from py_clob_client.signing.hmac import build_hmac_signature

from config import ExchangeCredentials


def serialize_body(body: Optional[dict]) -> str:
    """Serialize a JSON body once so the signed and sent bytes match"""
    if body is None:
        return ""
    return json.dumps(body, separators=(",", ":"))


def build_auth_headers(
    credentials: ExchangeCredentials,
    method: str,
    path: str,
    body: str = "",
    timestamp: Optional[str] = None,
) -> dict[str, str]:
    """
    Build the signed header set for one request.

    Args:
        credentials: CLOB API credentials
        method: HTTP method, upper case
        path: Request path including query string (e.g. "/positions?user=0x...")
        body: Serialized request body ("" for GET)
        timestamp: Override for tests; defaults to now
    """
    if timestamp is None:
        timestamp = str(int(time.time()))

    method = method.upper()
    signature = build_hmac_signature(credentials.api_secret, timestamp, method, path, body or None)

    headers = {
        "POLY_API_KEY": credentials.api_key,
        "POLY_SIGNATURE": signature,
        "POLY_TIMESTAMP": timestamp,
        "POLY_PASSPHRASE": credentials.passphrase,
        "Content-Type": "application/json",
    }
    if credentials.address:
        headers["POLY_ADDRESS"] = credentials.address
    return headers
