"""
Exchange API Authentication Helpers
===================================

HMAC-SHA256 signatures for the Binance and Coinbase Exchange REST APIs.

Security:
- Never logs API keys/secrets
- Signatures are computed per request; nothing is cached

Reference:
- https://developers.binance.com/docs/binance-spot-api-docs/rest-api
- https://docs.cdp.coinbase.com/exchange/docs/rest-auth
"""

import base64
import hashlib
import hmac
import time
from typing import Dict, Optional
from urllib.parse import urlencode


def binance_signature(api_secret: str, query_string: str) -> str:
    """
    Generate the hex HMAC-SHA256 signature Binance expects for signed endpoints.

    Args:
        api_secret: API secret (must not be logged)
        query_string: URL-encoded query, including ``timestamp=...``

    Returns:
        Hex-encoded signature (64 chars)
    """
    return hmac.new(api_secret.encode("utf-8"), query_string.encode("utf-8"), hashlib.sha256).hexdigest()


def binance_signed_query(
    api_secret: str,
    params: Optional[Dict[str, object]] = None,
    timestamp_ms: Optional[int] = None,
) -> str:
    """Append ``timestamp`` and ``signature`` to a Binance query string."""
    query = dict(params or {})
    query["timestamp"] = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    query_string = urlencode(query)
    return f"{query_string}&signature={binance_signature(api_secret, query_string)}"


def coinbase_signature(api_secret: str, timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """
    Generate the base64 HMAC-SHA256 signature for Coinbase Exchange requests.

    The prehash string is ``timestamp + METHOD + request_path + body`` and the
    key is the base64-decoded API secret.

    Args:
        api_secret: Base64 API secret (must not be logged)
        timestamp: Seconds since epoch, as sent in ``CB-ACCESS-TIMESTAMP``
        method: HTTP method
        request_path: Path including the query string
        body: JSON body as string (empty for GET)

    Returns:
        Base64-encoded signature
    """
    message = f"{timestamp}{method.upper()}{request_path}{body}"
    key = base64.b64decode(api_secret)
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def coinbase_auth_headers(
    api_key: str,
    api_secret: str,
    passphrase: str,
    method: str,
    request_path: str,
    body: str = "",
    timestamp: Optional[str] = None,
) -> Dict[str, str]:
    """
    Build the ``CB-ACCESS-*`` headers for an authenticated Coinbase request.

    Returns:
        Dict with CB-ACCESS-KEY, CB-ACCESS-SIGN, CB-ACCESS-TIMESTAMP,
        CB-ACCESS-PASSPHRASE and Content-Type
    """
    timestamp = timestamp or str(int(time.time()))
    return {
        "CB-ACCESS-KEY": api_key,
        "CB-ACCESS-SIGN": coinbase_signature(api_secret, timestamp, method, request_path, body),
        "CB-ACCESS-TIMESTAMP": timestamp,
        "CB-ACCESS-PASSPHRASE": passphrase,
        "Content-Type": "application/json",
    }
