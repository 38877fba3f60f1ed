"""
Request signing for Delta Exchange private endpoints.

signature = hex(HMAC_SHA256(secret, method + timestamp + path + query_string + body))

`query_string` includes its leading '?' when present. The exchange echoes the
canonical string back as `signature_data` on signature errors, which is the
quickest way to debug a mismatch.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

USER_AGENT = "gridworker/1.0"


def build_query_string(query: Optional[Mapping[str, Any]]) -> str:
    if not query:
        return ""
    items = [(k, v) for k, v in query.items() if v is not None]
    if not items:
        return ""
    return "?" + urlencode(items, safe=",")


def sign_request(secret: str, method: str, timestamp: str, path: str,
                 query_string: str = "", body: str = "") -> str:
    message = method.upper() + timestamp + path + query_string + body
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def signed_headers(api_key: str, api_secret: str, method: str, path: str,
                   query_string: str = "", body: str = "",
                   clock_offset: float = 0.0, now: Optional[float] = None) -> Dict[str, str]:
    """
    Build auth headers for one request.

    clock_offset is (server_time - local_time) in seconds, learned from an
    expired-signature response.
    """
    ts = int((now if now is not None else time.time()) + clock_offset)
    timestamp = str(ts)
    return {
        "api-key": api_key,
        "timestamp": timestamp,
        "signature": sign_request(api_secret, method, timestamp, path, query_string, body),
        "user-agent": USER_AGENT,
        "content-type": "application/json",
        "accept": "application/json",
    }
