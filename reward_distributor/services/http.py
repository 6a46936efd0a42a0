"""
Shared aiohttp helper for the external JSON services (fee claim, swap, ops).
"""

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from reward_distributor.core.exceptions import ExternalServiceError, TransientServiceError


async def request_json(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Any] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0
) -> Any:
    """
    Perform one JSON request and decode the response body.

    Raises:
        TransientServiceError: HTTP 429 / 5xx, timeouts and connection errors
        ExternalServiceError: any other non-2xx response
    """
    try:
        async with session.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            text = await response.text()
            status = response.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransientServiceError(
            f"{method} {_strip_query(url)} failed: {e or type(e).__name__}",
            {"url": _strip_query(url), "error_type": type(e).__name__}
        ) from e

    details = {"url": _strip_query(url), "status": status, "body": text[:500]}
    if status == 429 or status >= 500:
        raise TransientServiceError(f"HTTP {status} from {_strip_query(url)}", details)
    if status >= 400:
        raise ExternalServiceError(f"HTTP {status} from {_strip_query(url)}", details)

    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def _strip_query(url: str) -> str:
    return url.split("?", 1)[0]
