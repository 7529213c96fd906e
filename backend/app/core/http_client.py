# app/core/http_client.py
# Process-wide outbound HTTP client. Every call carries a bounded timeout.

from typing import Any, Dict, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import IntegrationError
from app.core.logging_setup import logger


def build_http_client(timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout or settings.HTTP_TIMEOUT_SECONDS,
        headers={"User-Agent": f"{settings.APP_NAME.replace(' ', '-')}/1.0"},
        transport=transport,
    )


async def post_json(
    client: httpx.AsyncClient,
    channel: str,
    url: str,
    payload: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
) -> httpx.Response:
    """POSTs JSON and raises IntegrationError on timeout, transport failure or non-2xx status."""
    log = logger.bind(channel=channel, url=url)
    try:
        response = await client.post(url, json=payload, headers=headers,
                                     timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT)
    except httpx.TimeoutException as e:
        log.warning("Outbound request timed out.")
        raise IntegrationError(channel, f"timeout calling {url}") from e
    except httpx.HTTPError as e:
        log.warning(f"Outbound request failed: {e}")
        raise IntegrationError(channel, f"request to {url} failed: {e}") from e

    if response.is_error:
        log.warning(f"Outbound request returned HTTP {response.status_code}: {response.text[:300]}")
        raise IntegrationError(channel, f"HTTP {response.status_code} from {url}", response.status_code)
    return response
