from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from dealscout.config import Settings
from dealscout.errors import AdapterFetchError

log = logging.getLogger(__name__)


def make_client(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent},
        timeout=httpx.Timeout(settings.request_timeout_seconds),
        follow_redirects=True,
        transport=transport,
    )


async def fetch_response(
    client: httpx.AsyncClient,
    url: str,
    settings: Settings,
    *,
    source: str,
    params: dict[str, Any] | None = None,
) -> httpx.Response:
    """GET with linear backoff; exhausting the retries raises AdapterFetchError."""
    last_error: Exception | None = None
    for attempt in range(1, settings.max_retries + 1):
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            last_error = exc
            log.warning("Request failed (%s/%s) %s: %s", attempt, settings.max_retries, url, exc)
            if attempt < settings.max_retries:
                await asyncio.sleep(settings.request_backoff_seconds * attempt)
    raise AdapterFetchError(source, f"unable to fetch {url}: {last_error}")
