from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import httpx

from dealscout.adapters.base import SourceAdapter
from dealscout.adapters.common import fetch_response, make_client
from dealscout.config import Settings
from dealscout.errors import AdapterFetchError
from dealscout.profiles import SourceProfile
from dealscout.schemas import RawRecord

log = logging.getLogger(__name__)


class JsonFeedAdapter(SourceAdapter):
    """Pulls listings from an HTTP endpoint returning a JSON array.

    The payload may be a bare list or an object with a ``listings`` key.
    Filters are forwarded as query parameters.
    """

    def __init__(
        self,
        profile: SourceProfile,
        url: str,
        settings: Settings,
        *,
        id_field: str = "external_id",
        field_map: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(profile)
        self.url = url
        self.settings = settings
        self.id_field = id_field
        self.field_map = field_map
        self.transport = transport

    async def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        params = {k: v for k, v in (filters or {}).items() if isinstance(v, (str, int, float))}
        async with make_client(self.settings, self.transport) as client:
            response = await fetch_response(client, self.url, self.settings, source=self.source, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise AdapterFetchError(self.source, f"invalid JSON from {self.url}") from exc
        items = payload.get("listings") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise AdapterFetchError(self.source, f"unexpected payload shape from {self.url}")
        log.info("Feed %s returned %d items", self.url, len(items))
        for item in items:
            if not isinstance(item, dict):
                log.warning("Skipping non-object feed item from %s", self.url)
                continue
            external_id = item.get(self.id_field) or item.get("id")
            yield RawRecord(source=self.source, external_id=str(external_id) if external_id else None, data=item)
