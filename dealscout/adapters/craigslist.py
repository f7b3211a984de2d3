from __future__ import annotations

import logging
import re
from typing import Any, AsyncIterator
from urllib.parse import urljoin

import httpx
from lxml import html as lxml_html

from dealscout.adapters.base import SourceAdapter
from dealscout.adapters.common import fetch_response, make_client
from dealscout.config import Settings
from dealscout.profiles import SourceProfile
from dealscout.schemas import RawRecord
from dealscout.utils import collapse_whitespace

log = logging.getLogger(__name__)

SEARCH_PATH = "/search/bfs"
_POST_ID_RE = re.compile(r"/(\d+)\.html")


def _text(nodes: list[Any]) -> str:
    return collapse_whitespace(" ".join(" ".join(node.itertext()) for node in nodes))


def parse_results(page: str, base_url: str, region: str) -> list[dict[str, Any]]:
    """Extract listing cards from a business-for-sale search page.

    Handles both the static result list and the older ``result-row`` markup.
    """
    tree = lxml_html.fromstring(page)
    cards = tree.xpath("//li[contains(@class, 'cl-static-search-result')] | //li[contains(@class, 'result-row')]")
    out: list[dict[str, Any]] = []
    for card in cards:
        links = card.xpath(".//a[@href]")
        if not links:
            continue
        url = urljoin(base_url, links[0].get("href"))
        match = _POST_ID_RE.search(url)
        title = _text(card.xpath(".//*[contains(@class, 'title')]")) or _text(links[:1])
        if not match or not title:
            continue
        hood = _text(card.xpath(".//*[contains(@class, 'location') or contains(@class, 'result-hood')]"))
        out.append({
            "external_id": f"cl_{region}_{match.group(1)}",
            "name": title,
            "location": {"city": hood.strip("() ") or region.title(), "country": "US"},
            "financial_data": {"asking_price": _text(card.xpath(".//*[contains(@class, 'price')]")) or None},
            "contact_info": {"listing_url": url},
        })
    return out


class CraigslistAdapter(SourceAdapter):
    def __init__(
        self,
        profile: SourceProfile,
        settings: Settings,
        *,
        region: str = "newyork",
        state: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(profile)
        self.settings = settings
        self.region = region
        self.state = state
        self.transport = transport

    @property
    def base_url(self) -> str:
        return f"https://{self.region}.craigslist.org"

    async def fetch(self, filters: dict[str, Any] | None = None) -> AsyncIterator[RawRecord]:
        filters = filters or {}
        params: dict[str, Any] = {}
        if filters.get("min_price") is not None:
            params["min_price"] = int(filters["min_price"])
        if filters.get("max_price") is not None:
            params["max_price"] = int(filters["max_price"])
        async with make_client(self.settings, self.transport) as client:
            response = await fetch_response(
                client, self.base_url + SEARCH_PATH, self.settings, source=self.source, params=params,
            )
        items = parse_results(response.text, self.base_url, self.region)
        log.info("Craigslist %s returned %d results", self.region, len(items))
        for item in items:
            if self.state:
                item["location"]["state"] = self.state
            yield RawRecord(source=self.source, external_id=item["external_id"], data=item)
