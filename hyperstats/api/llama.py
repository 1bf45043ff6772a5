from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Iterable

import requests

from hyperstats.api.base import JsonClient
from hyperstats.config import LlamaConfig
from hyperstats.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


class LlamaClient(JsonClient):
    base_url = "https://api.llama.fi"

    def __init__(self, config: LlamaConfig | None = None, session: requests.Session | None = None) -> None:
        self.config = config or LlamaConfig()
        super().__init__(base_url=self.config.base_url, timeout_s=self.config.request_timeout_s, session=session)

    def get_protocol(self, slug: str) -> dict[str, Any]:
        payload = self.get_json(f"/updatedProtocol/{slug}")
        if not isinstance(payload, dict):
            raise ProviderUnavailable(f"protocol {slug} payload is not an object")
        return payload

    def get_protocols(self, slugs: Iterable[str]) -> dict[str, dict[str, Any] | None]:
        """Fetch every slug concurrently. A failed fetch maps to None."""
        slugs = list(slugs)
        results: dict[str, dict[str, Any] | None] = {}
        if not slugs:
            return results
        with ThreadPoolExecutor(max_workers=min(self.config.max_workers, len(slugs))) as executor:
            future_to_slug = {executor.submit(self.get_protocol, slug): slug for slug in slugs}
            for future in as_completed(future_to_slug):
                slug = future_to_slug[future]
                try:
                    results[slug] = future.result()
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to fetch protocol %s: %s", slug, exc)
                    results[slug] = None
        return results

    def get_fees_summary(self, protocol: str) -> dict[str, Any]:
        payload = self.get_json(f"/summary/fees/{protocol}")
        if not isinstance(payload, dict):
            raise ProviderUnavailable(f"fees summary for {protocol} is not an object")
        return payload
