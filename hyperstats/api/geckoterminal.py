from __future__ import annotations

import time
from typing import Any, Callable

import requests

from hyperstats.api.base import JsonClient
from hyperstats.config import GeckoConfig, RateLimitConfig
from hyperstats.errors import ProviderUnavailable


class GeckoTerminalClient(JsonClient):
    base_url = "https://api.geckoterminal.com/api/v2"

    def __init__(
        self,
        config: GeckoConfig | None = None,
        rate_limit: RateLimitConfig | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or GeckoConfig()
        self.rate_limit = rate_limit or RateLimitConfig()
        self.sleep = sleep
        super().__init__(
            base_url=self.config.base_url,
            timeout_s=self.config.request_timeout_s,
            session=session,
            headers={"User-Agent": "hyperstats/0.1"},
        )

    def trending_pools(self, page: int) -> dict[str, Any]:
        """One page of trending pools with base tokens and dexes included.

        Raises RateLimited once the retry policy is exhausted.
        """
        payload = self.get_json_rate_limited(
            f"/networks/{self.config.network}/trending_pools",
            params={"include": "base_token,dex", "page": page, "duration": "1h"},
            policy=self.rate_limit,
            sleep=self.sleep,
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise ProviderUnavailable(f"trending pools page {page} has no data list", body=str(payload)[:500])
        return payload
