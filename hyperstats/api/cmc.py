from __future__ import annotations

from typing import Any

import requests

from hyperstats.api.base import JsonClient
from hyperstats.config import CmcConfig
from hyperstats.errors import ConfigError, ProviderUnavailable


class CmcClient(JsonClient):
    base_url = "https://pro-api.coinmarketcap.com/v1"

    def __init__(
        self,
        api_key: str | None,
        config: CmcConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key:
            raise ConfigError("CMC_PRO_API_KEY is not configured")
        self.config = config or CmcConfig()
        super().__init__(
            base_url=self.config.base_url,
            timeout_s=self.config.request_timeout_s,
            session=session,
            headers={"X-CMC_PRO_API_KEY": api_key},
        )

    def get_usd_quote(self, symbol: str) -> dict[str, Any]:
        payload = self.get_json("/cryptocurrency/quotes/latest", params={"symbol": symbol})
        data = payload.get("data") if isinstance(payload, dict) else None
        entry = data.get(symbol) if isinstance(data, dict) else None
        # Newer API versions key each symbol to a list of matches.
        if isinstance(entry, list):
            entry = entry[0] if entry else None
        quote = ((entry or {}).get("quote") or {}).get("USD")
        if not isinstance(quote, dict):
            raise ProviderUnavailable(f"{symbol} quote not found in response", body=str(payload)[:500])
        return quote
