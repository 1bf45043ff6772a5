from __future__ import annotations

import time
from typing import Any, Callable

import requests

from hyperstats.api.base import JsonClient
from hyperstats.config import DuneConfig, RateLimitConfig
from hyperstats.errors import ConfigError, ProviderUnavailable

STATE_COMPLETED = "QUERY_STATE_COMPLETED"
FAILURE_STATES = frozenset({"QUERY_STATE_FAILED", "QUERY_STATE_CANCELLED", "QUERY_STATE_EXPIRED"})


class DuneClient(JsonClient):
    """Dune execute / results calls; 429s are waited out per `rate_limit`."""

    base_url = "https://api.dune.com/api/v1"

    def __init__(
        self,
        api_key: str | None,
        config: DuneConfig | None = None,
        session: requests.Session | None = None,
        rate_limit: RateLimitConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            raise ConfigError("DUNE_API_KEY is not configured")
        self.config = config or DuneConfig()
        self.rate_limit = rate_limit or RateLimitConfig()
        self.sleep = sleep
        super().__init__(
            base_url=self.config.base_url,
            timeout_s=self.config.request_timeout_s,
            session=session,
            headers={"X-Dune-Api-Key": api_key},
        )

    def execute_query(self, query_id: int) -> str:
        payload = self.request_json_rate_limited(
            "POST",
            f"/query/{query_id}/execute",
            self.rate_limit,
            self.sleep,
            json_body={"performance": self.config.performance},
        )
        execution_id = payload.get("execution_id") if isinstance(payload, dict) else None
        if not execution_id:
            raise ProviderUnavailable(
                f"execute for query {query_id} returned no execution_id",
                body=str(payload)[:500],
            )
        return str(execution_id)

    def get_results(self, execution_id: str) -> dict[str, Any]:
        payload = self.request_json_rate_limited("GET", f"/execution/{execution_id}/results", self.rate_limit, self.sleep)
        if not isinstance(payload, dict) or not payload.get("state"):
            raise ProviderUnavailable(
                f"results for execution {execution_id} carried no state",
                body=str(payload)[:500],
            )
        return payload


def result_rows(payload: dict[str, Any]) -> list[dict[str, Any]]:
    result = payload.get("result") or {}
    rows = result.get("rows") if isinstance(result, dict) else None
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


def error_message(payload: dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return str(payload.get("state") or "Query execution failed on provider")
