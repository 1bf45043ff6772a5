from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from hyperstats.config import RateLimitConfig
from hyperstats.errors import ProviderUnavailable, RateLimited

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (requests.Timeout, requests.ConnectionError)


def _retry_after_seconds(response: requests.Response) -> float | None:
    raw = response.headers.get("Retry-After") if response.headers is not None else None
    if raw is None:
        return None
    try:
        return float(int(str(raw).strip()))
    except ValueError:
        return None


class JsonClient:
    """Shared `requests` plumbing for the provider clients.

    Transport failures are retried by tenacity; everything that still fails is
    raised as ProviderUnavailable (or RateLimited for a 429) so callers only
    deal with the project's own exception types.
    """

    base_url = ""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: int = 20,
        session: requests.Session | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = (base_url or self.base_url).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = (5, timeout_s)
        self.headers = {"Accept": "application/json", **(headers or {})}
        self.rate_limited_count = 0

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        retry=retry_if_exception_type(TRANSPORT_ERRORS),
        reraise=True,
    )
    def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> requests.Response:
        return self.session.request(
            method,
            url,
            params=params,
            json=json_body,
            headers=self.headers,
            timeout=self.timeout,
        )

    def request_json(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._send(method, url, params=params, json_body=json_body)
        except TRANSPORT_ERRORS as exc:
            raise ProviderUnavailable(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 429:
            self.rate_limited_count += 1
            raise RateLimited(
                f"{method} {path} rate limited",
                retry_after=_retry_after_seconds(response),
                body=response.text[:500],
            )
        if not 200 <= response.status_code < 300:
            raise ProviderUnavailable(
                f"{method} {path} returned HTTP {response.status_code}",
                status=response.status_code,
                body=response.text[:500],
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailable(
                f"{method} {path} returned malformed JSON",
                status=response.status_code,
                body=response.text[:500],
            ) from exc

    def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.request_json("GET", path, params=params)

    def request_json_rate_limited(
        self,
        method: str,
        path: str,
        policy: RateLimitConfig,
        sleep: Callable[[float], None] = time.sleep,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> Any:
        """Request that waits out 429s: one attempt plus up to `policy.max_attempts` retries.

        Each wait is the provider's Retry-After (default `default_wait_s`),
        capped at `max_wait_s`. The last RateLimited propagates.
        """
        for attempt in range(policy.max_attempts + 1):
            try:
                return self.request_json(method, path, params=params, json_body=json_body)
            except RateLimited as exc:
                if attempt >= policy.max_attempts:
                    raise
                wait = exc.retry_after if exc.retry_after is not None else policy.default_wait_s
                wait = min(wait, policy.max_wait_s)
                logger.info(
                    "Rate limited on %s %s (attempt %s/%s), waiting %ss",
                    method,
                    path,
                    attempt + 1,
                    policy.max_attempts,
                    wait,
                )
                sleep(wait)
        raise RateLimited(f"{method} {path} rate limited")

    def get_json_rate_limited(
        self,
        path: str,
        params: dict[str, Any] | None,
        policy: RateLimitConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Any:
        return self.request_json_rate_limited("GET", path, policy, sleep, params=params)
