"""
Exception types for the hyperstats pipeline.

Scope decides how far an error travels:
- per row / per item / per page errors are caught inside the loop that owns
  them and counted (PartialRowError, ProviderUnavailable, RateLimited)
- per invocation errors abort the invocation and become a JSON error payload
  (ConfigError, Unauthorized)
"""

from __future__ import annotations

from typing import Any


class HyperstatsError(Exception):
    """Base exception for hyperstats."""


class ConfigError(HyperstatsError):
    """A required credential or setting is missing. Not retried."""


class Unauthorized(HyperstatsError):
    """Wrong or missing shared secret on a scheduled invocation."""


class ProviderUnavailable(HyperstatsError):
    """
    External API returned a non-2xx status, malformed JSON or could not be
    reached. The current item is abandoned for this run.
    """

    def __init__(self, message: str, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class RateLimited(ProviderUnavailable):
    """Provider answered 429. `retry_after` is the provider hint in seconds, if any."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status: int | None = 429,
        body: str | None = None,
    ) -> None:
        super().__init__(message, status=status, body=body)
        self.retry_after = retry_after


class PartialRowError(HyperstatsError):
    """One result row could not be mapped or stored."""

    def __init__(self, message: str, row: Any = None) -> None:
        super().__init__(message)
        self.row = row


class UntrackedExecution(HyperstatsError):
    """
    The provider accepted a job but the ledger insert failed, so the
    execution exists remotely with no local row.
    """

    def __init__(self, message: str, execution_id: str, query_id: int) -> None:
        super().__init__(message)
        self.execution_id = execution_id
        self.query_id = query_id
