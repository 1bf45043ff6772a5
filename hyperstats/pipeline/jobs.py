from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Dict, Tuple

from hyperstats.api.cmc import CmcClient
from hyperstats.api.dune import DuneClient
from hyperstats.api.geckoterminal import GeckoTerminalClient
from hyperstats.api.llama import LlamaClient
from hyperstats.config import AppConfig
from hyperstats.db.run_log import RunLogger
from hyperstats.errors import HyperstatsError, UntrackedExecution
from hyperstats.pipeline import aggregate, poll, sources, thresholds, trigger

logger = logging.getLogger(__name__)

StageResult = Tuple[Dict[str, Any], int, int]


class ProviderClients:
    """Builds provider clients on demand so a stage only needs the credentials it uses."""

    def __init__(self, config: AppConfig, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config
        self.sleep = sleep

    def dune(self) -> DuneClient:
        return DuneClient(self.config.secrets.dune_api_key, self.config.dune, rate_limit=self.config.rate_limit, sleep=self.sleep)

    def gecko(self) -> GeckoTerminalClient:
        return GeckoTerminalClient(self.config.gecko, self.config.rate_limit, sleep=self.sleep)

    def llama(self) -> LlamaClient:
        return LlamaClient(self.config.llama)

    def cmc(self) -> CmcClient:
        return CmcClient(self.config.secrets.cmc_api_key, self.config.cmc)


class StageContext:
    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        clients,
        run_logger: RunLogger,
        params: dict[str, Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.conn = conn
        self.config = config
        self.clients = clients
        self.run_logger = run_logger
        self.params = params or {}
        self.sleep = sleep


def trigger_stage(ctx: StageContext) -> StageResult:
    query_id = int(ctx.params.get("query_id") or ctx.config.dune.default_query_id)
    result = trigger.trigger_query(ctx.conn, ctx.clients.dune(), query_id, run_id=ctx.run_logger.run_id)
    ctx.run_logger.progress(f"Triggered query {query_id}", result)
    return result, 1, 0


def poll_stage(ctx: StageContext) -> StageResult:
    summary = poll.poll_pending(ctx.conn, ctx.clients.dune(), ctx.config.poller, run_logger=ctx.run_logger)
    succeeded = summary["completed"] + summary["failed"] + summary["still_running"] + summary["timed_out"]
    return summary, succeeded, summary["errors"]


def extended_poll_stage(ctx: StageContext) -> StageResult:
    execution_id = ctx.params.get("execution_id")
    if not execution_id:
        raise ValueError("execution_id required")
    query_id = ctx.params.get("query_id")
    result = poll.extended_poll(
        ctx.conn,
        ctx.clients.dune(),
        str(execution_id),
        ctx.config.extended_poll,
        sleep=ctx.sleep,
        query_id=int(query_id) if query_id is not None else None,
    )
    return result, 1 if result["success"] else 0, 0 if result["success"] else 1


def memes_metrics_stage(ctx: StageContext) -> StageResult:
    result = aggregate.run_memes_metrics(ctx.conn)
    return result, 1 if result["inserted"] else 0, 0


def token_refresh_stage(ctx: StageContext) -> StageResult:
    current = thresholds.get_filter_thresholds(ctx.conn, ctx.config.thresholds)
    summary = thresholds.refresh_token_flags(ctx.conn, current)
    return summary, summary["checked"] - summary["errors"], summary["errors"]


def geckoterminal_stage(ctx: StageContext) -> StageResult:
    current = thresholds.get_filter_thresholds(ctx.conn, ctx.config.thresholds)
    counts = sources.sync_geckoterminal(
        ctx.conn,
        ctx.clients.gecko(),
        current,
        ctx.config.gecko,
        sleep=ctx.sleep,
    )
    return counts, counts["inserted"] + counts["refreshed"], counts["failed"] + counts["pages_skipped"]


def llama_tvl_stage(ctx: StageContext) -> StageResult:
    result = sources.sync_llama_tvl(
        ctx.conn,
        ctx.clients.llama(),
        ctx.config.llama.protocol_slugs,
        ctx.run_logger.run_id,
        chain_keys=ctx.config.llama.chain_keys,
    )
    return result, result["upserted"], result["errors"] + len(result["failed"])


def llama_revenue_stage(ctx: StageContext) -> StageResult:
    result = sources.sync_llama_revenue(
        ctx.conn,
        ctx.clients.llama(),
        ctx.run_logger.run_id,
        protocol=ctx.config.llama.fees_protocol,
        series=ctx.config.llama.revenue_series,
    )
    return result, result["upserted"], result["errors"]


def cmc_stage(ctx: StageContext) -> StageResult:
    record = sources.sync_cmc_quote(ctx.conn, ctx.clients.cmc(), ctx.config.cmc.symbol)
    return record, 1, 0


STAGES: dict[str, Callable[[StageContext], StageResult]] = {
    "trigger_query": trigger_stage,
    "poll_dune_results": poll_stage,
    "dune_poll": extended_poll_stage,
    "memes_metrics": memes_metrics_stage,
    "token_refresh": token_refresh_stage,
    "geckoterminal_sync": geckoterminal_stage,
    "hyperevm_sync_llama": llama_tvl_stage,
    "hyperliquid_sync_revenue": llama_revenue_stage,
    "cmc_sync": cmc_stage,
}


def _response_body(result: dict[str, Any]) -> dict[str, Any]:
    body = {key: value for key, value in result.items() if key not in ("success", "execution_id")}
    if "execution_id" in result:
        body["dune_execution_id"] = result["execution_id"]
    return body


def run_stage(
    conn: sqlite3.Connection,
    stage: str,
    config: AppConfig,
    clients,
    params: dict[str, Any] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> tuple[dict[str, Any], int]:
    """Run one stage under a run log and shape its JSON payload and HTTP status.

    `execution_id` in the payload is the run-log id of this invocation.
    """
    run_logger = RunLogger(conn, stage)
    run_logger.start()
    ctx = StageContext(conn, config, clients, run_logger, params=params, sleep=sleep)
    failure: dict[str, Any] = {"success": False, "execution_id": run_logger.run_id}
    try:
        result, success_count, error_count = STAGES[stage](ctx)
    except ValueError as exc:
        run_logger.error(str(exc))
        return {**failure, "error": str(exc), "duration_ms": run_logger.duration_ms()}, 400
    except UntrackedExecution as exc:
        logger.error("Stage %s left execution %s untracked", stage, exc.execution_id)
        run_logger.error(str(exc), {"untracked_execution_id": exc.execution_id, "query_id": exc.query_id})
        return {
            **failure,
            "error": str(exc),
            "untracked_execution_id": exc.execution_id,
            "duration_ms": run_logger.duration_ms(),
        }, 500
    except HyperstatsError as exc:
        logger.error("Stage %s failed: %s", stage, exc)
        run_logger.error(str(exc))
        return {**failure, "error": str(exc), "duration_ms": run_logger.duration_ms()}, 500
    except Exception as exc:  # noqa: BLE001
        logger.exception("Stage %s crashed", stage)
        run_logger.error(f"{type(exc).__name__}: {exc}")
        return {**failure, "error": "Internal error", "duration_ms": run_logger.duration_ms()}, 500

    run_status = run_logger.complete(result, success_count=success_count, error_count=error_count)
    payload = {
        "success": bool(result.get("success", True)),
        "execution_id": run_logger.run_id,
        "run_status": run_status,
        **_response_body(result),
        "duration_ms": run_logger.duration_ms(),
    }
    return payload, 200 if payload["success"] else 500
