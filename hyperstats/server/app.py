from __future__ import annotations

import hmac
import json
import logging
import os
import time
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Iterator

from flask import Flask, jsonify, request

from hyperstats.analytics.combined import combined_metrics, normalize_period
from hyperstats.config import AppConfig, Secrets, load_config
from hyperstats.db import store
from hyperstats.db.run_log import RunLogger, fetch_run_logs, summarize_run_logs
from hyperstats.errors import ConfigError, Unauthorized
from hyperstats.pipeline.jobs import ProviderClients, run_stage
from hyperstats.pipeline.webhook import handle_webhook_payload, verify_signature
from hyperstats.utils.cache import TTLCache
from hyperstats.utils.time import iso_hours_ago, utc_now

logger = logging.getLogger(__name__)

CRON_LOG_LOOKBACK_DAYS = 30

# endpoint path -> stage name
STAGE_ROUTES = {
    "/api/cron/trigger-query": "trigger_query",
    "/api/cron/poll-dune-results": "poll_dune_results",
    "/api/cron/memes-metrics": "memes_metrics",
    "/api/cron/token-refresh": "token_refresh",
    "/api/cron/geckoterminal-sync": "geckoterminal_sync",
    "/api/cron/hyperevm-sync-llama": "hyperevm_sync_llama",
    "/api/cron/hyperliquid-sync-revenue": "hyperliquid_sync_revenue",
    "/api/cron/cmc-sync": "cmc_sync",
}


def authorize(headers, secrets: Secrets) -> str:
    """Return how the caller authenticated; raise Unauthorized or ConfigError otherwise."""
    if not secrets.cron_secret and not secrets.debug_password:
        raise ConfigError("Neither CRON_SECRET nor DEBUG_PASSWORD is configured")
    auth_header = headers.get("Authorization") or ""
    if secrets.cron_secret and hmac.compare_digest(auth_header, f"Bearer {secrets.cron_secret}"):
        return "cron_secret"
    debug_header = headers.get("X-Debug-Password") or ""
    if secrets.debug_password and debug_header and hmac.compare_digest(debug_header, secrets.debug_password):
        return "debug_password"
    raise Unauthorized("Unauthorized")


def _request_params() -> dict[str, Any]:
    params: dict[str, Any] = dict(request.args.items())
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        params.update(body)
    return params


def create_app(
    config: AppConfig | None = None,
    clients=None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Flask:
    config = config or AppConfig()
    clients = clients or ProviderClients(config, sleep=sleep)
    cache = TTLCache(config.cache.ttl_s, clock=clock, max_age_s=config.cache.max_age_s)

    app = Flask(__name__)
    app.config["HYPERSTATS"] = config
    app.extensions["hyperstats_cache"] = cache

    @contextmanager
    def connection() -> Iterator[Any]:
        conn = store.get_connection(Path(config.db_path))
        try:
            store.init_db(conn)
            yield conn
        finally:
            conn.close()

    def stage_view(stage: str):
        def view():
            try:
                method = authorize(request.headers, config.secrets)
            except Unauthorized:
                logger.warning("Unauthorized call to %s", request.path)
                return jsonify({"success": False, "error": "Unauthorized"}), 401
            except ConfigError as exc:
                logger.error("Refusing %s: %s", request.path, exc)
                return jsonify({"success": False, "error": str(exc)}), 500
            logger.info("Running %s (authorized via %s)", stage, method)
            with connection() as conn:
                payload, status = run_stage(conn, stage, config, clients, params=_request_params(), sleep=sleep)
            return jsonify(payload), status

        view.__name__ = f"stage_{stage}"
        return view

    for path, stage in STAGE_ROUTES.items():
        app.add_url_rule(path, view_func=stage_view(stage), methods=["GET", "POST"])
    app.add_url_rule("/api/dune-poll", view_func=stage_view("dune_poll"), methods=["POST"])

    @app.route("/api/dune-webhook", methods=["POST"])
    def dune_webhook():
        secret = config.secrets.dune_webhook_secret
        if not secret:
            return jsonify({"error": "Configuration error: webhook secret missing"}), 500
        signature = request.headers.get("X-Dune-Signature")
        if not signature:
            return jsonify({"error": "Missing signature"}), 400
        body = request.get_data()
        if not verify_signature(body, signature, secret):
            logger.warning("Rejected webhook with invalid signature")
            return jsonify({"error": "Invalid signature"}), 403
        try:
            payload = json.loads(body)
        except ValueError:
            return jsonify({"error": "Invalid JSON payload"}), 400
        if not isinstance(payload, dict):
            return jsonify({"error": "Invalid JSON payload"}), 400

        with connection() as conn:
            run_logger = RunLogger(conn, "dune_webhook")
            run_logger.start()
            try:
                detail = handle_webhook_payload(conn, payload)
            except ValueError as exc:
                run_logger.error(str(exc))
                return jsonify({"success": False, "error": str(exc), "execution_id": run_logger.run_id}), 400
            except Exception as exc:  # noqa: BLE001
                logger.exception("Webhook processing failed")
                run_logger.error(f"{type(exc).__name__}: {exc}")
                return jsonify({"success": False, "error": "Internal error", "execution_id": run_logger.run_id}), 500
            errors = int(detail.get("errors") or 0)
            run_logger.complete(detail, success_count=int(detail.get("stored") or 0), error_count=errors)
        return jsonify(
            {
                "success": errors == 0,
                "execution_id": run_logger.run_id,
                **{key: value for key, value in detail.items() if key != "execution_id"},
                "dune_execution_id": detail["execution_id"],
                "duration_ms": run_logger.duration_ms(),
            }
        )

    @app.route("/api/combined-metrics")
    def combined():
        period = normalize_period(request.args.get("period"))
        key = f"combined-{period}"
        cached = cache.get(key)
        if cached is not None:
            return jsonify(cached)
        try:
            with connection() as conn:
                data = combined_metrics(conn, period)
        except Exception:  # noqa: BLE001
            logger.exception("combined metrics failed")
            return jsonify({"error": "Internal server error"}), 500
        cache.set(key, data)
        return jsonify(data)

    @app.route("/api/cron-logs")
    def cron_logs():
        since = iso_hours_ago(utc_now(), timedelta(days=CRON_LOG_LOOKBACK_DAYS).total_seconds() / 3600)
        try:
            with connection() as conn:
                logs = fetch_run_logs(conn, since, limit=50)
                summary = summarize_run_logs(conn, since)
        except Exception:  # noqa: BLE001
            logger.exception("cron logs failed")
            return jsonify({"error": "Failed to fetch cron logs"}), 500
        return jsonify({"logs": logs, "summary": summary})

    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    root = Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yaml")
    if not Path(config.db_path).is_absolute():
        config.db_path = str(root / config.db_path)
    app = create_app(config)
    port = int(os.environ.get("PORT", "8080"))
    logger.info("Serving hyperstats on port %s", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
