from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from hyperstats.config import load_config
from hyperstats.db import store
from hyperstats.pipeline.jobs import STAGES, ProviderClients, run_stage

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = argparse.ArgumentParser(description="Run one hyperstats pipeline stage")
    parser.add_argument("stage", choices=sorted(STAGES))
    parser.add_argument("--query-id", type=int, default=None)
    parser.add_argument("--execution-id", default=None)
    args = parser.parse_args(argv)

    root = Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yaml")
    db_path = Path(config.db_path)
    if not db_path.is_absolute():
        db_path = root / db_path

    params = {}
    if args.query_id is not None:
        params["query_id"] = args.query_id
    if args.execution_id:
        params["execution_id"] = args.execution_id

    conn = store.get_connection(db_path)
    store.init_db(conn)
    try:
        payload, status = run_stage(conn, args.stage, config, ProviderClients(config), params=params)
    finally:
        conn.close()

    print(json.dumps(payload, indent=2, default=str))
    if status != 200:
        logger.error("Stage %s finished with status %s", args.stage, status)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
