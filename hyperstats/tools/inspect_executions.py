from __future__ import annotations

from pathlib import Path

from hyperstats.config import load_config
from hyperstats.db import ledger, store


def main() -> None:
    root = Path(__file__).resolve().parents[2]
    config = load_config(root / "config.yaml")
    db_path = Path(config.db_path)
    if not db_path.is_absolute():
        db_path = root / db_path
    if not db_path.exists():
        print(f"No database at {db_path}.")
        return

    conn = store.get_connection(db_path)
    counts = ledger.count_by_status(conn)
    unprocessed = store.count_rows(conn, "executions", "processed = 0")
    recent = ledger.fetch_recent_executions(conn, limit=20)
    conn.close()

    print("executions_by_status:")
    for status, count in counts.items():
        print(f"- {status}: {count}")
    print(f"unprocessed: {unprocessed}")
    print("recent_executions:")
    for row in recent:
        print(
            f"- {row['execution_id']} query={row['query_id']} status={row['status']} "
            f"processed={bool(row['processed'])} rows={_fmt(row['row_count'])} "
            f"created={row['created_at']} error={row['error_message'] or '-'}"
        )


def _fmt(value: int | None) -> str:
    if value is None:
        return "n/a"
    return str(value)


if __name__ == "__main__":
    main()
