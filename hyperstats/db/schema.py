SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS executions (
    execution_id TEXT PRIMARY KEY,
    query_id INTEGER NOT NULL,
    status TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    row_count INTEGER,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    updated_at TEXT NOT NULL,
    error_message TEXT,
    trigger_run_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_executions_pending
    ON executions (processed, created_at);

CREATE TABLE IF NOT EXISTS wallet_flow_daily (
    block_day TEXT PRIMARY KEY,
    address_count INTEGER,
    deposit REAL,
    withdraw REAL,
    netflow REAL,
    total_wallets INTEGER,
    tvl REAL,
    execution_id TEXT,
    query_id INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS protocol_tvl_daily (
    day TEXT NOT NULL,
    protocol_name TEXT NOT NULL,
    daily_tvl REAL,
    total_daily_tvl REAL,
    execution_id TEXT,
    query_id INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (day, protocol_name)
);

CREATE TABLE IF NOT EXISTS daily_revenue (
    day TEXT PRIMARY KEY,
    revenue REAL,
    annualized_revenue REAL,
    execution_id TEXT,
    query_id INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tokens (
    contract_address TEXT PRIMARY KEY,
    gecko_id TEXT,
    name TEXT,
    symbol TEXT,
    pair_address TEXT,
    pair_created_at TEXT,
    dex_id TEXT,
    chain_id TEXT,
    image_url TEXT,
    enabled INTEGER NOT NULL DEFAULT 1,
    is_hidden INTEGER NOT NULL DEFAULT 0,
    low_liquidity INTEGER NOT NULL DEFAULT 0,
    low_volume INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS token_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    contract_address TEXT NOT NULL,
    price_usd REAL,
    market_cap REAL,
    fdv REAL,
    volume_24h REAL,
    liquidity_usd REAL,
    price_change_30m REAL,
    price_change_24h REAL,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_token_metrics_latest
    ON token_metrics (contract_address, recorded_at);

CREATE TABLE IF NOT EXISTS memes_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recorded_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    total_market_cap REAL,
    total_volume_24h REAL,
    total_liquidity REAL,
    token_count INTEGER,
    avg_price_change_30m REAL,
    avg_price_change_24h REAL,
    visible_total_market_cap REAL,
    visible_total_volume_24h REAL,
    visible_total_liquidity REAL,
    visible_token_count INTEGER,
    visible_avg_price_change_30m REAL,
    visible_avg_price_change_24h REAL
);

CREATE TABLE IF NOT EXISTS filter_thresholds (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    min_liquidity_usd REAL NOT NULL,
    min_volume_usd REAL NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS cmc_quotes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    price REAL,
    market_cap REAL,
    percent_change_24h REAL,
    fully_diluted_market_cap REAL,
    volume_24h REAL,
    volume_change_24h REAL,
    synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS run_logs (
    run_id TEXT PRIMARY KEY,
    run_type TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    updated_at TEXT,
    duration_ms INTEGER,
    success_count INTEGER,
    error_count INTEGER,
    progress_json TEXT,
    results_json TEXT,
    error_message TEXT
);
"""
