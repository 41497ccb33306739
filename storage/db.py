"""DuckDB persistence for deployed market metadata."""

from __future__ import annotations

import json
import os
from datetime import UTC
from pathlib import Path
from typing import Iterable, Sequence

import duckdb

from pipelines.model import DeployedMarket

DB_ENV_VAR = "MARKETS_DB_PATH"
DEFAULT_DB_PATH = Path("data/markets.duckdb")

DEPLOYED_MARKETS_TABLE = "deployed_markets"


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_deployed_markets_table(conn)
    return conn


def ensure_deployed_markets_table(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {DEPLOYED_MARKETS_TABLE} (
            transaction_hash TEXT NOT NULL,
            symbol TEXT NOT NULL,
            market_address TEXT NOT NULL,
            market_id_bytes32 TEXT NOT NULL,
            chain_id BIGINT NOT NULL,
            metadata JSON,
            deployed_at TIMESTAMP NOT NULL,
            PRIMARY KEY (transaction_hash)
        )
        """
    )


def _serialize_market(market: DeployedMarket) -> tuple:
    data = market.model_dump(mode="json")
    return (
        data["transaction_hash"],
        data["symbol"],
        data["market_address"],
        data["market_id_bytes32"],
        data["chain_id"],
        json.dumps(data["metadata"]),
        market.deployed_at.astimezone(UTC).replace(tzinfo=None),
    )


def upsert_deployed_markets(
    conn: duckdb.DuckDBPyConnection, markets: Iterable[DeployedMarket]
) -> int:
    """Insert or replace deployed markets keyed by transaction hash.

    Returns
    -------
    int
        Number of records written to the database.
    """

    serialized = [_serialize_market(market) for market in markets]
    if not serialized:
        return 0

    conn.executemany(
        f"""
        INSERT OR REPLACE INTO {DEPLOYED_MARKETS_TABLE} (
            transaction_hash,
            symbol,
            market_address,
            market_id_bytes32,
            chain_id,
            metadata,
            deployed_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        serialized,
    )
    return len(serialized)


def fetch_deployed_markets(
    conn: duckdb.DuckDBPyConnection,
    *,
    where: str | None = None,
    params: Sequence[object] | None = None,
    limit: int | None = None,
) -> list[DeployedMarket]:
    """Query stored records and reconstruct ``DeployedMarket`` models, newest first."""

    sql = (
        "SELECT transaction_hash, symbol, market_address, market_id_bytes32, chain_id, metadata, deployed_at "
        f"FROM {DEPLOYED_MARKETS_TABLE}"
    )
    if where:
        sql += f" WHERE {where}"
    sql += " ORDER BY deployed_at DESC"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    cursor = conn.execute(sql, params or [])
    results: list[DeployedMarket] = []
    for row in cursor.fetchall():
        metadata = row[5]
        results.append(
            DeployedMarket(
                transaction_hash=row[0],
                symbol=row[1],
                market_address=row[2],
                market_id_bytes32=row[3],
                chain_id=row[4],
                metadata=json.loads(metadata) if isinstance(metadata, str) else (metadata or {}),
                deployed_at=row[6].replace(tzinfo=UTC),
            )
        )
    return results


class DuckDbMetadataStore:
    """``MetadataStore`` backed by the DuckDB file; one short-lived connection per save."""

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = path

    async def save(self, market: DeployedMarket) -> None:
        conn = connect(self.path)
        try:
            upsert_deployed_markets(conn, [market])
        finally:
            conn.close()


__all__ = [
    "connect",
    "ensure_deployed_markets_table",
    "upsert_deployed_markets",
    "fetch_deployed_markets",
    "DuckDbMetadataStore",
    "DEPLOYED_MARKETS_TABLE",
    "get_database_path",
]
