"""SQLite database management for the burn indexer."""

import asyncio
import aiosqlite
import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from contextlib import asynccontextmanager

from burn_indexer.config import ChainDescriptor, get_settings
from burn_indexer.errors import PersistenceFault
from burn_indexer.models import (
    BurnRecord,
    ChainHealthSnapshot,
    ChainStatus,
    EventRecord,
    EventVariant,
    IndexingBatchRecord,
    LiquidityAddedRecord,
    PositionClaimedRecord,
    PositionCreatedRecord,
    SwapAndBurnRecord,
)

logger = logging.getLogger(__name__)

# Status thresholds for the chain health summary
BLOCKS_BEHIND_WARNING = 1000
STALE_INDEX_WARNING = timedelta(hours=1)

# Event table per variant
EVENT_TABLES: Dict[EventVariant, str] = {
    EventVariant.BURN: "burns",
    EventVariant.SWAP_AND_BURN: "swap_burns",
    EventVariant.LIQUIDITY_ADDED: "liquidity_added",
    EventVariant.POSITION_CREATED: "burn_positions",
    EventVariant.POSITION_CLAIMED: "position_claims",
}

# Numeric columns kept as TEXT (uint256 does not fit INTEGER)
CHAIN_STAT_COLUMNS = (
    "total_burned", "burn_count",
    "total_swapped", "swap_count",
    "total_liquidity_xen", "liquidity_count",
    "total_locked", "position_count",
    "total_claimed", "claim_count",
)
USER_STAT_COLUMNS = (
    "total_burned", "burn_count",
    "total_swapped", "swap_count",
    "total_locked", "position_count",
    "total_claimed", "claim_count",
)


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _now() -> str:
    return _isoformat(datetime.now(timezone.utc))


def record_deltas(record: EventRecord) -> Dict[str, int]:
    """Contribution of one event to the chain and user aggregates."""
    if isinstance(record, BurnRecord):
        return {"total_burned": record.amount, "burn_count": 1}
    if isinstance(record, SwapAndBurnRecord):
        return {"total_swapped": record.xen_amount, "swap_count": 1}
    if isinstance(record, LiquidityAddedRecord):
        return {"total_liquidity_xen": record.xen_amount, "liquidity_count": 1}
    if isinstance(record, PositionCreatedRecord):
        return {"total_locked": record.amount, "position_count": 1}
    if isinstance(record, PositionClaimedRecord):
        return {"total_claimed": record.base_amount + record.bonus_amount, "claim_count": 1}
    return {}


class Database:
    """Async SQLite database manager shared by every chain."""

    def __init__(self, db_path: Optional[str] = None):
        settings = get_settings()
        self.db_path = db_path or settings.database_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self):
        """Initialize database connection and create tables."""
        # Ensure directory exists
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable WAL mode for better concurrent read/write performance
        await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA cache_size=-64000")  # 64MB cache
        await self._connection.execute("PRAGMA temp_store=MEMORY")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_tables()

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @asynccontextmanager
    async def get_connection(self):
        """
        Get the connection for one unit of work.

        The connection is shared by every chain, so each unit holds the lock
        until it has committed or rolled back.
        """
        if not self._connection:
            await self.connect()
        async with self._lock:
            yield self._connection

    @asynccontextmanager
    async def transaction(self):
        """Run statements atomically: commit on success, roll back on error."""
        async with self.get_connection() as conn:
            try:
                yield conn
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise

    async def _create_tables(self):
        """Create database tables if they don't exist."""
        async with self.transaction() as conn:
            # Chains table - static chain descriptors
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS chains (
                    chain_id INTEGER PRIMARY KEY,
                    chain_key TEXT NOT NULL,
                    chain_name TEXT NOT NULL,
                    rpc_url TEXT NOT NULL,
                    token_address TEXT NOT NULL,
                    burn_contract TEXT NOT NULL,
                    position_contract TEXT NOT NULL,
                    start_block INTEGER NOT NULL,
                    is_active INTEGER DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            # Sync state table - watermark per chain
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    chain_id INTEGER PRIMARY KEY,
                    last_indexed_block INTEGER,
                    last_indexed_at TEXT,
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)

            # Event tables - one per variant, unique per (chain, tx)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS burns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chain_id INTEGER NOT NULL,
                    tx_hash TEXT NOT NULL,
                    log_index INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    block_timestamp TEXT,
                    from_address TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    UNIQUE(chain_id, tx_hash),
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)
            for table in ("swap_burns", "liquidity_added"):
                await conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        chain_id INTEGER NOT NULL,
                        tx_hash TEXT NOT NULL,
                        log_index INTEGER NOT NULL,
                        block_number INTEGER NOT NULL,
                        block_timestamp TEXT,
                        user_address TEXT NOT NULL,
                        token_address TEXT NOT NULL,
                        token_amount TEXT NOT NULL,
                        xen_amount TEXT NOT NULL,
                        UNIQUE(chain_id, tx_hash),
                        FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                    )
                """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS burn_positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chain_id INTEGER NOT NULL,
                    tx_hash TEXT NOT NULL,
                    log_index INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    block_timestamp TEXT,
                    user_address TEXT NOT NULL,
                    token_id TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    lock_duration INTEGER NOT NULL,
                    maturity_date TEXT,
                    UNIQUE(chain_id, tx_hash),
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS position_claims (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chain_id INTEGER NOT NULL,
                    tx_hash TEXT NOT NULL,
                    log_index INTEGER NOT NULL,
                    block_number INTEGER NOT NULL,
                    block_timestamp TEXT,
                    user_address TEXT NOT NULL,
                    token_id TEXT NOT NULL,
                    base_amount TEXT NOT NULL,
                    bonus_amount TEXT NOT NULL,
                    UNIQUE(chain_id, tx_hash),
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)

            # Create indexes for fast queries
            for table in EVENT_TABLES.values():
                await conn.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_block
                    ON {table}(chain_id, block_number)
                """)

            # Derived aggregates
            stat_columns = ",\n".join(f"{col} TEXT NOT NULL DEFAULT '0'" for col in CHAIN_STAT_COLUMNS)
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS chain_stats (
                    chain_id INTEGER PRIMARY KEY,
                    {stat_columns},
                    updated_at TEXT,
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)
            user_columns = ",\n".join(f"{col} TEXT NOT NULL DEFAULT '0'" for col in USER_STAT_COLUMNS)
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS user_stats (
                    chain_id INTEGER NOT NULL,
                    user_address TEXT NOT NULL,
                    {user_columns},
                    last_activity_time TEXT,
                    PRIMARY KEY (chain_id, user_address),
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)

            # Health snapshot - one row per chain, overwritten on every health check
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS chain_health (
                    chain_id INTEGER PRIMARY KEY,
                    is_healthy INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    blocks_behind INTEGER,
                    rpc_latency_ms INTEGER,
                    current_rpc_url TEXT,
                    checked_at TEXT,
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)

            # Append-only batch history
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS indexing_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chain_id INTEGER NOT NULL,
                    start_block INTEGER NOT NULL,
                    end_block INTEGER NOT NULL,
                    burns_indexed INTEGER NOT NULL DEFAULT 0,
                    swaps_indexed INTEGER NOT NULL DEFAULT 0,
                    liquidity_indexed INTEGER NOT NULL DEFAULT 0,
                    positions_indexed INTEGER NOT NULL DEFAULT 0,
                    claims_indexed INTEGER NOT NULL DEFAULT 0,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    indexed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (chain_id) REFERENCES chains(chain_id)
                )
            """)

    # Chain management methods
    async def register_chain(self, chain: ChainDescriptor):
        """Insert or refresh a chain's descriptor row. Never touches its watermark."""
        async with self.transaction() as conn:
            await conn.execute("""
                INSERT INTO chains
                (chain_id, chain_key, chain_name, rpc_url, token_address, burn_contract,
                 position_contract, start_block, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(chain_id) DO UPDATE SET
                    chain_key = excluded.chain_key,
                    chain_name = excluded.chain_name,
                    rpc_url = excluded.rpc_url,
                    token_address = excluded.token_address,
                    burn_contract = excluded.burn_contract,
                    position_contract = excluded.position_contract,
                    start_block = excluded.start_block,
                    is_active = 1,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                chain.chain_id, chain.key, chain.name, chain.rpc_urls[0],
                chain.contracts.token, chain.contracts.burn_contract,
                chain.contracts.position_contract, chain.start_block,
            ))

            await conn.execute("""
                INSERT OR IGNORE INTO sync_state (chain_id, last_indexed_block)
                VALUES (?, NULL)
            """, (chain.chain_id,))

    async def get_all_chains(self) -> List[Dict]:
        """Get all registered chains."""
        async with self.get_connection() as conn:
            cursor = await conn.execute("""
                SELECT chain_id, chain_key, chain_name, rpc_url, token_address, burn_contract,
                       position_contract, start_block, is_active
                FROM chains
                WHERE is_active = 1
                ORDER BY chain_id
            """)
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    # Sync state methods
    async def get_watermark(self, chain_id: int) -> Optional[int]:
        """Get the last indexed block for a chain, or None if nothing was indexed yet."""
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT last_indexed_block FROM sync_state WHERE chain_id = ?",
                (chain_id,)
            )
            row = await cursor.fetchone()
            return row["last_indexed_block"] if row else None

    @staticmethod
    async def _advance_watermark(conn: aiosqlite.Connection, chain_id: int, block_number: int):
        # The persisted watermark only moves forward
        await conn.execute("""
            INSERT INTO sync_state (chain_id, last_indexed_block, last_indexed_at)
            VALUES (?, ?, ?)
            ON CONFLICT(chain_id) DO UPDATE SET
                last_indexed_block = MAX(COALESCE(sync_state.last_indexed_block, excluded.last_indexed_block),
                                         excluded.last_indexed_block),
                last_indexed_at = excluded.last_indexed_at
        """, (chain_id, block_number, _now()))

    async def set_watermark(self, chain_id: int, block_number: int):
        """Durably record that every block up to block_number has been indexed."""
        try:
            async with self.transaction() as conn:
                await self._advance_watermark(conn, chain_id, block_number)
        except sqlite3.Error as e:
            raise PersistenceFault(f"Failed to store watermark for chain {chain_id}: {e}") from e

    # Event methods
    async def persist_batch(
        self,
        chain_id: int,
        records: List[EventRecord],
        batch: IndexingBatchRecord,
        watermark: int,
    ) -> int:
        """
        Store one batch atomically.

        Event rows, their aggregate deltas, the batch history row and the new
        watermark commit together. Events whose (chain, tx_hash) already exists
        in their table are skipped and contribute nothing to the aggregates.

        Args:
            chain_id: Chain ID
            records: Decoded events of the batch
            batch: History row for the batch
            watermark: Last block covered by the batch

        Returns:
            Number of event rows actually inserted
        """
        try:
            async with self.transaction() as conn:
                inserted: List[EventRecord] = []
                for record in records:
                    if await self._insert_event(conn, record):
                        inserted.append(record)

                await self._apply_aggregates(conn, chain_id, inserted)

                await conn.execute("""
                    INSERT INTO indexing_history
                    (chain_id, start_block, end_block, burns_indexed, swaps_indexed,
                     liquidity_indexed, positions_indexed, claims_indexed, duration_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    batch.chain_id, batch.start_block, batch.end_block, batch.burns_indexed,
                    batch.swaps_indexed, batch.liquidity_indexed, batch.positions_indexed,
                    batch.claims_indexed, batch.duration_ms,
                ))

                await self._advance_watermark(conn, chain_id, watermark)
                return len(inserted)
        except sqlite3.Error as e:
            raise PersistenceFault(f"Failed to persist batch {batch.start_block}-{batch.end_block} "
                                   f"for chain {chain_id}: {e}") from e

    @staticmethod
    async def _insert_event(conn: aiosqlite.Connection, record: EventRecord) -> bool:
        """Insert one event, ignoring duplicates. Returns True if a row was added."""
        common = (
            record.chain_id, record.tx_hash, record.log_index, record.block_number,
            _isoformat(record.block_timestamp), record.user_address,
        )
        if isinstance(record, BurnRecord):
            cursor = await conn.execute("""
                INSERT OR IGNORE INTO burns
                (chain_id, tx_hash, log_index, block_number, block_timestamp, from_address, amount)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (*common, str(record.amount)))
        elif isinstance(record, (SwapAndBurnRecord, LiquidityAddedRecord)):
            cursor = await conn.execute(f"""
                INSERT OR IGNORE INTO {EVENT_TABLES[record.kind]}
                (chain_id, tx_hash, log_index, block_number, block_timestamp, user_address,
                 token_address, token_amount, xen_amount)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (*common, record.token_address, str(record.token_amount), str(record.xen_amount)))
        elif isinstance(record, PositionCreatedRecord):
            cursor = await conn.execute("""
                INSERT OR IGNORE INTO burn_positions
                (chain_id, tx_hash, log_index, block_number, block_timestamp, user_address,
                 token_id, amount, lock_duration, maturity_date)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (*common, str(record.token_id), str(record.amount), record.lock_duration,
                  _isoformat(record.maturity_date)))
        elif isinstance(record, PositionClaimedRecord):
            cursor = await conn.execute("""
                INSERT OR IGNORE INTO position_claims
                (chain_id, tx_hash, log_index, block_number, block_timestamp, user_address,
                 token_id, base_amount, bonus_amount)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (*common, str(record.token_id), str(record.base_amount), str(record.bonus_amount)))
        else:
            raise TypeError(f"Unknown event record type: {type(record).__name__}")

        return cursor.rowcount == 1

    @staticmethod
    async def _apply_aggregates(conn: aiosqlite.Connection, chain_id: int, records: List[EventRecord]):
        """
        Incrementally update chain and user aggregates from newly inserted events.

        Args:
            conn: Connection inside the batch transaction
            chain_id: Chain ID
            records: Events that were actually inserted
        """
        if not records:
            return

        # Collect changes
        chain_changes: Dict[str, int] = {}
        user_changes: Dict[str, Dict[str, int]] = {}
        user_activity: Dict[str, datetime] = {}

        for record in records:
            deltas = record_deltas(record)
            changes = user_changes.setdefault(record.user_address, {})
            for column, value in deltas.items():
                chain_changes[column] = chain_changes.get(column, 0) + value
                changes[column] = changes.get(column, 0) + value
            last = user_activity.get(record.user_address)
            if last is None or record.block_timestamp > last:
                user_activity[record.user_address] = record.block_timestamp

        # Chain totals
        cursor = await conn.execute("SELECT * FROM chain_stats WHERE chain_id = ?", (chain_id,))
        row = await cursor.fetchone()
        current = {col: int(row[col]) if row else 0 for col in CHAIN_STAT_COLUMNS}
        for column, change in chain_changes.items():
            current[column] += change
        await conn.execute(f"""
            INSERT OR REPLACE INTO chain_stats (chain_id, {", ".join(CHAIN_STAT_COLUMNS)}, updated_at)
            VALUES (?, {", ".join("?" for _ in CHAIN_STAT_COLUMNS)}, ?)
        """, (chain_id, *(str(current[col]) for col in CHAIN_STAT_COLUMNS), _now()))

        # Per-user totals
        for address, changes in user_changes.items():
            cursor = await conn.execute(
                "SELECT * FROM user_stats WHERE chain_id = ? AND user_address = ?",
                (chain_id, address)
            )
            row = await cursor.fetchone()
            user = {col: int(row[col]) if row else 0 for col in USER_STAT_COLUMNS}
            for column, change in changes.items():
                if column in user:
                    user[column] += change

            activity = user_activity[address]
            previous = _parse_datetime(row["last_activity_time"]) if row else None
            if previous is not None and previous > activity:
                activity = previous

            await conn.execute(f"""
                INSERT OR REPLACE INTO user_stats
                (chain_id, user_address, {", ".join(USER_STAT_COLUMNS)}, last_activity_time)
                VALUES (?, ?, {", ".join("?" for _ in USER_STAT_COLUMNS)}, ?)
            """, (chain_id, address, *(str(user[col]) for col in USER_STAT_COLUMNS), _isoformat(activity)))

    async def rebuild_aggregates(self, chain_id: int):
        """Rebuild chain_stats and user_stats for a chain from the event tables."""
        async with self.transaction() as conn:
            await conn.execute("DELETE FROM chain_stats WHERE chain_id = ?", (chain_id,))
            await conn.execute("DELETE FROM user_stats WHERE chain_id = ?", (chain_id,))

            records: List[EventRecord] = []
            cursor = await conn.execute("SELECT * FROM burns WHERE chain_id = ?", (chain_id,))
            for row in await cursor.fetchall():
                records.append(BurnRecord(
                    chain_id=chain_id, tx_hash=row["tx_hash"], log_index=row["log_index"],
                    block_number=row["block_number"], block_timestamp=row["block_timestamp"],
                    user_address=row["from_address"], amount=int(row["amount"]),
                ))
            for model in (SwapAndBurnRecord, LiquidityAddedRecord):
                table = EVENT_TABLES[model.model_fields["kind"].default]
                cursor = await conn.execute(f"SELECT * FROM {table} WHERE chain_id = ?", (chain_id,))
                for row in await cursor.fetchall():
                    records.append(model(
                        chain_id=chain_id, tx_hash=row["tx_hash"], log_index=row["log_index"],
                        block_number=row["block_number"], block_timestamp=row["block_timestamp"],
                        user_address=row["user_address"], token_address=row["token_address"],
                        token_amount=int(row["token_amount"]), xen_amount=int(row["xen_amount"]),
                    ))
            cursor = await conn.execute("SELECT * FROM burn_positions WHERE chain_id = ?", (chain_id,))
            for row in await cursor.fetchall():
                records.append(PositionCreatedRecord(
                    chain_id=chain_id, tx_hash=row["tx_hash"], log_index=row["log_index"],
                    block_number=row["block_number"], block_timestamp=row["block_timestamp"],
                    user_address=row["user_address"], token_id=int(row["token_id"]),
                    amount=int(row["amount"]), lock_duration=row["lock_duration"],
                ))
            cursor = await conn.execute("SELECT * FROM position_claims WHERE chain_id = ?", (chain_id,))
            for row in await cursor.fetchall():
                records.append(PositionClaimedRecord(
                    chain_id=chain_id, tx_hash=row["tx_hash"], log_index=row["log_index"],
                    block_number=row["block_number"], block_timestamp=row["block_timestamp"],
                    user_address=row["user_address"], token_id=int(row["token_id"]),
                    base_amount=int(row["base_amount"]), bonus_amount=int(row["bonus_amount"]),
                ))

            await self._apply_aggregates(conn, chain_id, records)

    async def get_chain_stats(self, chain_id: int) -> Dict[str, int]:
        """Get the aggregate totals for a chain (zeros if nothing was indexed)."""
        async with self.get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM chain_stats WHERE chain_id = ?", (chain_id,))
            row = await cursor.fetchone()
            return {col: int(row[col]) if row else 0 for col in CHAIN_STAT_COLUMNS}

    async def get_user_stats(self, chain_id: int, user_address: str) -> Optional[Dict]:
        """Get the aggregate totals for one user on a chain."""
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM user_stats WHERE chain_id = ? AND user_address = ?",
                (chain_id, user_address)
            )
            row = await cursor.fetchone()
            if not row:
                return None
            stats = {col: int(row[col]) for col in USER_STAT_COLUMNS}
            stats["last_activity_time"] = _parse_datetime(row["last_activity_time"])
            return stats

    async def get_event_count(self, variant: EventVariant, chain_id: Optional[int] = None) -> int:
        """Get number of indexed events of one variant (optionally for a specific chain)."""
        table = EVENT_TABLES[variant]
        async with self.get_connection() as conn:
            if chain_id is not None:
                cursor = await conn.execute(
                    f"SELECT COUNT(*) as count FROM {table} WHERE chain_id = ?",
                    (chain_id,)
                )
            else:
                cursor = await conn.execute(f"SELECT COUNT(*) as count FROM {table}")
            row = await cursor.fetchone()
            return row["count"] if row else 0

    async def get_indexing_history(self, chain_id: int) -> List[IndexingBatchRecord]:
        async with self.get_connection() as conn:
            cursor = await conn.execute("""
                SELECT chain_id, start_block, end_block, burns_indexed, swaps_indexed,
                       liquidity_indexed, positions_indexed, claims_indexed, duration_ms
                FROM indexing_history
                WHERE chain_id = ?
                ORDER BY id
            """, (chain_id,))
            rows = await cursor.fetchall()
            return [IndexingBatchRecord(**dict(row)) for row in rows]

    # Health methods
    async def upsert_chain_health(self, snapshot: ChainHealthSnapshot):
        """Replace the health snapshot of a chain."""
        async with self.transaction() as conn:
            await conn.execute("""
                INSERT OR REPLACE INTO chain_health
                (chain_id, is_healthy, error_message, blocks_behind, rpc_latency_ms,
                 current_rpc_url, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                snapshot.chain_id,
                1 if snapshot.is_healthy else 0,
                snapshot.error_message,
                snapshot.blocks_behind,
                snapshot.rpc_latency_ms,
                snapshot.current_rpc_url,
                _isoformat(snapshot.checked_at),
            ))

    async def get_chain_health(self, chain_id: int) -> Optional[ChainHealthSnapshot]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM chain_health WHERE chain_id = ?",
                (chain_id,)
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return ChainHealthSnapshot(
                chain_id=row["chain_id"],
                is_healthy=bool(row["is_healthy"]),
                error_message=row["error_message"],
                blocks_behind=row["blocks_behind"],
                rpc_latency_ms=row["rpc_latency_ms"],
                current_rpc_url=row["current_rpc_url"],
                checked_at=_parse_datetime(row["checked_at"]),
            )

    async def get_chain_status(self) -> List[ChainStatus]:
        """
        Get the status summary of every registered chain.

        Combines the descriptor, watermark, latest health snapshot and aggregate
        totals, and derives a human-readable health_status.
        """
        async with self.get_connection() as conn:
            cursor = await conn.execute("""
                SELECT c.chain_id, c.chain_name,
                       s.last_indexed_block, s.last_indexed_at,
                       h.is_healthy, h.error_message, h.blocks_behind, h.rpc_latency_ms,
                       h.current_rpc_url, h.checked_at,
                       cs.burn_count, cs.position_count
                FROM chains c
                LEFT JOIN sync_state s ON c.chain_id = s.chain_id
                LEFT JOIN chain_health h ON c.chain_id = h.chain_id
                LEFT JOIN chain_stats cs ON c.chain_id = cs.chain_id
                WHERE c.is_active = 1
                ORDER BY c.chain_id
            """)
            rows = await cursor.fetchall()

        now = datetime.now(timezone.utc)
        statuses = []
        for row in rows:
            last_index = _parse_datetime(row["last_indexed_at"])
            status = ChainStatus(
                chain_id=row["chain_id"],
                chain_name=row["chain_name"],
                last_indexed_block=row["last_indexed_block"],
                last_successful_index=last_index,
                is_healthy=bool(row["is_healthy"]),
                blocks_behind=row["blocks_behind"],
                error_message=row["error_message"],
                rpc_latency_ms=row["rpc_latency_ms"],
                current_rpc_url=row["current_rpc_url"],
                checked_at=_parse_datetime(row["checked_at"]),
                total_burns=int(row["burn_count"] or 0),
                total_positions=int(row["position_count"] or 0),
            )

            if status.error_message:
                status.health_status = f"Error: {status.error_message}"
            elif status.blocks_behind is not None and status.blocks_behind > BLOCKS_BEHIND_WARNING:
                status.health_status = f"Warning: {status.blocks_behind} blocks behind"
            elif last_index is None or now - last_index > STALE_INDEX_WARNING:
                status.health_status = "Warning: No successful index in last hour"
            else:
                status.health_status = "Healthy"
            statuses.append(status)

        return statuses
