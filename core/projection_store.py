"""
Idempotent SQLite projections of decoded Press events.

Each record type has one writer; ``upsert`` dispatches on the record's type.
Natural keys are enforced by PRIMARY KEY / UNIQUE constraints so re-applying
any record, in any number of replays, leaves the same final state. Append-only
audit tables dedup on ``(tx_hash, log_index)``.

Every uint-derived value, ids and timestamps included, is stored as decimal
TEXT: truncated uint256 values still exceed the 64-bit range of SQLite INTEGER.

Usage:
    from core.projection_store import ProjectionStore

    store = ProjectionStore("data/indexer.db")
    await store.upsert(record)
    rows = await store.latest("outlets", limit=50)
    store.close()
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from web3 import Web3

from indexer_logging.logger_manager import setup_module_logger
from shared.constants import UNKNOWN_CONFIG_KEY
from shared.types import (
    BatchQueuedRecord,
    DomainVerificationRecord,
    EventRecord,
    GrantRecord,
    HeartbeatRecord,
    ListingFinalizedRecord,
    ListingRequestedRecord,
    ListingTestPassedRecord,
    OutletRecord,
    OutletTokenRecord,
    ProposalFinalizedRecord,
    ProposalRecord,
    ProposalSummary,
    ReleaseBatch,
    ReleaseBatchItem,
    TokenListingRecord,
    VoteFeeRecord,
)

_PROJECT_ROOT = Path(__file__).parent.parent
_DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "indexer.db"

# table -> column used to order rows for latest() / rows_after()
_READABLE_TABLES: dict[str, str] = {
    "outlets": "block_number",
    "outlet_tokens": "block_number",
    "token_listings": "block_number",
    "outlet_domain_verifications": "block_number",
    "heartbeats": "block_number",
    "governance_proposals": "block_number",
    "approved_updates": "block_number",
    "queued_updates": "block_number",
    "governance_vote_fees": "block_number",
    "governance_grants": "block_number",
    "exchange_listings": "updated_block",
    "release_batches": "rowid",
    "release_batch_items": "rowid",
}

# Tier is owned by whichever of request / finalize is latest by (block, log_index)
_TIER_IS_NEWER = (
    "tier_block IS NULL OR "
    "(excluded.tier_block, excluded.tier_log_index) >= (tier_block, tier_log_index)"
)

# Binding failures (out-of-range int, unsupported type) surface as these
_WRITE_ERRORS = (sqlite3.Error, OverflowError, TypeError, ValueError)


class ProjectionError(Exception):
    """Raised when a record cannot be written to its projection table."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ProjectionStore:
    """
    SQLite-backed projection store.

    One connection, used from the event loop thread only. Every ``upsert`` is
    its own transaction.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = _DEFAULT_DB_PATH

        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db_path = str(db_path)
        self._db = sqlite3.connect(self._db_path)
        self._db.row_factory = sqlite3.Row
        self._create_tables()

        self._writers: dict[type, Callable[[Any], None]] = {
            OutletRecord: self._write_outlet,
            OutletTokenRecord: self._write_outlet_token,
            TokenListingRecord: self._write_token_listing,
            DomainVerificationRecord: self._write_domain_verification,
            HeartbeatRecord: self._write_heartbeat,
            ProposalRecord: self._write_proposal,
            ProposalFinalizedRecord: self._write_approved_update,
            BatchQueuedRecord: self._write_queued_update,
            ListingRequestedRecord: self._write_listing_requested,
            ListingTestPassedRecord: self._write_listing_test_passed,
            ListingFinalizedRecord: self._write_listing_finalized,
            VoteFeeRecord: self._write_vote_fee,
            GrantRecord: self._write_grant,
        }

        self._logger = setup_module_logger(
            "projection", "projection.log", module_folder="Projection_Logs"
        )

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _create_tables(self) -> None:
        """Create SQLite tables if they don't exist."""
        self._db.executescript("""
            CREATE TABLE IF NOT EXISTS outlets (
                outlet_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                domain TEXT NOT NULL,
                bond_paid TEXT NOT NULL,
                fee_paid TEXT NOT NULL,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                inserted_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS outlet_tokens (
                outlet_id TEXT NOT NULL,
                token TEXT NOT NULL,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                symbol TEXT NOT NULL,
                supply TEXT NOT NULL,
                fee_paid TEXT NOT NULL,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                inserted_at TEXT NOT NULL,
                PRIMARY KEY (outlet_id, token)
            );

            CREATE TABLE IF NOT EXISTS token_listings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                token TEXT NOT NULL,
                outlet_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                tier TEXT NOT NULL,
                fee_paid TEXT NOT NULL,
                perks TEXT NOT NULL,
                inserted_at TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS outlet_domain_verifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                outlet_id TEXT NOT NULL,
                domain TEXT NOT NULL,
                proof_type TEXT NOT NULL,
                proof_hash TEXT NOT NULL,
                verifier TEXT NOT NULL,
                inserted_at TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS heartbeats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                service TEXT NOT NULL,
                caller TEXT NOT NULL,
                ts TEXT NOT NULL,
                status TEXT NOT NULL,
                extra TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );
            CREATE INDEX IF NOT EXISTS idx_heartbeats_service ON heartbeats(service);

            CREATE TABLE IF NOT EXISTS governance_proposals (
                proposal_id TEXT PRIMARY KEY,
                proposer TEXT NOT NULL,
                title TEXT NOT NULL,
                config_key TEXT NOT NULL,
                config_value TEXT NOT NULL,
                fee_paid TEXT NOT NULL,
                created_at TEXT NOT NULL,
                ends_at TEXT NOT NULL,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS approved_updates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                proposal_id TEXT NOT NULL,
                config_key TEXT NOT NULL,
                config_value TEXT NOT NULL,
                passed INTEGER NOT NULL,
                auto_applied INTEGER NOT NULL,
                yes_votes TEXT NOT NULL,
                no_votes TEXT NOT NULL,
                reason TEXT NOT NULL,
                finalized_at TEXT NOT NULL,
                refund_paid TEXT NOT NULL,
                recorded_at TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS queued_updates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                batch_id TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                config_key TEXT NOT NULL,
                config_value TEXT NOT NULL,
                queued_by TEXT NOT NULL,
                queued_at TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS release_batches (
                batch_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                status TEXT NOT NULL,
                notes TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS release_batch_items (
                batch_id TEXT NOT NULL,
                proposal_id TEXT NOT NULL,
                config_key TEXT NOT NULL,
                config_value TEXT NOT NULL,
                status TEXT NOT NULL,
                source TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (batch_id, proposal_id)
            );

            CREATE TABLE IF NOT EXISTS exchange_listings (
                outlet TEXT PRIMARY KEY,
                tier TEXT NOT NULL DEFAULT '',
                tier_block INTEGER,
                tier_log_index INTEGER,
                domain TEXT NOT NULL DEFAULT '',
                fee_paid TEXT NOT NULL DEFAULT '0',
                test_passed INTEGER NOT NULL DEFAULT 0,
                requested_block INTEGER,
                test_passed_block INTEGER,
                finalized_block INTEGER,
                updated_block INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS governance_vote_fees (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                voter TEXT NOT NULL,
                amount TEXT NOT NULL,
                inserted_at TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS governance_grants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                block_number INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                proposal_id TEXT NOT NULL,
                recipient TEXT NOT NULL,
                amount TEXT NOT NULL,
                inserted_at TEXT NOT NULL,
                UNIQUE (tx_hash, log_index)
            );
        """)
        self._db.commit()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def upsert(self, record: EventRecord) -> None:
        """
        Apply one decoded record to its projection table.

        Raises ProjectionError on an unknown record type, any SQLite error or a
        value SQLite cannot bind; the transaction is rolled back first.
        """
        writer = self._writers.get(type(record))
        if writer is None:
            raise ProjectionError(f"No projection for {type(record).__name__}")
        try:
            writer(record)
            self._db.commit()
        except _WRITE_ERRORS as e:
            self._db.rollback()
            raise ProjectionError(
                f"{type(record).__name__} at block {record.block_number} "
                f"tx {record.tx_hash}: {e}"
            ) from e

    def _write_outlet(self, r: OutletRecord) -> None:
        self._db.execute(
            """INSERT INTO outlets
               (outlet_id, owner, name, domain, bond_paid, fee_paid,
                block_number, tx_hash, inserted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(outlet_id) DO UPDATE SET
                   owner = excluded.owner,
                   name = excluded.name,
                   domain = excluded.domain,
                   bond_paid = excluded.bond_paid,
                   fee_paid = excluded.fee_paid,
                   block_number = excluded.block_number,
                   tx_hash = excluded.tx_hash""",
            (
                r.outlet_id,
                r.owner,
                r.name,
                r.domain,
                str(r.bond_paid),
                str(r.fee_paid),
                r.block_number,
                r.tx_hash,
                _now_iso(),
            ),
        )

    def _write_outlet_token(self, r: OutletTokenRecord) -> None:
        self._db.execute(
            """INSERT INTO outlet_tokens
               (outlet_id, token, owner, name, symbol, supply, fee_paid,
                block_number, tx_hash, inserted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(outlet_id, token) DO UPDATE SET
                   owner = excluded.owner,
                   name = excluded.name,
                   symbol = excluded.symbol,
                   supply = excluded.supply,
                   fee_paid = excluded.fee_paid,
                   block_number = excluded.block_number,
                   tx_hash = excluded.tx_hash""",
            (
                r.outlet_id,
                r.token,
                r.owner,
                r.name,
                r.symbol,
                str(r.supply),
                str(r.fee_paid),
                r.block_number,
                r.tx_hash,
                _now_iso(),
            ),
        )

    def _write_token_listing(self, r: TokenListingRecord) -> None:
        self._db.execute(
            """INSERT OR IGNORE INTO token_listings
               (block_number, tx_hash, log_index, token, outlet_id, owner,
                tier, fee_paid, perks, inserted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                r.block_number,
                r.tx_hash,
                r.log_index,
                r.token,
                r.outlet_id,
                r.owner,
                str(r.tier),
                str(r.fee_paid),
                str(r.perks),
                _now_iso(),
            ),
        )

    def _write_domain_verification(self, r: DomainVerificationRecord) -> None:
        self._db.execute(
            """INSERT OR IGNORE INTO outlet_domain_verifications
               (block_number, tx_hash, log_index, outlet_id, domain,
                proof_type, proof_hash, verifier, inserted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                r.block_number,
                r.tx_hash,
                r.log_index,
                r.outlet_id,
                r.domain,
                str(r.proof_type),
                r.proof_hash,
                r.verifier,
                _now_iso(),
            ),
        )

    def _write_heartbeat(self, r: HeartbeatRecord) -> None:
        self._db.execute(
            """INSERT OR IGNORE INTO heartbeats
               (block_number, tx_hash, log_index, service, caller, ts, status, extra)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                r.block_number,
                r.tx_hash,
                r.log_index,
                r.service,
                r.caller,
                str(r.ts),
                str(r.status),
                r.extra,
            ),
        )

    def _write_proposal(self, r: ProposalRecord) -> None:
        self._db.execute(
            """INSERT INTO governance_proposals
               (proposal_id, proposer, title, config_key, config_value,
                fee_paid, created_at, ends_at, block_number, tx_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(proposal_id) DO UPDATE SET
                   proposer = excluded.proposer,
                   title = excluded.title,
                   config_key = excluded.config_key,
                   config_value = excluded.config_value,
                   fee_paid = excluded.fee_paid,
                   created_at = excluded.created_at,
                   ends_at = excluded.ends_at,
                   block_number = excluded.block_number,
                   tx_hash = excluded.tx_hash""",
            (
                str(r.proposal_id),
                r.proposer,
                r.title,
                r.config_key,
                str(r.config_value),
                str(r.fee_paid),
                str(r.created_at),
                str(r.ends_at),
                r.block_number,
                r.tx_hash,
            ),
        )

    def _write_approved_update(self, r: ProposalFinalizedRecord) -> None:
        summary = self._fetch_proposal(r.proposal_id)
        config_key = summary.config_key if summary else UNKNOWN_CONFIG_KEY
        config_value = summary.config_value if summary else "0"
        self._db.execute(
            """INSERT OR IGNORE INTO approved_updates
               (block_number, tx_hash, log_index, proposal_id, config_key,
                config_value, passed, auto_applied, yes_votes, no_votes,
                reason, finalized_at, refund_paid, recorded_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                r.block_number,
                r.tx_hash,
                r.log_index,
                str(r.proposal_id),
                config_key,
                config_value,
                int(r.passed),
                int(r.auto_applied),
                str(r.yes_votes),
                str(r.no_votes),
                r.reason,
                str(r.finalized_at),
                str(r.refund_paid),
                _now_iso(),
            ),
        )

    def _write_queued_update(self, r: BatchQueuedRecord) -> None:
        self._db.execute(
            """INSERT OR IGNORE INTO queued_updates
               (block_number, tx_hash, log_index, batch_id, proposal_id,
                config_key, config_value, queued_by, queued_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                r.block_number,
                r.tx_hash,
                r.log_index,
                r.batch_id,
                str(r.proposal_id),
                r.config_key,
                str(r.config_value),
                r.queued_by,
                str(r.queued_at),
            ),
        )

    def _write_listing_requested(self, r: ListingRequestedRecord) -> None:
        self._db.execute(
            f"""INSERT INTO exchange_listings
               (outlet, tier, tier_block, tier_log_index, fee_paid,
                requested_block, updated_block)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(outlet) DO UPDATE SET
                   tier = CASE WHEN {_TIER_IS_NEWER} THEN excluded.tier ELSE tier END,
                   tier_block = CASE WHEN {_TIER_IS_NEWER}
                       THEN excluded.tier_block ELSE tier_block END,
                   tier_log_index = CASE WHEN {_TIER_IS_NEWER}
                       THEN excluded.tier_log_index ELSE tier_log_index END,
                   fee_paid = CASE
                       WHEN requested_block IS NULL OR excluded.requested_block >= requested_block
                       THEN excluded.fee_paid ELSE fee_paid END,
                   requested_block = MAX(COALESCE(requested_block, 0), excluded.requested_block),
                   updated_block = MAX(updated_block, excluded.updated_block)""",
            (
                r.outlet,
                r.tier,
                r.block_number,
                r.log_index,
                str(r.fee_paid),
                r.block_number,
                r.block_number,
            ),
        )

    def _write_listing_test_passed(self, r: ListingTestPassedRecord) -> None:
        self._db.execute(
            """INSERT INTO exchange_listings
               (outlet, test_passed, test_passed_block, updated_block)
               VALUES (?, 1, ?, ?)
               ON CONFLICT(outlet) DO UPDATE SET
                   test_passed = 1,
                   test_passed_block = MIN(
                       COALESCE(test_passed_block, excluded.test_passed_block),
                       excluded.test_passed_block
                   ),
                   updated_block = MAX(updated_block, excluded.updated_block)""",
            (r.outlet, r.block_number, r.block_number),
        )

    def _write_listing_finalized(self, r: ListingFinalizedRecord) -> None:
        self._db.execute(
            f"""INSERT INTO exchange_listings
               (outlet, tier, tier_block, tier_log_index, domain,
                finalized_block, updated_block)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(outlet) DO UPDATE SET
                   tier = CASE WHEN {_TIER_IS_NEWER} THEN excluded.tier ELSE tier END,
                   tier_block = CASE WHEN {_TIER_IS_NEWER}
                       THEN excluded.tier_block ELSE tier_block END,
                   tier_log_index = CASE WHEN {_TIER_IS_NEWER}
                       THEN excluded.tier_log_index ELSE tier_log_index END,
                   domain = CASE
                       WHEN finalized_block IS NULL OR excluded.finalized_block >= finalized_block
                       THEN excluded.domain ELSE domain END,
                   finalized_block = MAX(COALESCE(finalized_block, 0), excluded.finalized_block),
                   updated_block = MAX(updated_block, excluded.updated_block)""",
            (
                r.outlet,
                r.tier,
                r.block_number,
                r.log_index,
                r.domain,
                r.block_number,
                r.block_number,
            ),
        )

    def _write_vote_fee(self, r: VoteFeeRecord) -> None:
        self._db.execute(
            """INSERT OR IGNORE INTO governance_vote_fees
               (block_number, tx_hash, log_index, voter, amount, inserted_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (r.block_number, r.tx_hash, r.log_index, r.voter, str(r.amount), _now_iso()),
        )

    def _write_grant(self, r: GrantRecord) -> None:
        self._db.execute(
            """INSERT OR IGNORE INTO governance_grants
               (block_number, tx_hash, log_index, proposal_id, recipient, amount, inserted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                r.block_number,
                r.tx_hash,
                r.log_index,
                str(r.proposal_id),
                r.recipient,
                str(r.amount),
                _now_iso(),
            ),
        )

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def _fetch_proposal(self, proposal_id: int) -> ProposalSummary | None:
        row = self._db.execute(
            "SELECT proposal_id, config_key, config_value FROM governance_proposals "
            "WHERE proposal_id = ?",
            (str(proposal_id),),
        ).fetchone()
        if row is None:
            return None
        return ProposalSummary(
            proposal_id=int(row["proposal_id"]),
            config_key=row["config_key"],
            config_value=row["config_value"],
        )

    async def get_proposal(self, proposal_id: int) -> ProposalSummary | None:
        return self._fetch_proposal(proposal_id)

    async def ensure_release_batch(self, batch: ReleaseBatch) -> bool:
        """Insert the batch unless it exists. Returns True if created."""
        return self._insert_ignore(
            """INSERT OR IGNORE INTO release_batches
               (batch_id, title, window_start, window_end, status, notes, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                batch.batch_id,
                batch.title,
                batch.window_start,
                batch.window_end,
                batch.status,
                batch.notes,
                _now_iso(),
            ),
        )

    async def add_release_batch_item(self, item: ReleaseBatchItem) -> bool:
        """Insert the item unless (batch_id, proposal_id) exists. Returns True if created."""
        return self._insert_ignore(
            """INSERT OR IGNORE INTO release_batch_items
               (batch_id, proposal_id, config_key, config_value, status, source, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                item.batch_id,
                str(item.proposal_id),
                item.config_key,
                item.config_value,
                item.status,
                item.source,
                _now_iso(),
            ),
        )

    async def has_release_batch_item(self, proposal_id: int, source: str) -> bool:
        row = self._db.execute(
            "SELECT 1 FROM release_batch_items WHERE proposal_id = ? AND source = ? LIMIT 1",
            (str(proposal_id), source),
        ).fetchone()
        return row is not None

    def _insert_ignore(self, sql: str, params: tuple) -> bool:
        try:
            cursor = self._db.execute(sql, params)
            self._db.commit()
        except _WRITE_ERRORS as e:
            self._db.rollback()
            raise ProjectionError(str(e)) from e
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def _order_column(self, table: str) -> str:
        try:
            return _READABLE_TABLES[table]
        except KeyError:
            raise ValueError(f"Table not readable: {table}") from None

    async def latest(self, table: str, limit: int = 100) -> list[dict[str, Any]]:
        """Newest rows of a whitelisted table."""
        order = self._order_column(table)
        rows = self._db.execute(
            f"SELECT * FROM {table} ORDER BY {order} DESC, rowid DESC LIMIT ?",
            (max(0, limit),),
        ).fetchall()
        return [dict(row) for row in rows]

    async def rows_after(
        self, table: str, after_block: int, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Rows strictly after ``after_block``, oldest first, for feed-style polling."""
        order = self._order_column(table)
        if order == "rowid":
            raise ValueError(f"Table has no block column: {table}")
        rows = self._db.execute(
            f"SELECT * FROM {table} WHERE {order} > ? ORDER BY {order} ASC, rowid ASC LIMIT ?",
            (after_block, max(0, limit)),
        ).fetchall()
        return [dict(row) for row in rows]

    async def latest_heartbeat(self, service: str, now: int | None = None) -> dict[str, Any] | None:
        """
        Newest heartbeat for a service, with ``age_sec`` relative to ``now``.

        ``service`` is the bytes32 id as 0x hex, or a plain name which is
        hashed with keccak256 the way relaying services derive the id.
        """
        if not (service.startswith("0x") and len(service) == 66):
            service = Web3.to_hex(Web3.keccak(text=service))
        # ts is decimal TEXT, so a longer string is a larger number
        row = self._db.execute(
            "SELECT * FROM heartbeats WHERE service = ? "
            "ORDER BY length(ts) DESC, ts DESC, block_number DESC, log_index DESC LIMIT 1",
            (service.lower(),),
        ).fetchone()
        if row is None:
            return None
        result = dict(row)
        now = int(time.time()) if now is None else now
        result["age_sec"] = max(0, now - int(result["ts"]))
        return result

    def close(self) -> None:
        self._db.close()
