"""
Unit tests for core/projection_store.py.

Tests verify table creation, idempotent application of every record type,
exchange-listing merge convergence, release batch uniqueness, read helpers
and error wrapping.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from core.projection_store import ProjectionError
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
    ReleaseBatch,
    ReleaseBatchItem,
    TokenListingRecord,
    VoteFeeRecord,
)

OWNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
OUTLET = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
OUTLET_ID = "0x" + "ab" * 32
SERVICE_ID = "0x" + "cd" * 32
CONFIG_KEY = "0x" + "5e" * 32
TIER_A = "0x" + "0a" * 32
TIER_B = "0x" + "0b" * 32


def _tx(n: int) -> str:
    return "0x" + f"{n:064x}"


def _make_store(db_path):
    """Create a ProjectionStore with patched logger."""
    with patch("core.projection_store.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        from core.projection_store import ProjectionStore

        return ProjectionStore(db_path=db_path)


@pytest.fixture
def store(tmp_path):
    s = _make_store(tmp_path / "indexer.db")
    yield s
    s.close()


def _count(store, table: str) -> int:
    return store._db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def _snapshot(store, table: str) -> list[dict]:
    return [dict(r) for r in store._db.execute(f"SELECT * FROM {table} ORDER BY rowid").fetchall()]


def _sample_records() -> list[EventRecord]:
    return [
        OutletRecord(10, _tx(1), 0, OUTLET_ID, OWNER, "Daily", "daily.example", 2**100, 5),
        OutletTokenRecord(11, _tx(2), 0, OUTLET_ID, OUTLET, OWNER, "Daily", "DLY", 10**27, 1),
        TokenListingRecord(12, _tx(3), 0, OUTLET, OUTLET_ID, OWNER, 2, 10**20, 3),
        DomainVerificationRecord(12, _tx(3), 1, OUTLET_ID, "daily.example", 1, "0x" + "ee" * 32, OWNER),
        HeartbeatRecord(13, _tx(4), 0, SERVICE_ID, OWNER, 1_700_000_000, 1, "0x" + "00" * 32),
        ProposalRecord(14, _tx(5), 0, 1, OWNER, "Raise bond", CONFIG_KEY, -(2**200), 10, 100, 200),
        ProposalFinalizedRecord(15, _tx(6), 0, 1, True, 40, 2, "ok", 300, False, 10),
        BatchQueuedRecord(16, _tx(7), 0, "0x" + "42" * 32, 1, CONFIG_KEY, 5, OWNER, 400),
        ListingRequestedRecord(17, _tx(8), 0, OUTLET, TIER_A, 500),
        ListingTestPassedRecord(18, _tx(9), 0, OUTLET),
        ListingFinalizedRecord(19, _tx(10), 0, OUTLET, "daily.example", TIER_B),
        VoteFeeRecord(20, _tx(11), 0, OWNER, 25),
        GrantRecord(21, _tx(12), 0, 1, OUTLET, 10**21),
    ]


_ALL_TABLES = [
    "outlets",
    "outlet_tokens",
    "token_listings",
    "outlet_domain_verifications",
    "heartbeats",
    "governance_proposals",
    "approved_updates",
    "queued_updates",
    "exchange_listings",
    "governance_vote_fees",
    "governance_grants",
]


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------


class TestIdempotence:
    async def test_every_record_type_is_projected(self, store):
        for record in _sample_records():
            await store.upsert(record)
        for table in _ALL_TABLES:
            assert _count(store, table) == 1, table

    async def test_replaying_twice_leaves_identical_state(self, store):
        records = _sample_records()
        for record in records:
            await store.upsert(record)
        first = {t: _snapshot(store, t) for t in _ALL_TABLES}

        for record in records:
            await store.upsert(record)
        second = {t: _snapshot(store, t) for t in _ALL_TABLES}

        assert first == second

    async def test_same_tx_distinct_log_index_both_kept(self, store):
        await store.upsert(VoteFeeRecord(20, _tx(11), 0, OWNER, 25))
        await store.upsert(VoteFeeRecord(20, _tx(11), 1, OWNER, 25))
        await store.upsert(VoteFeeRecord(20, _tx(11), 1, OWNER, 25))
        assert _count(store, "governance_vote_fees") == 2

    async def test_large_amounts_stored_as_decimal_text(self, store):
        await store.upsert(_sample_records()[0])
        row = store._db.execute("SELECT bond_paid FROM outlets").fetchone()
        assert row["bond_paid"] == str(2**100)

    async def test_negative_int256_config_value_round_trips(self, store):
        await store.upsert(_sample_records()[5])
        summary = await store.get_proposal(1)
        assert summary.config_value == str(-(2**200))

    async def test_uint_ids_and_timestamps_beyond_int64(self, store):
        huge = 2**128 - 1
        await store.upsert(ProposalRecord(14, _tx(5), 0, huge, OWNER, "Forever", CONFIG_KEY, 1, 10, huge, huge))
        await store.upsert(ProposalFinalizedRecord(15, _tx(6), 0, huge, True, 1, 0, "", huge, False, 0))
        await store.upsert(BatchQueuedRecord(16, _tx(7), 0, "0x" + "42" * 32, huge, CONFIG_KEY, 5, OWNER, huge))
        (proposal,) = _snapshot(store, "governance_proposals")
        assert proposal["ends_at"] == str(huge)
        assert _snapshot(store, "approved_updates")[0]["config_key"] == CONFIG_KEY
        assert _snapshot(store, "queued_updates")[0]["queued_at"] == str(huge)
        summary = await store.get_proposal(huge)
        assert summary.proposal_id == huge

    async def test_outlet_upsert_updates_fields(self, store):
        await store.upsert(OutletRecord(10, _tx(1), 0, OUTLET_ID, OWNER, "Daily", "a.example", 1, 1))
        await store.upsert(OutletRecord(30, _tx(2), 0, OUTLET_ID, OWNER, "Daily 2", "b.example", 1, 1))
        rows = _snapshot(store, "outlets")
        assert len(rows) == 1
        assert rows[0]["domain"] == "b.example"
        assert rows[0]["block_number"] == 30


# ---------------------------------------------------------------------------
# Approved updates
# ---------------------------------------------------------------------------


class TestApprovedUpdates:
    async def test_copies_config_from_proposal(self, store):
        records = _sample_records()
        await store.upsert(records[5])
        await store.upsert(records[6])
        row = _snapshot(store, "approved_updates")[0]
        assert row["config_key"] == CONFIG_KEY
        assert row["passed"] == 1
        assert row["auto_applied"] == 0

    async def test_unknown_proposal_defaults(self, store):
        await store.upsert(ProposalFinalizedRecord(15, _tx(6), 0, 99, True, 1, 0, "", 1, False, 0))
        row = _snapshot(store, "approved_updates")[0]
        assert row["config_key"] == UNKNOWN_CONFIG_KEY
        assert row["config_value"] == "0"


# ---------------------------------------------------------------------------
# Exchange listings
# ---------------------------------------------------------------------------


class TestExchangeListings:
    async def _listing(self, store) -> dict:
        rows = _snapshot(store, "exchange_listings")
        assert len(rows) == 1
        return rows[0]

    async def test_full_lifecycle(self, store):
        await store.upsert(ListingRequestedRecord(10, _tx(1), 0, OUTLET, TIER_A, 500))
        await store.upsert(ListingTestPassedRecord(11, _tx(2), 0, OUTLET))
        await store.upsert(ListingFinalizedRecord(12, _tx(3), 0, OUTLET, "daily.example", TIER_B))
        row = await self._listing(store)
        assert row["tier"] == TIER_B
        assert row["fee_paid"] == "500"
        assert row["test_passed"] == 1
        assert row["domain"] == "daily.example"
        assert row["requested_block"] == 10
        assert row["finalized_block"] == 12
        assert row["updated_block"] == 12

    async def test_replayed_request_does_not_clobber_finalized_tier(self, store):
        request = ListingRequestedRecord(10, _tx(1), 0, OUTLET, TIER_A, 500)
        await store.upsert(request)
        await store.upsert(ListingTestPassedRecord(11, _tx(2), 0, OUTLET))
        await store.upsert(ListingFinalizedRecord(12, _tx(3), 0, OUTLET, "daily.example", TIER_B))
        await store.upsert(request)
        row = await self._listing(store)
        assert row["tier"] == TIER_B
        assert row["test_passed"] == 1
        assert row["domain"] == "daily.example"

    async def test_test_pass_before_request_creates_skeleton(self, store):
        await store.upsert(ListingTestPassedRecord(11, _tx(2), 0, OUTLET))
        row = await self._listing(store)
        assert row["test_passed"] == 1
        assert row["tier"] == ""
        await store.upsert(ListingRequestedRecord(10, _tx(1), 0, OUTLET, TIER_A, 500))
        row = await self._listing(store)
        assert row["test_passed"] == 1
        assert row["tier"] == TIER_A
        assert row["fee_paid"] == "500"

    async def test_any_order_converges(self, store, tmp_path):
        events = [
            ListingRequestedRecord(10, _tx(1), 0, OUTLET, TIER_A, 500),
            ListingTestPassedRecord(11, _tx(2), 0, OUTLET),
            ListingFinalizedRecord(12, _tx(3), 0, OUTLET, "daily.example", TIER_B),
        ]
        for record in events:
            await store.upsert(record)
        expected = await self._listing(store)

        other = _make_store(tmp_path / "other.db")
        try:
            for record in reversed(events):
                await other.upsert(record)
            assert _snapshot(other, "exchange_listings") == [expected]
        finally:
            other.close()

    async def test_newer_request_after_finalize_updates_tier(self, store):
        await store.upsert(ListingFinalizedRecord(12, _tx(3), 0, OUTLET, "daily.example", TIER_B))
        await store.upsert(ListingRequestedRecord(20, _tx(4), 0, OUTLET, TIER_A, 900))
        row = await self._listing(store)
        assert row["tier"] == TIER_A
        assert row["domain"] == "daily.example"


# ---------------------------------------------------------------------------
# Release batches
# ---------------------------------------------------------------------------


class TestReleaseBatches:
    def _batch(self, batch_id: str = "2026-10") -> ReleaseBatch:
        return ReleaseBatch(
            batch_id=batch_id,
            title=f"Monthly Release Batch {batch_id}",
            window_start="2026-10-01T00:00:00+00:00",
            window_end="2026-10-31T23:59:59+00:00",
            status="planned",
            notes="Auto-created by indexer",
        )

    def _item(self, proposal_id: int = 1, batch_id: str = "2026-10") -> ReleaseBatchItem:
        return ReleaseBatchItem(batch_id, proposal_id, CONFIG_KEY, "5", "queued", "monthly")

    async def test_ensure_batch_is_idempotent(self, store):
        assert await store.ensure_release_batch(self._batch()) is True
        assert await store.ensure_release_batch(self._batch()) is False
        assert _count(store, "release_batches") == 1

    async def test_item_unique_per_batch_and_proposal(self, store):
        await store.ensure_release_batch(self._batch())
        assert await store.add_release_batch_item(self._item()) is True
        assert await store.add_release_batch_item(self._item()) is False
        assert _count(store, "release_batch_items") == 1

    async def test_has_release_batch_item_filters_by_source(self, store):
        await store.add_release_batch_item(self._item(proposal_id=7))
        assert await store.has_release_batch_item(7, "monthly") is True
        assert await store.has_release_batch_item(7, "upgrade_queue") is False
        assert await store.has_release_batch_item(8, "monthly") is False


# ---------------------------------------------------------------------------
# Read helpers
# ---------------------------------------------------------------------------


class TestReadHelpers:
    async def test_latest_orders_newest_first(self, store):
        for i in range(3):
            await store.upsert(VoteFeeRecord(100 + i, _tx(i), 0, OWNER, i))
        rows = await store.latest("governance_vote_fees", limit=2)
        assert [r["block_number"] for r in rows] == [102, 101]

    async def test_rows_after_is_exclusive_and_ascending(self, store):
        for i in range(4):
            await store.upsert(GrantRecord(100 + i, _tx(i), 0, i, OUTLET, 1))
        rows = await store.rows_after("governance_grants", after_block=101)
        assert [r["block_number"] for r in rows] == [102, 103]

    async def test_unknown_table_rejected(self, store):
        with pytest.raises(ValueError, match="not readable"):
            await store.latest("sqlite_master")

    async def test_rows_after_needs_block_column(self, store):
        with pytest.raises(ValueError, match="no block column"):
            await store.rows_after("release_batches", 0)

    async def test_latest_heartbeat_with_age(self, store):
        await store.upsert(HeartbeatRecord(10, _tx(1), 0, SERVICE_ID, OWNER, 1000, 1, "0x"))
        await store.upsert(HeartbeatRecord(11, _tx(2), 0, SERVICE_ID, OWNER, 1060, 2, "0x"))
        hb = await store.latest_heartbeat(SERVICE_ID, now=1100)
        assert hb["ts"] == "1060"
        assert hb["status"] == "2"
        assert hb["age_sec"] == 40

    async def test_latest_heartbeat_orders_ts_numerically(self, store):
        await store.upsert(HeartbeatRecord(10, _tx(1), 0, SERVICE_ID, OWNER, 2**64 - 1, 1, "0x"))
        await store.upsert(HeartbeatRecord(11, _tx(2), 0, SERVICE_ID, OWNER, 999, 1, "0x"))
        hb = await store.latest_heartbeat(SERVICE_ID, now=1000)
        assert hb["ts"] == str(2**64 - 1)
        assert hb["age_sec"] == 0

    async def test_latest_heartbeat_by_service_name(self, store):
        from web3 import Web3

        service = Web3.to_hex(Web3.keccak(text="gateway")).lower()
        await store.upsert(HeartbeatRecord(10, _tx(1), 0, service, OWNER, 1000, 1, "0x"))
        hb = await store.latest_heartbeat("gateway", now=1000)
        assert hb["service"] == service
        assert hb["age_sec"] == 0

    async def test_latest_heartbeat_unknown_service(self, store):
        assert await store.latest_heartbeat(SERVICE_ID) is None


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    async def test_unknown_record_type(self, store):
        with pytest.raises(ProjectionError, match="No projection"):
            await store.upsert(EventRecord(1, _tx(1), 0))

    async def test_sqlite_error_wrapped_and_rolled_back(self, store):
        store._db.execute("DROP TABLE governance_grants")
        store._db.commit()
        with pytest.raises(ProjectionError, match="GrantRecord at block 21"):
            await store.upsert(GrantRecord(21, _tx(12), 0, 1, OUTLET, 1))
        assert store._db.in_transaction is False

    async def test_unbindable_integer_wrapped_and_rolled_back(self, store):
        await store.upsert(VoteFeeRecord(20, _tx(11), 0, OWNER, 25))
        with pytest.raises(ProjectionError, match="VoteFeeRecord"):
            await store.upsert(VoteFeeRecord(2**63, _tx(12), 0, OWNER, 25))
        assert store._db.in_transaction is False
        assert _count(store, "governance_vote_fees") == 1

    async def test_unbindable_release_batch_value_wrapped(self, store):
        item = ReleaseBatchItem("2026-10", 1, CONFIG_KEY, object(), "queued", "monthly")
        with pytest.raises(ProjectionError):
            await store.add_release_batch_item(item)
        assert store._db.in_transaction is False
