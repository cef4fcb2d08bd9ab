"""
Shared data types for the Press chain indexer.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PipelineState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"  # head + eth_getLogs for [from, to]
    DECODING = "decoding"
    PROJECTING = "projecting"
    CURSOR_ADVANCE = "cursor_advance"


class TickOutcome(Enum):
    ADVANCED = "advanced"  # whole range projected, cursor moved to to + 1
    PARTIAL = "partial"  # projection failure, cursor held at failing block
    UP_TO_DATE = "up_to_date"  # head below next block, nothing to scan
    NO_CONTRACT = "no_contract"  # dependent contract not deployed yet
    RPC_ERROR = "rpc_error"
    CURSOR_ERROR = "cursor_error"


# ---------------------------------------------------------------------------
# Chain Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawLog:
    """Log entry as returned by eth_getLogs. Never stored."""

    address: str
    topics: tuple[str, ...]  # 0x-prefixed 32-byte hex, topics[0] = event signature hash
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class LogCursor:
    pipeline_id: str
    next_block: int  # first block the next scan covers


@dataclass(frozen=True)
class ContractSource:
    """Where the deployer writes a contract address: a JSON key or a plain text file."""

    file: str
    key: str | None = None


@dataclass(frozen=True)
class PipelineSpec:
    pipeline_id: str
    contracts: tuple[ContractSource, ...]
    events: tuple[str, ...]  # event names registered in core.event_decoder
    lookback_blocks: int
    enabled: bool = True


# ---------------------------------------------------------------------------
# Decoded Event Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EventRecord:
    """Origin of a decoded log; (tx_hash, log_index) is the append dedup key."""

    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class OutletRecord(EventRecord):
    outlet_id: str  # bytes32 hex
    owner: str
    name: str
    domain: str
    bond_paid: int
    fee_paid: int


@dataclass(frozen=True)
class OutletTokenRecord(EventRecord):
    outlet_id: str
    token: str
    owner: str
    name: str
    symbol: str
    supply: int
    fee_paid: int


@dataclass(frozen=True)
class TokenListingRecord(EventRecord):
    token: str
    outlet_id: str
    owner: str
    tier: int
    fee_paid: int
    perks: int


@dataclass(frozen=True)
class DomainVerificationRecord(EventRecord):
    outlet_id: str
    domain: str
    proof_type: int
    proof_hash: str
    verifier: str


@dataclass(frozen=True)
class HeartbeatRecord(EventRecord):
    service: str  # bytes32 hex
    caller: str
    ts: int  # unix seconds reported by the relaying service
    status: int
    extra: str


@dataclass(frozen=True)
class ProposalRecord(EventRecord):
    proposal_id: int
    proposer: str
    title: str
    config_key: str  # bytes32 hex, keccak of the human-readable key
    config_value: int  # int256
    fee_paid: int
    created_at: int
    ends_at: int


@dataclass(frozen=True)
class ProposalFinalizedRecord(EventRecord):
    proposal_id: int
    passed: bool
    yes_votes: int
    no_votes: int
    reason: str
    finalized_at: int
    auto_applied: bool
    refund_paid: int


@dataclass(frozen=True)
class BatchQueuedRecord(EventRecord):
    batch_id: str  # bytes32 hex
    proposal_id: int
    config_key: str
    config_value: int
    queued_by: str
    queued_at: int


@dataclass(frozen=True)
class ListingRequestedRecord(EventRecord):
    outlet: str
    tier: str  # bytes32 hex
    fee_paid: int


@dataclass(frozen=True)
class ListingTestPassedRecord(EventRecord):
    outlet: str


@dataclass(frozen=True)
class ListingFinalizedRecord(EventRecord):
    outlet: str
    domain: str
    tier: str


@dataclass(frozen=True)
class VoteFeeRecord(EventRecord):
    voter: str
    amount: int


@dataclass(frozen=True)
class GrantRecord(EventRecord):
    proposal_id: int
    recipient: str
    amount: int


# ---------------------------------------------------------------------------
# Derived State Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReleaseBatch:
    batch_id: str  # "YYYY-MM" for monthly batches, bytes32 hex for queued ones
    title: str
    window_start: str
    window_end: str
    status: str
    notes: str


@dataclass(frozen=True)
class ReleaseBatchItem:
    batch_id: str
    proposal_id: int
    config_key: str
    config_value: str
    status: str
    source: str


@dataclass(frozen=True)
class ProposalSummary:
    """Subset of governance_proposals needed when a proposal is finalized."""

    proposal_id: int
    config_key: str
    config_value: str


# ---------------------------------------------------------------------------
# Pipeline Runtime Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TickResult:
    outcome: TickOutcome
    cursor_before: int | None = None
    cursor_after: int | None = None
    from_block: int | None = None
    to_block: int | None = None
    logs_fetched: int = 0
    projected: int = 0
    skipped: int = 0  # decode errors
    failed: int = 0  # projection errors


@dataclass
class PipelineStatus:
    pipeline_id: str
    state: PipelineState = PipelineState.IDLE
    last_head: int | None = None
    cursor: int | None = None
    last_outcome: TickOutcome | None = None
    consecutive_failures: int = 0
    total_projected: int = 0
    total_skipped: int = 0
    last_error: str | None = None
    contracts: list[str] = field(default_factory=list)
