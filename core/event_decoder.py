"""
ABI-level decoding of Press contract event logs.

Small decoder combinators (topic readers, fixed-width word readers, dynamic
string reader) and one decoding rule per event signature. Rules are registered
in a table keyed by topic0 so a pipeline's decoder is just the subset of rules
for the events it subscribes to.

Truncation policy:
    Non-indexed and indexed uint256 values keep only their low-order 16 bytes
    (see ``_truncate_uint``). Values >= 2**128 are silently reduced modulo
    2**128. Signed int256 config values are read at full width.

Usage:
    decoder = EventDecoder(["OutletCreated", "TokenListed"])
    topics = decoder.topic0_set()
    record = decoder.decode(raw_log)   # raises DecodeError
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from web3 import Web3

from shared.constants import ADDRESS_SIZE, UINT_STORAGE_BYTES, WORD_SIZE
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
    RawLog,
    TokenListingRecord,
    VoteFeeRecord,
)


class DecodeError(Exception):
    """Raised when a log does not match the layout of its event rule."""


def event_topic(signature: str) -> str:
    """keccak256 of a canonical event signature as 0x hex (topic0)."""
    return Web3.to_hex(Web3.keccak(text=signature)).lower()


# ---------------------------------------------------------------------------
# Topic readers (indexed fields)
# ---------------------------------------------------------------------------


def _topic_bytes(topic: str) -> bytes:
    try:
        raw = bytes.fromhex(topic[2:] if topic.startswith(("0x", "0X")) else topic)
    except ValueError as e:
        raise DecodeError(f"topic is not hex: {topic!r}") from e
    if len(raw) != WORD_SIZE:
        raise DecodeError(f"topic must be {WORD_SIZE} bytes, got {len(raw)}")
    return raw


def address_from_topic(topic: str) -> str:
    """Low-order 20 bytes of an indexed address topic, checksummed."""
    raw = _topic_bytes(topic)
    return Web3.to_checksum_address(raw[-ADDRESS_SIZE:])


def bytes32_from_topic(topic: str) -> str:
    return "0x" + _topic_bytes(topic).hex()


def uint_from_topic(topic: str) -> int:
    return _truncate_uint(_topic_bytes(topic))


# ---------------------------------------------------------------------------
# Data readers (non-indexed fields)
# ---------------------------------------------------------------------------


def _truncate_uint(word: bytes) -> int:
    """
    Storable value of a uint256 word: the low-order UINT_STORAGE_BYTES bytes.

    This is the single place the precision-loss policy lives.
    """
    return int.from_bytes(word[-UINT_STORAGE_BYTES:], "big")


def _word(data: bytes, slot: int) -> bytes:
    start = slot * WORD_SIZE
    end = start + WORD_SIZE
    if len(data) < end:
        raise DecodeError(f"data too short for slot {slot}: {len(data)} bytes")
    return data[start:end]


def read_uint(data: bytes, slot: int) -> int:
    return _truncate_uint(_word(data, slot))


def read_int256(data: bytes, slot: int) -> int:
    return int.from_bytes(_word(data, slot), "big", signed=True)


def read_bool(data: bytes, slot: int) -> bool:
    return any(_word(data, slot))


def read_bytes32(data: bytes, slot: int) -> str:
    return "0x" + _word(data, slot).hex()


def read_address(data: bytes, slot: int) -> str:
    return Web3.to_checksum_address(_word(data, slot)[-ADDRESS_SIZE:])


def read_string(data: bytes, head_slot: int) -> str:
    """
    Dynamic ABI string: the head slot holds a byte offset into data, where a
    32-byte length word precedes the UTF-8 payload. Invalid UTF-8 is replaced,
    out-of-range offsets or lengths raise DecodeError.
    """
    offset = int.from_bytes(_word(data, head_slot), "big")
    if offset + WORD_SIZE > len(data):
        raise DecodeError(f"string offset {offset} out of range ({len(data)} bytes)")
    length = int.from_bytes(data[offset : offset + WORD_SIZE], "big")
    start = offset + WORD_SIZE
    if start + length > len(data):
        raise DecodeError(f"string length {length} at offset {offset} exceeds data")
    return data[start : start + length].decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _origin(log: RawLog) -> dict:
    return {"block_number": log.block_number, "tx_hash": log.tx_hash, "log_index": log.log_index}


def _decode_outlet_created(log: RawLog) -> OutletRecord:
    # topics: [sig, outletId, owner]; data: name, domain, bondPaid, feePaid
    return OutletRecord(
        **_origin(log),
        outlet_id=bytes32_from_topic(log.topics[1]),
        owner=address_from_topic(log.topics[2]),
        name=read_string(log.data, 0),
        domain=read_string(log.data, 1),
        bond_paid=read_uint(log.data, 2),
        fee_paid=read_uint(log.data, 3),
    )


def _decode_outlet_token_deployed(log: RawLog) -> OutletTokenRecord:
    # topics: [sig, outletId, token, owner]; data: name, symbol, supply, feePaid
    return OutletTokenRecord(
        **_origin(log),
        outlet_id=bytes32_from_topic(log.topics[1]),
        token=address_from_topic(log.topics[2]),
        owner=address_from_topic(log.topics[3]),
        name=read_string(log.data, 0),
        symbol=read_string(log.data, 1),
        supply=read_uint(log.data, 2),
        fee_paid=read_uint(log.data, 3),
    )


def _decode_domain_verified(log: RawLog) -> DomainVerificationRecord:
    # topics: [sig, outletId, verifier]; data: domain, proofType, proofHash
    return DomainVerificationRecord(
        **_origin(log),
        outlet_id=bytes32_from_topic(log.topics[1]),
        verifier=address_from_topic(log.topics[2]),
        domain=read_string(log.data, 0),
        proof_type=read_uint(log.data, 1),
        proof_hash=read_bytes32(log.data, 2),
    )


def _decode_token_listed(log: RawLog) -> TokenListingRecord:
    # topics: [sig, token, outletId, owner]; data: tier, feePaid, perks
    return TokenListingRecord(
        **_origin(log),
        token=address_from_topic(log.topics[1]),
        outlet_id=bytes32_from_topic(log.topics[2]),
        owner=address_from_topic(log.topics[3]),
        tier=read_uint(log.data, 0),
        fee_paid=read_uint(log.data, 1),
        perks=read_uint(log.data, 2),
    )


def _decode_heartbeat(log: RawLog) -> HeartbeatRecord:
    # topics: [sig, service, caller]; data: ts (uint64), status (uint8), extra (bytes32)
    return HeartbeatRecord(
        **_origin(log),
        service=bytes32_from_topic(log.topics[1]),
        caller=address_from_topic(log.topics[2]),
        ts=read_uint(log.data, 0),
        status=read_uint(log.data, 1),
        extra=read_bytes32(log.data, 2),
    )


def _decode_proposal_created(log: RawLog) -> ProposalRecord:
    # topics: [sig, proposalId, proposer]
    # data: title, configKey, configValue (int256), feePaid, createdAt, endsAt
    return ProposalRecord(
        **_origin(log),
        proposal_id=uint_from_topic(log.topics[1]),
        proposer=address_from_topic(log.topics[2]),
        title=read_string(log.data, 0),
        config_key=read_bytes32(log.data, 1),
        config_value=read_int256(log.data, 2),
        fee_paid=read_uint(log.data, 3),
        created_at=read_uint(log.data, 4),
        ends_at=read_uint(log.data, 5),
    )


def _decode_proposal_finalized(log: RawLog) -> ProposalFinalizedRecord:
    # topics: [sig, proposalId]
    # data: passed, yesVotes, noVotes, reason, finalizedAt, autoApplied, refundPaid
    return ProposalFinalizedRecord(
        **_origin(log),
        proposal_id=uint_from_topic(log.topics[1]),
        passed=read_bool(log.data, 0),
        yes_votes=read_uint(log.data, 1),
        no_votes=read_uint(log.data, 2),
        reason=read_string(log.data, 3),
        finalized_at=read_uint(log.data, 4),
        auto_applied=read_bool(log.data, 5),
        refund_paid=read_uint(log.data, 6),
    )


def _decode_batch_queued(log: RawLog) -> BatchQueuedRecord:
    # topics: [sig, batchId, proposalId, configKey]; data: configValue, queuedBy, queuedAt
    return BatchQueuedRecord(
        **_origin(log),
        batch_id=bytes32_from_topic(log.topics[1]),
        proposal_id=uint_from_topic(log.topics[2]),
        config_key=bytes32_from_topic(log.topics[3]),
        config_value=read_int256(log.data, 0),
        queued_by=read_address(log.data, 1),
        queued_at=read_uint(log.data, 2),
    )


def _decode_listing_requested(log: RawLog) -> ListingRequestedRecord:
    # topics: [sig, outlet]; data: tier (bytes32), feePaid
    return ListingRequestedRecord(
        **_origin(log),
        outlet=address_from_topic(log.topics[1]),
        tier=read_bytes32(log.data, 0),
        fee_paid=read_uint(log.data, 1),
    )


def _decode_test_passed(log: RawLog) -> ListingTestPassedRecord:
    return ListingTestPassedRecord(**_origin(log), outlet=address_from_topic(log.topics[1]))


def _decode_listing_finalized(log: RawLog) -> ListingFinalizedRecord:
    # topics: [sig, outlet]; data: domain, tier (bytes32)
    return ListingFinalizedRecord(
        **_origin(log),
        outlet=address_from_topic(log.topics[1]),
        domain=read_string(log.data, 0),
        tier=read_bytes32(log.data, 1),
    )


def _decode_vote_fee(log: RawLog) -> VoteFeeRecord:
    return VoteFeeRecord(
        **_origin(log),
        voter=address_from_topic(log.topics[1]),
        amount=read_uint(log.data, 0),
    )


def _decode_grant_executed(log: RawLog) -> GrantRecord:
    # nothing indexed; data: proposalId, recipient, amount
    return GrantRecord(
        **_origin(log),
        proposal_id=read_uint(log.data, 0),
        recipient=read_address(log.data, 1),
        amount=read_uint(log.data, 2),
    )


@dataclass(frozen=True)
class EventRule:
    name: str
    signature: str
    topic_count: int  # topic0 + indexed fields
    decode: Callable[[RawLog], EventRecord]

    @property
    def topic0(self) -> str:
        return event_topic(self.signature)


_RULE_TABLE: tuple[EventRule, ...] = (
    EventRule(
        "OutletCreated",
        "OutletCreated(bytes32,address,string,string,uint256,uint256)",
        3,
        _decode_outlet_created,
    ),
    EventRule(
        "OutletTokenDeployed",
        "OutletTokenDeployed(bytes32,address,address,string,string,uint256,uint256)",
        4,
        _decode_outlet_token_deployed,
    ),
    EventRule(
        "DomainVerified",
        "DomainVerified(bytes32,string,uint8,bytes32,address)",
        3,
        _decode_domain_verified,
    ),
    EventRule(
        "TokenListed",
        "TokenListed(address,bytes32,address,uint8,uint256,uint256)",
        4,
        _decode_token_listed,
    ),
    EventRule("Heartbeat", "Heartbeat(bytes32,address,uint64,uint8,bytes32)", 3, _decode_heartbeat),
    EventRule(
        "ProposalCreated",
        "ProposalCreated(uint256,address,string,bytes32,int256,uint256,uint256,uint256)",
        3,
        _decode_proposal_created,
    ),
    EventRule(
        "ProposalFinalized",
        "ProposalFinalized(uint256,bool,uint256,uint256,string,uint256,bool,uint256)",
        2,
        _decode_proposal_finalized,
    ),
    EventRule(
        "BatchQueued",
        "BatchQueued(bytes32,uint256,bytes32,int256,address,uint256)",
        4,
        _decode_batch_queued,
    ),
    EventRule("ListingRequested", "ListingRequested(address,bytes32,uint256)", 2, _decode_listing_requested),
    EventRule("TestTransactionPassed", "TestTransactionPassed(address)", 2, _decode_test_passed),
    EventRule("ListingFinalized", "ListingFinalized(address,string,bytes32)", 2, _decode_listing_finalized),
    EventRule("VoteFeeCharged", "VoteFeeCharged(address,uint256)", 2, _decode_vote_fee),
    EventRule("GrantExecuted", "GrantExecuted(uint256,address,uint256)", 1, _decode_grant_executed),
)

EVENT_RULES: dict[str, EventRule] = {rule.name: rule for rule in _RULE_TABLE}


class EventDecoder:
    """
    Decoder restricted to one pipeline's events.

    Dispatches on topics[0] through a topic0 -> rule map built once at
    construction; unknown names are a configuration error.
    """

    def __init__(self, event_names: Iterable[str]) -> None:
        names = list(event_names)
        unknown = [n for n in names if n not in EVENT_RULES]
        if unknown:
            raise ValueError(f"Unknown event names: {', '.join(unknown)}")
        self._rules: dict[str, EventRule] = {}
        for name in names:
            rule = EVENT_RULES[name]
            self._rules[rule.topic0] = rule

    def topic0_set(self) -> list[str]:
        return list(self._rules)

    def rule_for(self, log: RawLog) -> EventRule | None:
        if not log.topics:
            return None
        return self._rules.get(log.topics[0].lower())

    def decode(self, log: RawLog) -> EventRecord:
        """Decode one log into its typed record. Raises DecodeError."""
        rule = self.rule_for(log)
        if rule is None:
            raise DecodeError(f"no rule for topic0 {log.topics[0] if log.topics else '<none>'}")
        if len(log.topics) != rule.topic_count:
            raise DecodeError(
                f"{rule.name}: expected {rule.topic_count} topics, got {len(log.topics)}"
            )
        return rule.decode(log)
