"""
Shared constants for the Press chain indexer.

ABI layout sizes, cold-start and polling defaults used across all modules.
"""

# ---------------------------------------------------------------------------
# ABI Layout
# ---------------------------------------------------------------------------

WORD_SIZE = 32  # bytes per ABI slot / topic
ADDRESS_SIZE = 20
UINT_STORAGE_BYTES = 16  # uint256 values keep only their low 16 bytes (u128)
UINT_STORAGE_MAX = (1 << (UINT_STORAGE_BYTES * 8)) - 1

ZERO_ADDRESS = "0x" + "00" * ADDRESS_SIZE
UNKNOWN_CONFIG_KEY = "0x"  # approved update whose proposal was never indexed

# ---------------------------------------------------------------------------
# Pipeline Defaults
# ---------------------------------------------------------------------------

DEFAULT_LOOKBACK_BLOCKS = 2000
DEFAULT_POLL_INTERVAL_SECONDS = 2
DEFAULT_IDLE_BACKOFF_SECONDS = 3
DEFAULT_MAX_BLOCK_RANGE = 5000
DEFAULT_RPC_TIMEOUT_SECONDS = 10

CURSOR_FILE_SUFFIX = ".lastblock"

# ---------------------------------------------------------------------------
# Release Batches
# ---------------------------------------------------------------------------

RELEASE_BATCH_PRESET_LIST = "release_batch_variables"
RELEASE_BATCH_STATUS_PLANNED = "planned"
RELEASE_BATCH_ITEM_STATUS_QUEUED = "queued"
RELEASE_BATCH_SOURCE_MONTHLY = "monthly"
RELEASE_BATCH_SOURCE_UPGRADE_QUEUE = "upgrade_queue"
