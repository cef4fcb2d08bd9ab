"""
Release batches derived from governance outcomes.

A passed, non-auto-applied proposal whose config key is on the release-batch
preset list is placed in the monthly batch for the current UTC month. Upgrade
queue ``BatchQueued`` events create a batch keyed by the on-chain batch id.

Usage:
    presets = PresetStore(config.get_presets_paths())
    engine = DerivedStateEngine(store, presets)
    await engine.on_proposal_finalized(record)
"""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from web3 import Web3

from indexer_logging.logger_manager import setup_module_logger
from shared.constants import (
    RELEASE_BATCH_ITEM_STATUS_QUEUED,
    RELEASE_BATCH_PRESET_LIST,
    RELEASE_BATCH_SOURCE_MONTHLY,
    RELEASE_BATCH_SOURCE_UPGRADE_QUEUE,
    RELEASE_BATCH_STATUS_PLANNED,
)
from shared.types import (
    BatchQueuedRecord,
    ProposalFinalizedRecord,
    ReleaseBatch,
    ReleaseBatchItem,
)

if TYPE_CHECKING:
    from core.projection_store import ProjectionStore

_MONTHLY_NOTES = "Auto-created by indexer"


def month_window(now: datetime) -> tuple[str, str, str]:
    """
    ``(batch_id, window_start, window_end)`` for the UTC month containing ``now``.

    The window ends one second before the first instant of the next month.
    """
    now = now.astimezone(timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        next_start = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        next_start = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    end = next_start - timedelta(seconds=1)
    return f"{now.year}-{now.month:02d}", start.isoformat(), end.isoformat()


def _timestamp_iso(ts: int) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return str(ts)


def preset_key_hash(name: str) -> str:
    """bytes32 config key for a preset name; 0x keys pass through lowercased."""
    if name.startswith("0x") and len(name) == 66:
        return name.lower()
    return Web3.to_hex(Web3.keccak(text=name)).lower()


class PresetStore:
    """
    Release-batch preset list, re-read whenever the backing file changes.

    The first existing path wins. A missing or invalid file yields an empty
    list and a warning.
    """

    def __init__(self, paths: list[Path] | list[str]) -> None:
        self._paths = [Path(p) for p in paths]
        self._stamp: tuple[str, int] | None = None
        self._keys: frozenset[str] = frozenset()
        self._logger = setup_module_logger(
            "derived_state", "derived_state.log", module_folder="Derived_State_Logs"
        )

    def _active_path(self) -> tuple[Path, int] | None:
        for path in self._paths:
            try:
                return path, os.stat(path).st_mtime_ns
            except FileNotFoundError:
                continue
            except OSError as e:
                self._logger.warning("Cannot stat preset file %s: %s", path, e)
        return None

    def keys(self) -> frozenset[str]:
        """Lowercased bytes32 keys of every release-batch preset."""
        active = self._active_path()
        if active is None:
            if self._stamp != ("", 0):
                self._logger.warning(
                    "No preset file found in %s", ", ".join(str(p) for p in self._paths)
                )
                self._stamp = ("", 0)
                self._keys = frozenset()
            return self._keys

        path, mtime = active
        stamp = (str(path), mtime)
        if stamp != self._stamp:
            self._keys = self._load(path)
            self._stamp = stamp
        return self._keys

    def _load(self, path: Path) -> frozenset[str]:
        try:
            with open(path, "r") as f:
                doc = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self._logger.warning("Invalid preset file %s: %s", path, e)
            return frozenset()

        entries = doc.get(RELEASE_BATCH_PRESET_LIST, []) if isinstance(doc, dict) else []
        keys = set()
        for entry in entries if isinstance(entries, list) else []:
            name = entry.get("key") if isinstance(entry, dict) else None
            if isinstance(name, str) and name:
                keys.add(preset_key_hash(name))
        self._logger.info("Loaded %d release-batch preset(s) from %s", len(keys), path)
        return frozenset(keys)

    def matches(self, config_key: str) -> bool:
        return config_key.lower() in self.keys()


class DerivedStateEngine:
    """Creates release batches and items from projected governance records."""

    def __init__(
        self,
        store: ProjectionStore,
        presets: PresetStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._presets = presets
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._logger = setup_module_logger(
            "derived_state", "derived_state.log", module_folder="Derived_State_Logs"
        )

    async def on_proposal_finalized(self, record: ProposalFinalizedRecord) -> ReleaseBatchItem | None:
        """
        Place an approved preset change in this month's batch.

        Returns the item when one was created, None when the proposal does not
        qualify or was already placed in a monthly batch.
        """
        if not record.passed or record.auto_applied:
            return None

        summary = await self._store.get_proposal(record.proposal_id)
        if summary is None:
            self._logger.info(
                "Finalized proposal %d not projected yet, skipping release batch",
                record.proposal_id,
            )
            return None
        if not self._presets.matches(summary.config_key):
            return None
        if await self._store.has_release_batch_item(record.proposal_id, RELEASE_BATCH_SOURCE_MONTHLY):
            return None

        batch_id, window_start, window_end = month_window(self._clock())
        created = await self._store.ensure_release_batch(
            ReleaseBatch(
                batch_id=batch_id,
                title=f"Monthly Release Batch {batch_id}",
                window_start=window_start,
                window_end=window_end,
                status=RELEASE_BATCH_STATUS_PLANNED,
                notes=_MONTHLY_NOTES,
            )
        )
        if created:
            self._logger.info("Created release batch %s", batch_id)

        item = ReleaseBatchItem(
            batch_id=batch_id,
            proposal_id=record.proposal_id,
            config_key=summary.config_key,
            config_value=summary.config_value,
            status=RELEASE_BATCH_ITEM_STATUS_QUEUED,
            source=RELEASE_BATCH_SOURCE_MONTHLY,
        )
        if not await self._store.add_release_batch_item(item):
            return None
        self._logger.info(
            "Queued proposal %d (%s) in release batch %s",
            record.proposal_id,
            summary.config_key,
            batch_id,
        )
        return item

    async def on_batch_queued(self, record: BatchQueuedRecord) -> ReleaseBatchItem | None:
        """Mirror an upgrade-queue batch and its item. Returns the item if newly added."""
        queued_at = _timestamp_iso(record.queued_at)
        await self._store.ensure_release_batch(
            ReleaseBatch(
                batch_id=record.batch_id,
                title=f"Release Batch {record.batch_id}",
                window_start=queued_at,
                window_end=queued_at,
                status=RELEASE_BATCH_STATUS_PLANNED,
                notes=f"Queued on-chain by {record.queued_by}",
            )
        )
        item = ReleaseBatchItem(
            batch_id=record.batch_id,
            proposal_id=record.proposal_id,
            config_key=record.config_key,
            config_value=str(record.config_value),
            status=RELEASE_BATCH_ITEM_STATUS_QUEUED,
            source=RELEASE_BATCH_SOURCE_UPGRADE_QUEUE,
        )
        if not await self._store.add_release_batch_item(item):
            return None
        self._logger.info("Mirrored queued proposal %d into batch %s", record.proposal_id, record.batch_id)
        return item
