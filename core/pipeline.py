"""
Cursor-resumable log-polling pipeline.

One pipeline per contract group: resolve addresses, read head, fetch logs for
``[cursor, min(head, cursor + max_block_range - 1)]``, decode, project, then
advance the cursor. Designed to be launched as an asyncio.Task via ``run()``.

Failure policy:
    - RPC error: tick ends, cursor unchanged, same range retried next tick.
    - Decode error: the single log is skipped.
    - Projection or hook error: the rest of the batch is still applied, but
      the cursor only advances to the lowest failing block.
    - Cursor write error: the range is re-scanned next tick.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from chain.rpc_client import RpcClientError
from config.loader import get_config
from core.cursor_store import CursorStoreError
from core.event_decoder import DecodeError
from indexer_logging.logger_manager import log_data_entry, log_data_output, setup_module_logger
from shared.constants import (
    DEFAULT_IDLE_BACKOFF_SECONDS,
    DEFAULT_MAX_BLOCK_RANGE,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from shared.types import (
    EventRecord,
    PipelineSpec,
    PipelineState,
    PipelineStatus,
    TickOutcome,
    TickResult,
)

if TYPE_CHECKING:
    from chain.contract_registry import ContractRegistry
    from chain.rpc_client import RpcClient
    from core.cursor_store import CursorStore
    from core.event_decoder import EventDecoder
    from core.projection_store import ProjectionStore

RecordHook = Callable[[Any], Awaitable[Any]]

_FAILURE_OUTCOMES = {TickOutcome.PARTIAL, TickOutcome.RPC_ERROR, TickOutcome.CURSOR_ERROR}


class Pipeline:
    """
    Scan / decode / project / advance loop for one contract group.

    Steps within a pipeline are strictly sequential; pipelines share nothing
    but the projection store.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        rpc: RpcClient,
        registry: ContractRegistry,
        decoder: EventDecoder,
        store: ProjectionStore,
        cursor_store: CursorStore,
        record_hooks: dict[type, RecordHook] | None = None,
        poll_interval: float | None = None,
        idle_backoff: float | None = None,
        max_block_range: int | None = None,
    ) -> None:
        self._spec = spec
        self._rpc = rpc
        self._registry = registry
        self._decoder = decoder
        self._store = store
        self._cursors = cursor_store
        self._record_hooks: dict[type, RecordHook] = dict(record_hooks or {})

        cfg = get_config()
        timing_cfg = cfg.get_timing_config().get("pipelines", {})
        rpc_cfg = cfg.get_rpc_config()

        self._poll_interval: float = (
            poll_interval
            if poll_interval is not None
            else timing_cfg.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
        )
        self._idle_backoff: float = (
            idle_backoff
            if idle_backoff is not None
            else timing_cfg.get("idle_backoff_seconds", DEFAULT_IDLE_BACKOFF_SECONDS)
        )
        self._max_block_range: int = max(
            1,
            max_block_range
            if max_block_range is not None
            else rpc_cfg.get("max_block_range", DEFAULT_MAX_BLOCK_RANGE),
        )

        self._status = PipelineStatus(pipeline_id=spec.pipeline_id)
        self._running: bool = False

        self._logger = setup_module_logger(
            "pipeline", "pipeline.log", module_folder="Pipeline_Logs"
        )

    @property
    def pipeline_id(self) -> str:
        return self._spec.pipeline_id

    def status(self) -> PipelineStatus:
        """Snapshot of the pipeline's progress counters."""
        return dataclasses.replace(self._status, contracts=list(self._status.contracts))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Tick forever. Only cancellation escapes."""
        self._running = True
        self._logger.info(
            "Pipeline %s started (events=%s, lookback=%d)",
            self.pipeline_id,
            ",".join(self._spec.events),
            self._spec.lookback_blocks,
        )
        try:
            while self._running:
                delay = self._poll_interval
                try:
                    result = await self.tick()
                    if result.outcome == TickOutcome.NO_CONTRACT:
                        delay = self._idle_backoff
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self._status.consecutive_failures += 1
                    self._status.last_error = str(exc)
                    self._status.state = PipelineState.IDLE
                    self._logger.error(
                        "Tick failed for %s (%d consecutive): %s",
                        self.pipeline_id,
                        self._status.consecutive_failures,
                        exc,
                        exc_info=True,
                        extra={"pipeline_id": self.pipeline_id},
                    )
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._logger.info("Pipeline %s cancelled", self.pipeline_id)
            raise
        finally:
            self._running = False

    def stop(self) -> None:
        """Signal the loop to exit after the current tick."""
        self._running = False

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def tick(self) -> TickResult:
        pid = self.pipeline_id

        addresses = self._registry.resolve(self._spec.contracts)
        self._status.contracts = addresses
        if not addresses:
            self._logger.debug("No contract deployed for %s yet", pid)
            return self._finish(TickResult(outcome=TickOutcome.NO_CONTRACT))

        self._status.state = PipelineState.SCANNING
        try:
            head = await self._rpc.head()
        except RpcClientError as e:
            return self._finish(TickResult(outcome=TickOutcome.RPC_ERROR), error=e)
        self._status.last_head = head

        try:
            from_block = self._cursors.resolve(pid, head, self._spec.lookback_blocks)
        except CursorStoreError as e:
            return self._finish(TickResult(outcome=TickOutcome.CURSOR_ERROR), error=e)
        self._status.cursor = from_block

        if head < from_block:
            return self._finish(
                TickResult(
                    outcome=TickOutcome.UP_TO_DATE,
                    cursor_before=from_block,
                    cursor_after=from_block,
                )
            )

        to_block = min(head, from_block + self._max_block_range - 1)
        try:
            logs = await self._rpc.get_logs(
                addresses, self._decoder.topic0_set(), from_block, to_block
            )
        except RpcClientError as e:
            return self._finish(
                TickResult(
                    outcome=TickOutcome.RPC_ERROR,
                    cursor_before=from_block,
                    cursor_after=from_block,
                    from_block=from_block,
                    to_block=to_block,
                ),
                error=e,
            )

        trace_id = f"{pid}:{from_block}-{to_block}"
        logs.sort(key=lambda lg: (lg.block_number, lg.log_index))
        log_data_entry(trace_id, "pipeline", f"{len(logs)} logs for {pid}", "RawLog", logs)

        # Decode
        self._status.state = PipelineState.DECODING
        records: list[EventRecord] = []
        skipped = 0
        for raw in logs:
            try:
                records.append(self._decoder.decode(raw))
            except DecodeError as e:
                skipped += 1
                self._logger.warning(
                    "Skipping undecodable log in %s block %d tx %s: %s",
                    pid,
                    raw.block_number,
                    raw.tx_hash,
                    e,
                    extra={
                        "pipeline_id": pid,
                        "block_number": raw.block_number,
                        "tx_hash": raw.tx_hash,
                    },
                )

        # Project
        self._status.state = PipelineState.PROJECTING
        projected = 0
        failed = 0
        lowest_failed: int | None = None
        for record in records:
            try:
                await self._apply(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failed += 1
                if lowest_failed is None or record.block_number < lowest_failed:
                    lowest_failed = record.block_number
                self._logger.error(
                    "Projection failed in %s for %s at block %d: %s",
                    pid,
                    type(record).__name__,
                    record.block_number,
                    e,
                    extra={
                        "pipeline_id": pid,
                        "block_number": record.block_number,
                        "tx_hash": record.tx_hash,
                        "event_type": type(record).__name__,
                        "error": str(e),
                    },
                )
                continue
            projected += 1
            log_data_output(
                trace_id, "pipeline", type(record).__name__, "EventRecord", record, "projection"
            )

        # Advance
        self._status.state = PipelineState.CURSOR_ADVANCE
        next_block = to_block + 1 if lowest_failed is None else lowest_failed
        outcome = TickOutcome.ADVANCED if failed == 0 else TickOutcome.PARTIAL
        error: Exception | None = None
        if next_block > from_block:
            try:
                self._cursors.set(pid, next_block)
            except CursorStoreError as e:
                outcome = TickOutcome.CURSOR_ERROR
                next_block = from_block
                error = e
        self._status.cursor = next_block
        self._status.total_projected += projected
        self._status.total_skipped += skipped

        if logs:
            self._logger.info(
                "%s [%d, %d]: %d log(s), %d projected, %d skipped, %d failed, cursor -> %d",
                pid,
                from_block,
                to_block,
                len(logs),
                projected,
                skipped,
                failed,
                next_block,
                extra={"pipeline_id": pid},
            )

        return self._finish(
            TickResult(
                outcome=outcome,
                cursor_before=from_block,
                cursor_after=next_block,
                from_block=from_block,
                to_block=to_block,
                logs_fetched=len(logs),
                projected=projected,
                skipped=skipped,
                failed=failed,
            ),
            error=error,
        )

    async def _apply(self, record: EventRecord) -> None:
        await self._store.upsert(record)
        hook = self._record_hooks.get(type(record))
        if hook is not None:
            await hook(record)

    def _finish(self, result: TickResult, error: Exception | None = None) -> TickResult:
        self._status.state = PipelineState.IDLE
        self._status.last_outcome = result.outcome
        if result.outcome in _FAILURE_OUTCOMES:
            self._status.consecutive_failures += 1
            if error is not None:
                self._status.last_error = str(error)
            self._logger.warning(
                "%s tick %s (%d consecutive failure(s))%s",
                self.pipeline_id,
                result.outcome.value,
                self._status.consecutive_failures,
                f": {error}" if error is not None else "",
                extra={"pipeline_id": self.pipeline_id},
            )
        else:
            self._status.consecutive_failures = 0
        return result
