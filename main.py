"""
Press Chain Indexer — Main Entrypoint.

Single-process asyncio runner launching one task per enabled pipeline:
    outlet_registry    — outlets, outlet tokens, domain proofs, listings, heartbeats
    governance         — proposals, finalizations, vote fees, grants
    upgrade_queue      — on-chain release batch queueing
    exchange_registry  — exchange listing lifecycle

Pipelines share only the SQLite projection store and the RPC session. The
governance and upgrade queue pipelines feed the derived state engine inline
through record hooks.

Usage:
    python main.py
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from config.loader import get_config
from config.validate import ConfigValidationError, validate_all_configs
from indexer_logging.logger_manager import setup_module_logger
from shared.types import BatchQueuedRecord, ProposalFinalizedRecord

if TYPE_CHECKING:
    from chain.contract_registry import ContractRegistry
    from chain.rpc_client import RpcClient
    from core.cursor_store import CursorStore
    from core.derived_state import DerivedStateEngine
    from core.pipeline import Pipeline
    from core.projection_store import ProjectionStore

# ---------------------------------------------------------------------------
# Module logger
# ---------------------------------------------------------------------------
_logger = setup_module_logger("main", "main.log", module_folder="Main_Logs")


# ---------------------------------------------------------------------------
# Startup banner
# ---------------------------------------------------------------------------


def _log_banner(rpc_url: str, db_path: str, state_dir: str, pipeline_ids: list[str]) -> None:
    """Log a concise startup summary."""
    _logger.info("=" * 60)
    _logger.info("Press chain indexer starting")
    _logger.info("=" * 60)
    _logger.info("  rpc        : %s", rpc_url)
    _logger.info("  database   : %s", db_path)
    _logger.info("  state_dir  : %s", state_dir)
    _logger.info("  pipelines  : %s", ", ".join(pipeline_ids) or "(none enabled)")
    _logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_pipelines(
    rpc: RpcClient,
    registry: ContractRegistry,
    store: ProjectionStore,
    cursor_store: CursorStore,
    engine: DerivedStateEngine,
) -> list[Pipeline]:
    """One Pipeline per enabled entry in pipelines.json, all sharing the same hooks."""
    from core.event_decoder import EventDecoder
    from core.pipeline import Pipeline

    hooks = {
        ProposalFinalizedRecord: engine.on_proposal_finalized,
        BatchQueuedRecord: engine.on_batch_queued,
    }

    pipelines = []
    for spec in get_config().get_pipeline_specs():
        if not spec.enabled:
            _logger.info("Pipeline %s disabled in config", spec.pipeline_id)
            continue
        pipelines.append(
            Pipeline(
                spec=spec,
                rpc=rpc,
                registry=registry,
                decoder=EventDecoder(spec.events),
                store=store,
                cursor_store=cursor_store,
                record_hooks=hooks,
            )
        )
    return pipelines


# ---------------------------------------------------------------------------
# Task done callback: detect unhandled exceptions
# ---------------------------------------------------------------------------


def _task_done_callback(
    task: asyncio.Task[None],
    shutdown_event: asyncio.Event,
) -> None:
    """Called when a pipeline task finishes (normally or with error)."""
    try:
        exc = task.exception()
    except asyncio.CancelledError:
        _logger.info("Task %s cancelled", task.get_name())
        return

    if exc is not None:
        _logger.critical(
            "Task %s failed with unhandled exception: %s",
            task.get_name(),
            exc,
            exc_info=exc,
        )
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Main async entry
# ---------------------------------------------------------------------------


async def _run() -> None:
    """Wire all components and launch one task per pipeline."""
    # ------------------------------------------------------------------
    # 1. Load environment and validate configuration
    # ------------------------------------------------------------------
    load_dotenv()

    try:
        validate_all_configs()
    except ConfigValidationError as exc:
        _logger.critical("Config validation failed:\n%s", exc)
        sys.exit(1)

    cfg = get_config()

    # ------------------------------------------------------------------
    # 2. Initialize shared instances (dependency order)
    # ------------------------------------------------------------------
    from chain.contract_registry import ContractRegistry
    from chain.rpc_client import RpcClient
    from core.cursor_store import CursorStore
    from core.derived_state import DerivedStateEngine, PresetStore
    from core.projection_store import ProjectionStore

    rpc = RpcClient()
    registry = ContractRegistry(cfg.get_state_dir())
    store = ProjectionStore(cfg.get_db_path())
    cursor_store = CursorStore(cfg.get_cursor_dir())
    engine = DerivedStateEngine(store, PresetStore(cfg.get_presets_paths()))

    pipelines = build_pipelines(rpc, registry, store, cursor_store, engine)
    _log_banner(
        rpc.url,
        store.db_path,
        str(cfg.get_state_dir()),
        [p.pipeline_id for p in pipelines],
    )

    # ------------------------------------------------------------------
    # 3. Signal handling for graceful shutdown
    # ------------------------------------------------------------------
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(sig: signal.Signals) -> None:
        _logger.info("Received %s, initiating graceful shutdown", sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    # ------------------------------------------------------------------
    # 4. Launch one task per pipeline
    # ------------------------------------------------------------------
    tasks = [asyncio.create_task(p.run(), name=f"pipeline:{p.pipeline_id}") for p in pipelines]

    for t in tasks:
        t.add_done_callback(lambda done_task: _task_done_callback(done_task, shutdown_event))

    _logger.info("All tasks launched: %s", ", ".join(t.get_name() for t in tasks))

    # ------------------------------------------------------------------
    # 5. Wait for shutdown signal, then cancel tasks
    # ------------------------------------------------------------------
    try:
        await shutdown_event.wait()
    finally:
        _logger.info("Shutting down, cancelling tasks")

        for p in pipelines:
            p.stop()

        for t in tasks:
            if not t.done():
                t.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for t, result in zip(tasks, results, strict=False):
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                _logger.error("Task %s exited with error: %s", t.get_name(), result)

        for p in pipelines:
            status = p.status()
            _logger.info(
                "Pipeline %s stopped at cursor %s (projected=%d skipped=%d)",
                status.pipeline_id,
                status.cursor,
                status.total_projected,
                status.total_skipped,
            )

        # Cleanup resources
        await rpc.close()
        store.close()
        _logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    """Synchronous entry point."""
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        _logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
