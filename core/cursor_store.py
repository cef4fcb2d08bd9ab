"""
Durable per-pipeline scan cursor.

One plain-text file per pipeline (``<cursor_dir>/<pipeline_id>.lastblock``)
holding the decimal number of the next block to scan. Writes go through a temp
file, fsync and ``os.replace`` so a crash leaves either the old or the new
value, never a torn one.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from indexer_logging.logger_manager import setup_module_logger
from shared.constants import CURSOR_FILE_SUFFIX, DEFAULT_LOOKBACK_BLOCKS


class CursorStoreError(Exception):
    """Raised when a cursor cannot be persisted."""


class CursorStore:
    """File-backed resume pointers keyed by pipeline id."""

    def __init__(self, cursor_dir: Path | str, default_lookback: int = DEFAULT_LOOKBACK_BLOCKS) -> None:
        self._dir = Path(cursor_dir)
        self._default_lookback = default_lookback
        self._logger = setup_module_logger("cursor", "cursor.log", module_folder="Cursor_Logs")

    def path_for(self, pipeline_id: str) -> Path:
        return self._dir / f"{pipeline_id}{CURSOR_FILE_SUFFIX}"

    def get(self, pipeline_id: str) -> int | None:
        """Stored cursor, or None when absent or unreadable."""
        path = self.path_for(pipeline_id)
        try:
            text = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self._logger.warning("Cannot read cursor %s: %s", path, e)
            return None
        try:
            value = int(text)
        except ValueError:
            self._logger.warning("Ignoring corrupt cursor %s: %r", path, text[:40])
            return None
        if value < 0:
            self._logger.warning("Ignoring negative cursor %s: %d", path, value)
            return None
        return value

    def resolve(self, pipeline_id: str, head: int, lookback: int | None = None) -> int:
        """
        Stored cursor, or the cold-start seed ``max(0, head - lookback)``.

        The seed is persisted immediately so a restart before the first batch
        completes does not drift forward with the head.
        """
        stored = self.get(pipeline_id)
        if stored is not None:
            return stored
        lookback = self._default_lookback if lookback is None else lookback
        seed = max(0, head - lookback)
        self._logger.info(
            "Cold start for %s: head=%d lookback=%d seed=%d", pipeline_id, head, lookback, seed
        )
        self.set(pipeline_id, seed)
        return seed

    def set(self, pipeline_id: str, block_number: int) -> None:
        """Atomically persist the cursor. Raises CursorStoreError."""
        if block_number < 0:
            raise CursorStoreError(f"cursor must be non-negative, got {block_number}")
        path = self.path_for(pipeline_id)
        tmp_name = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{pipeline_id}.", dir=self._dir)
            with os.fdopen(fd, "w") as f:
                f.write(str(block_number))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise CursorStoreError(f"Failed to write cursor {path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        self._logger.debug("Cursor %s -> %d", pipeline_id, block_number)
