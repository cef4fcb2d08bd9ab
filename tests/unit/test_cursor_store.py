"""
Unit tests for core/cursor_store.py.

Tests verify the cold-start clamp, persistence of the seed, atomic writes,
tolerance of corrupt cursor files and write failures.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from core.cursor_store import CursorStoreError


def _make_store(cursor_dir, default_lookback: int = 2000):
    """Create a CursorStore with patched logger."""
    with patch("core.cursor_store.setup_module_logger") as mock_logger:
        mock_logger.return_value = MagicMock()
        from core.cursor_store import CursorStore

        return CursorStore(cursor_dir, default_lookback=default_lookback)


@pytest.fixture
def store(tmp_path):
    return _make_store(tmp_path)


# ---------------------------------------------------------------------------
# get / set
# ---------------------------------------------------------------------------


class TestGetSet:
    def test_absent_cursor_is_none(self, store):
        assert store.get("governance") is None

    def test_set_then_get(self, store, tmp_path):
        store.set("governance", 1234)
        assert store.get("governance") == 1234
        assert (tmp_path / "governance.lastblock").read_text() == "1234"

    def test_set_overwrites(self, store):
        store.set("governance", 10)
        store.set("governance", 11)
        assert store.get("governance") == 11

    def test_pipelines_are_independent(self, store):
        store.set("governance", 10)
        store.set("upgrade_queue", 99)
        assert store.get("governance") == 10
        assert store.get("upgrade_queue") == 99

    def test_no_temp_files_left_behind(self, store, tmp_path):
        store.set("governance", 5)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["governance.lastblock"]

    def test_creates_missing_directory(self, tmp_path):
        nested = tmp_path / "state" / "cursors"
        store = _make_store(nested)
        store.set("outlet_registry", 7)
        assert (nested / "outlet_registry.lastblock").exists()

    def test_corrupt_file_reads_as_none(self, store, tmp_path):
        (tmp_path / "governance.lastblock").write_text("not-a-number")
        assert store.get("governance") is None

    def test_whitespace_is_tolerated(self, store, tmp_path):
        (tmp_path / "governance.lastblock").write_text(" 42\n")
        assert store.get("governance") == 42

    def test_negative_value_rejected(self, store):
        with pytest.raises(CursorStoreError):
            store.set("governance", -1)

    def test_write_failure_raises_cursor_store_error(self, store):
        with patch("core.cursor_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(CursorStoreError, match="disk full"):
                store.set("governance", 5)
        assert store.get("governance") is None


# ---------------------------------------------------------------------------
# Cold start
# ---------------------------------------------------------------------------


class TestResolve:
    def test_cold_start_seeds_head_minus_lookback(self, store):
        assert store.resolve("governance", head=5000) == 3000

    def test_cold_start_clamps_at_zero(self, store):
        assert store.resolve("governance", head=1000) == 0

    def test_seed_is_persisted(self, store):
        store.resolve("governance", head=5000)
        assert store.get("governance") == 3000

    def test_seed_does_not_drift_with_head(self, store):
        store.resolve("governance", head=5000)
        assert store.resolve("governance", head=9000) == 3000

    def test_per_pipeline_lookback_override(self, store):
        assert store.resolve("outlet_registry", head=5000, lookback=3000) == 2000

    def test_stored_cursor_wins(self, store):
        store.set("governance", 4321)
        assert store.resolve("governance", head=100_000) == 4321

    def test_corrupt_cursor_falls_back_to_cold_start(self, store, tmp_path):
        (tmp_path / "governance.lastblock").write_text("garbage")
        assert store.resolve("governance", head=2500) == 500
        assert store.get("governance") == 500
