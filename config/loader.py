"""
Configuration loader for the Press chain indexer.

Provides centralized configuration management with .env overrides.

Usage:
    from config.loader import get_config

    config = get_config()
    pipelines = config.get_pipelines_config()
    db_path = config.get_db_path()
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from shared.constants import DEFAULT_LOOKBACK_BLOCKS
from shared.types import ContractSource, PipelineSpec

load_dotenv()

# Resolve config directory relative to this file
_CONFIG_DIR = Path(__file__).parent
_PROJECT_ROOT = _CONFIG_DIR.parent


def _load_json(filepath: Path) -> Dict[str, Any]:
    """Load a JSON config file. Returns empty dict if file doesn't exist."""
    try:
        with open(filepath, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"[CONFIG_WARN] Config file not found: {filepath}")
        return {}
    except json.JSONDecodeError as e:
        print(f"[CONFIG_ERROR] Invalid JSON in {filepath}: {e}")
        return {}


def get_env_var(var_name: str, default_value: Any, var_type: type) -> Any:
    """Get environment variable with type conversion and fallback."""
    value = os.getenv(var_name, None)
    if value is None:
        return default_value
    try:
        if var_type == bool:
            return value.lower() in ("true", "1", "yes")
        return var_type(value)
    except (ValueError, TypeError):
        return default_value


def _resolve_path(value: str) -> Path:
    """Relative paths in config files are anchored at the project root."""
    path = Path(value)
    if not path.is_absolute():
        path = _PROJECT_ROOT / path
    return path


class ConfigLoader:
    """
    Central configuration manager for the indexer.

    Loads configuration from JSON files in the config/ directory with .env overrides.
    All file accessors are cached via @lru_cache; the release-batch presets are
    not read here because they are hot-reloaded by core.derived_state.
    """

    _instance: Optional["ConfigLoader"] = None

    def __init__(self):
        self._config_dir = _CONFIG_DIR
        self._project_root = _PROJECT_ROOT

    @classmethod
    def get_instance(cls) -> "ConfigLoader":
        """Singleton accessor."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # ------------------------------------------------------------------
    # Core config file loaders (cached)
    # ------------------------------------------------------------------

    @lru_cache(maxsize=1)
    def get_app_config(self) -> Dict[str, Any]:
        """Load general application settings (logging)."""
        return _load_json(self._config_dir / "app.json")

    @lru_cache(maxsize=1)
    def get_timing_config(self) -> Dict[str, Any]:
        """Load poll intervals and backoffs."""
        return _load_json(self._config_dir / "timing.json")

    @lru_cache(maxsize=1)
    def get_rpc_config(self) -> Dict[str, Any]:
        """Load JSON-RPC endpoint settings."""
        return _load_json(self._config_dir / "rpc.json")

    @lru_cache(maxsize=1)
    def get_storage_config(self) -> Dict[str, Any]:
        """Load database, deployer state and cursor locations."""
        return _load_json(self._config_dir / "storage.json")

    @lru_cache(maxsize=1)
    def get_pipelines_config(self) -> Dict[str, Any]:
        """Load pipeline definitions (contract sources, events, lookback)."""
        return _load_json(self._config_dir / "pipelines.json")

    @lru_cache(maxsize=16)
    def get_config_file(self, config_name: str) -> Dict[str, Any]:
        """Load an arbitrary JSON config file from config/ directory."""
        return _load_json(self._config_dir / f"{config_name}.json")

    # ------------------------------------------------------------------
    # Resolved settings (env overrides win over JSON)
    # ------------------------------------------------------------------

    def get_rpc_url(self) -> str:
        return get_env_var(
            "RPC_URL",
            self.get_rpc_config().get("http_url", "http://press-rpc:8545"),
            str,
        )

    def get_db_path(self) -> Path:
        return _resolve_path(
            get_env_var(
                "INDEXER_DB_PATH",
                self.get_storage_config().get("db_path", "data/indexer.db"),
                str,
            )
        )

    def get_state_dir(self) -> Path:
        return _resolve_path(
            get_env_var(
                "INDEXER_STATE_DIR",
                self.get_storage_config().get("state_dir", "state"),
                str,
            )
        )

    def get_cursor_dir(self) -> Path:
        default = self.get_storage_config().get("cursor_dir")
        if default is None:
            return _resolve_path(get_env_var("INDEXER_CURSOR_DIR", str(self.get_state_dir()), str))
        return _resolve_path(get_env_var("INDEXER_CURSOR_DIR", default, str))

    def get_presets_paths(self) -> list[Path]:
        """Preset file candidates in priority order: env, deployer state, bundled default."""
        paths = []
        override = os.getenv("PRESETS_PATH")
        if override:
            paths.append(_resolve_path(override))
        paths.append(self.get_state_dir() / "proposal_presets.json")
        paths.append(self._config_dir / "proposal_presets.json")
        return paths

    def get_pipeline_specs(self) -> list[PipelineSpec]:
        """Typed pipeline definitions from pipelines.json, disabled ones included."""
        specs = []
        for entry in self.get_pipelines_config().get("pipelines", []):
            specs.append(
                PipelineSpec(
                    pipeline_id=entry["id"],
                    contracts=tuple(
                        ContractSource(file=c["file"], key=c.get("key"))
                        for c in entry.get("contracts", [])
                    ),
                    events=tuple(entry.get("events", [])),
                    lookback_blocks=entry.get("lookback_blocks", DEFAULT_LOOKBACK_BLOCKS),
                    enabled=entry.get("enabled", True),
                )
            )
        return specs

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def clear_cache(self) -> None:
        """Clear all cached configurations (useful for testing)."""
        for method_name in dir(self):
            method = getattr(self, method_name)
            if hasattr(method, "cache_clear"):
                method.cache_clear()


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------


def get_config() -> ConfigLoader:
    """Get the singleton ConfigLoader instance."""
    return ConfigLoader.get_instance()
