"""
Configuration schema validation for the Press chain indexer.

Validates that all required config files exist and contain required keys,
and that every pipeline subscribes only to events the decoder knows.
Run at startup to fail fast on misconfiguration.
"""

from typing import Any

from config.loader import get_config
from core.event_decoder import EVENT_RULES


class ConfigValidationError(ValueError):
    """Raised when a required config key is missing or invalid."""

    pass


def _check_keys(config: dict[str, Any], required_keys: list[str], config_name: str) -> list[str]:
    """Check that all required keys exist in a config dict. Returns list of missing keys."""
    missing = []
    for key in required_keys:
        parts = key.split(".")
        current = config
        for part in parts:
            if not isinstance(current, dict) or part not in current:
                missing.append(key)
                break
            current = current[part]
    return missing


def validate_pipelines_config(config: dict[str, Any]) -> list[str]:
    """Validate pipelines.json: ids unique, contracts and events present, events known."""
    errors = _check_keys(config, ["pipelines"], "pipelines.json")
    if errors:
        return errors

    pipelines = config.get("pipelines")
    if not isinstance(pipelines, list) or len(pipelines) == 0:
        return ["pipelines: must be a non-empty list"]

    seen: set[str] = set()
    for index, entry in enumerate(pipelines):
        if not isinstance(entry, dict):
            errors.append(f"pipelines[{index}]: must be an object")
            continue
        label = entry.get("id", f"pipelines[{index}]")
        errors.extend(f"{label}.{key}" for key in _check_keys(entry, ["id", "contracts", "events"], label))
        if label in seen:
            errors.append(f"{label}: duplicate pipeline id")
        seen.add(label)

        contracts = entry.get("contracts", [])
        if not isinstance(contracts, list) or len(contracts) == 0:
            errors.append(f"{label}.contracts: must be a non-empty list")
        else:
            for c_index, contract in enumerate(contracts):
                if not isinstance(contract, dict) or not contract.get("file"):
                    errors.append(f"{label}.contracts[{c_index}].file")

        events = entry.get("events", [])
        if not isinstance(events, list) or len(events) == 0:
            errors.append(f"{label}.events: must be a non-empty list")
        else:
            for name in events:
                if name not in EVENT_RULES:
                    errors.append(f"{label}.events: unknown event {name}")

        lookback = entry.get("lookback_blocks", 0)
        if not isinstance(lookback, int) or lookback < 0:
            errors.append(f"{label}.lookback_blocks: must be a non-negative integer")
    return errors


def validate_timing_config(config: dict[str, Any]) -> list[str]:
    """Validate timing.json has required fields."""
    return _check_keys(
        config,
        [
            "pipelines.poll_interval_seconds",
            "pipelines.idle_backoff_seconds",
        ],
        "timing.json",
    )


def validate_rpc_config(config: dict[str, Any]) -> list[str]:
    """Validate rpc.json has required fields."""
    errors = _check_keys(config, ["http_url", "timeout_seconds", "max_block_range"], "rpc.json")
    if not errors:
        max_range = config.get("max_block_range")
        if not isinstance(max_range, int) or max_range < 1:
            errors.append("max_block_range: must be a positive integer")
    return errors


def validate_storage_config(config: dict[str, Any]) -> list[str]:
    """Validate storage.json has required fields."""
    return _check_keys(config, ["db_path", "state_dir"], "storage.json")


def validate_all_configs() -> None:
    """
    Validate all config files. Raises ConfigValidationError with details
    if any required keys are missing.
    """
    loader = get_config()
    all_errors: dict[str, list[str]] = {}

    validators = {
        "pipelines.json": (loader.get_pipelines_config, validate_pipelines_config),
        "timing.json": (loader.get_timing_config, validate_timing_config),
        "rpc.json": (loader.get_rpc_config, validate_rpc_config),
        "storage.json": (loader.get_storage_config, validate_storage_config),
    }

    for config_name, (loader_fn, validator_fn) in validators.items():
        config = loader_fn()
        if not config:
            all_errors[config_name] = ["Config file is empty or not found"]
            continue
        errors = validator_fn(config)
        if errors:
            all_errors[config_name] = errors

    if all_errors:
        lines = ["Configuration validation failed:"]
        for config_name, errors in all_errors.items():
            lines.append(f"\n  {config_name}:")
            for error in errors:
                lines.append(f"    - {error}")
        raise ConfigValidationError("\n".join(lines))
