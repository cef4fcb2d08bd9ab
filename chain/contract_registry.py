"""
Contract address discovery from deployer state files.

The deployer writes either ``<state_dir>/deploy.json`` (object keyed by
contract name) or one ``<state_dir>/<name>_address.txt`` per contract. Files
may appear after the indexer starts, so they are re-read on every call.
"""

from __future__ import annotations

import json
from pathlib import Path

from web3 import Web3

from indexer_logging.logger_manager import setup_module_logger
from shared.constants import ZERO_ADDRESS
from shared.types import ContractSource


class ContractRegistry:
    """Resolves a pipeline's contract sources to checksummed addresses."""

    def __init__(self, state_dir: Path | str) -> None:
        self._state_dir = Path(state_dir)
        self._logger = setup_module_logger(
            "contract_registry", "contract_registry.log", module_folder="Rpc_Client_Logs"
        )

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def resolve(self, sources: tuple[ContractSource, ...] | list[ContractSource]) -> list[str]:
        """
        Addresses for ``sources`` in declaration order, deduplicated.

        Missing files, missing keys, blank values, malformed and zero
        addresses are dropped. An empty result means the pipeline has nothing
        deployed to watch yet.
        """
        addresses: list[str] = []
        for source in sources:
            raw = self._read_source(source)
            address = self._normalize(raw, source)
            if address and address not in addresses:
                addresses.append(address)
        return addresses

    def _read_source(self, source: ContractSource) -> str | None:
        path = self._state_dir / source.file
        try:
            text = path.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self._logger.warning("Cannot read %s: %s", path, e)
            return None

        if source.key is None:
            return text

        try:
            doc = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            self._logger.warning("Invalid JSON in %s: %s", path, e)
            return None
        if not isinstance(doc, dict):
            return None
        value = doc.get(source.key)
        return value if isinstance(value, str) else None

    def _normalize(self, raw: str | None, source: ContractSource) -> str | None:
        if not raw:
            return None
        raw = raw.strip()
        if raw.lower() == ZERO_ADDRESS:
            return None
        if not Web3.is_address(raw.lower()):
            self._logger.warning("Ignoring malformed address %r from %s", raw, source.file)
            return None
        return Web3.to_checksum_address(raw.lower())
