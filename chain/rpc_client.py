"""
JSON-RPC 2.0 HTTP client for the Press chain.

Only the two calls the indexer needs: ``eth_blockNumber`` and ``eth_getLogs``.
Every failure mode surfaces as ``RpcClientError`` so pipelines can treat it
uniformly as "retry the same range next tick".

Usage:
    client = RpcClient()
    head = await client.head()
    logs = await client.get_logs([addr], [topic0], 100, 200)
    await client.close()
"""

from __future__ import annotations

import itertools
from typing import Any

import aiohttp

from config.loader import get_config
from indexer_logging.logger_manager import setup_module_logger
from shared.constants import DEFAULT_RPC_TIMEOUT_SECONDS
from shared.types import RawLog


class RpcClientError(Exception):
    """Raised when a JSON-RPC call fails at the transport, HTTP or protocol level."""


def _parse_quantity(value: Any, field: str) -> int:
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise RpcClientError(f"{field}: expected 0x quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError as e:
        raise RpcClientError(f"{field}: invalid hex quantity {value!r}") from e


def _parse_data(value: Any) -> bytes:
    if not isinstance(value, str) or not value.startswith(("0x", "0X")):
        raise RpcClientError(f"data: expected 0x hex, got {value!r}")
    try:
        return bytes.fromhex(value[2:])
    except ValueError as e:
        raise RpcClientError(f"data: invalid hex {value[:20]!r}") from e


def _parse_log(entry: Any) -> RawLog:
    if not isinstance(entry, dict):
        raise RpcClientError(f"log entry is not an object: {entry!r}")
    try:
        topics = entry["topics"]
        if not isinstance(topics, list):
            raise RpcClientError("topics is not a list")
        return RawLog(
            address=str(entry["address"]),
            topics=tuple(str(t).lower() for t in topics),
            data=_parse_data(entry.get("data", "0x")),
            block_number=_parse_quantity(entry["blockNumber"], "blockNumber"),
            tx_hash=str(entry["transactionHash"]).lower(),
            log_index=_parse_quantity(entry["logIndex"], "logIndex"),
        )
    except KeyError as e:
        raise RpcClientError(f"log entry missing field {e}") from e


class RpcClient:
    """
    Async JSON-RPC client over a lazily created aiohttp session.

    Request ids increment per call. The session is owned by the client unless
    one is injected.
    """

    def __init__(
        self,
        url: str | None = None,
        session: aiohttp.ClientSession | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        cfg = get_config()
        rpc_cfg = cfg.get_rpc_config()

        self._url = url or cfg.get_rpc_url()
        self._timeout: float = (
            timeout_seconds
            if timeout_seconds is not None
            else rpc_cfg.get("timeout_seconds", DEFAULT_RPC_TIMEOUT_SECONDS)
        )
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

        self._logger = setup_module_logger(
            "rpc_client", "rpc_client.log", module_folder="Rpc_Client_Logs"
        )

    @property
    def url(self) -> str:
        return self._url

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, params: list[Any]) -> Any:
        """POST one JSON-RPC request and return its ``result`` member."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        session = await self._get_session()
        try:
            async with session.post(self._url, json=payload) as resp:
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise RpcClientError(f"{method}: HTTP {resp.status}: {body[:200]}")
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise RpcClientError(f"{method}: malformed JSON response") from e
        except (aiohttp.ClientError, TimeoutError) as e:
            self._logger.warning("RPC %s to %s failed: %s", method, self._url, e)
            raise RpcClientError(f"{method}: transport error: {e}") from e

        if not isinstance(body, dict):
            raise RpcClientError(f"{method}: response is not a JSON object")
        if body.get("error") is not None:
            error = body["error"]
            if isinstance(error, dict):
                raise RpcClientError(
                    f"{method}: RPC error {error.get('code')}: {error.get('message')}"
                )
            raise RpcClientError(f"{method}: RPC error {error!r}")
        if "result" not in body:
            raise RpcClientError(f"{method}: response has neither result nor error")
        return body["result"]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def head(self) -> int:
        """Latest block number."""
        result = await self._call("eth_blockNumber", [])
        return _parse_quantity(result, "eth_blockNumber")

    async def get_logs(
        self,
        addresses: list[str],
        topic0_set: list[str],
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        """
        Logs emitted by any of ``addresses`` in ``[from_block, to_block]``
        whose topic0 is one of ``topic0_set``.
        """
        params = {
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
            "address": list(addresses),
            "topics": [list(topic0_set)],
        }
        result = await self._call("eth_getLogs", [params])
        if not isinstance(result, list):
            raise RpcClientError(f"eth_getLogs: expected list, got {type(result).__name__}")
        logs = [_parse_log(entry) for entry in result]
        self._logger.debug(
            "eth_getLogs [%d, %d] over %d address(es): %d log(s)",
            from_block,
            to_block,
            len(addresses),
            len(logs),
        )
        return logs
