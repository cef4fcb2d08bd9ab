from chain.contract_registry import ContractRegistry
from chain.rpc_client import RpcClient, RpcClientError

__all__ = [
    "ContractRegistry",
    "RpcClient",
    "RpcClientError",
]
