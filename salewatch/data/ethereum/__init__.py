from salewatch.data.ethereum.provider import (
    EthereumRpcProvider,
    EthereumSettings,
    MockChainProvider,
    get_chain_client,
    run_simulation,
    simulate_block,
)
from salewatch.data.ethereum.request_factory import EthRequestFactory

__all__ = [
    "EthRequestFactory",
    "EthereumRpcProvider",
    "EthereumSettings",
    "MockChainProvider",
    "get_chain_client",
    "run_simulation",
    "simulate_block",
]
