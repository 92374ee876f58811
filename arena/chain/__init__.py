"""EVM chain access and the cross-chain payout pipeline."""

from .bridge import BridgeService, PayoutResult
from .client import (
    ChainError,
    ChainTimeoutError,
    EvmClient,
    encode_call,
    erc20_approve_data,
    erc20_transfer_data,
    from_base_units,
    to_base_units,
)

__all__ = [
    "BridgeService",
    "PayoutResult",
    "ChainError",
    "ChainTimeoutError",
    "EvmClient",
    "encode_call",
    "erc20_approve_data",
    "erc20_transfer_data",
    "from_base_units",
    "to_base_units",
]
