"""
Minimal EVM JSON-RPC client.

Reads balances/allowances, signs transactions locally with eth-account and
broadcasts raw transactions over httpx. Every RPC goes through the chain's
circuit breaker and an explicit timeout.
"""

import asyncio
import logging
import time
from decimal import ROUND_DOWN, Decimal
from typing import Any, Optional

import httpx
from eth_abi import decode, encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from ..core.circuit_breaker import CircuitBreakerOpen, get_chain_circuit_breaker
from ..core.retry_utils import retry_async

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """RPC or transaction failure on a chain"""

    def __init__(self, message: str, chain: str = "", code: Optional[int] = None):
        self.message = message
        self.chain = chain
        self.code = code
        super().__init__(message)


class ChainTimeoutError(ChainError):
    """A bounded wait (receipt, confirmations) ran out"""


# Broadcast errors meaning this exact transaction was already seen
_ALREADY_KNOWN = ("already known", "known transaction", "already imported")
_NONCE_USED = ("nonce too low", "nonce has already been used")


def to_base_units(amount: float, decimals: int) -> int:
    return int((Decimal(str(amount)) * (Decimal(10) ** decimals)).to_integral_value(ROUND_DOWN))


def from_base_units(amount: int, decimals: int) -> float:
    return float(Decimal(amount) / (Decimal(10) ** decimals))


def encode_call(signature: str, types: list[str], args: list[Any]) -> str:
    """ABI-encode a call as 0x-prefixed calldata."""
    return "0x" + (function_signature_to_4byte_selector(signature) + encode(types, args)).hex()


def erc20_transfer_data(to: str, amount: int) -> str:
    return encode_call("transfer(address,uint256)", ["address", "uint256"], [to_checksum_address(to), amount])


def erc20_approve_data(spender: str, amount: int) -> str:
    return encode_call("approve(address,uint256)", ["address", "uint256"], [to_checksum_address(spender), amount])


class EvmClient:
    """
    Usage:
        bsc = EvmClient("bsc", settings.bsc_rpc_url, private_key)
        raw, tx_hash = await bsc.sign_transaction(token, erc20_transfer_data(to, amount))
        await bsc.send_raw_transaction(raw)
        receipt = await bsc.wait_for_receipt(tx_hash, timeout=60, confirmations=3)
        await bsc.close()
    """

    def __init__(
        self,
        name: str,
        rpc_url: str,
        private_key: str,
        timeout: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.rpc_url = rpc_url
        self._account = Account.from_key(private_key)
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._breaker = get_chain_circuit_breaker(name)
        self._chain_id: Optional[int] = None
        self._request_id = 0

    @property
    def address(self) -> str:
        return self._account.address

    async def close(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # JSON-RPC
    # =========================================================================

    async def _post(self, payload: dict) -> Any:
        response = await self._client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            err = body["error"]
            raise ChainError(err.get("message", str(err)), self.name, err.get("code"))
        return body.get("result")

    async def rpc(self, method: str, params: Optional[list] = None) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        try:
            return await self._breaker.call(self._post, payload)
        except CircuitBreakerOpen as e:
            raise ChainError(str(e), self.name) from e
        except httpx.HTTPError as e:
            raise ChainError(f"{method} failed: {e}", self.name) from e

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self.rpc("eth_chainId"), 16)
        return self._chain_id

    async def block_number(self) -> int:
        return int(await self.rpc("eth_blockNumber"), 16)

    async def call(self, to: str, data: str) -> bytes:
        # Only reads are retried
        result = await retry_async(
            self.rpc,
            "eth_call",
            [{"to": to, "data": data}, "latest"],
            max_attempts=3,
            base_delay=0.5,
            retry_on=(ChainError,),
        )
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)

    # =========================================================================
    # ERC-20 reads
    # =========================================================================

    async def erc20_balance(self, token: str, owner: Optional[str] = None) -> int:
        data = encode_call("balanceOf(address)", ["address"], [to_checksum_address(owner or self.address)])
        (balance,) = decode(["uint256"], await self.call(token, data))
        return balance

    async def erc20_allowance(self, token: str, spender: str) -> int:
        data = encode_call(
            "allowance(address,address)",
            ["address", "address"],
            [self.address, to_checksum_address(spender)],
        )
        (allowance,) = decode(["uint256"], await self.call(token, data))
        return allowance

    # =========================================================================
    # Transactions
    # =========================================================================

    async def sign_transaction(self, to: str, data: str, value: int = 0) -> tuple[str, str]:
        """Build and sign a legacy transaction; returns (raw tx hex, tx hash)."""
        nonce = int(await self.rpc("eth_getTransactionCount", [self.address, "pending"]), 16)
        gas_price = int(await self.rpc("eth_gasPrice"), 16)
        estimate = int(
            await self.rpc(
                "eth_estimateGas",
                [{"from": self.address, "to": to, "data": data, "value": hex(value)}],
            ),
            16,
        )
        tx = {
            "to": to_checksum_address(to),
            "data": data,
            "value": value,
            "nonce": nonce,
            "gas": int(estimate * 1.2),
            "gasPrice": gas_price,
            "chainId": await self.chain_id(),
        }
        signed = self._account.sign_transaction(tx)
        return "0x" + signed.raw_transaction.hex().removeprefix("0x"), "0x" + signed.hash.hex().removeprefix("0x")

    async def send_raw_transaction(self, raw_tx: str) -> str:
        """
        Broadcast a signed transaction.

        Returns "sent", "known" (already in the mempool or mined) or
        "nonce_used" (the nonce was consumed, possibly by this tx).
        """
        try:
            await self.rpc("eth_sendRawTransaction", [raw_tx])
            return "sent"
        except ChainError as e:
            message = e.message.lower()
            if any(s in message for s in _ALREADY_KNOWN):
                return "known"
            if any(s in message for s in _NONCE_USED):
                return "nonce_used"
            raise

    async def get_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self.rpc("eth_getTransactionReceipt", [tx_hash])

    async def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float = 60.0,
        confirmations: int = 1,
        poll_interval: float = 2.0,
    ) -> dict:
        """
        Wait until tx_hash is mined with the requested confirmations.

        Raises ChainTimeoutError when the deadline passes first.
        """
        deadline = time.monotonic() + timeout
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt and receipt.get("blockNumber"):
                mined_at = int(receipt["blockNumber"], 16)
                if await self.block_number() - mined_at + 1 >= confirmations:
                    return receipt
            if time.monotonic() >= deadline:
                raise ChainTimeoutError(
                    f"Timed out after {timeout:.0f}s waiting for {tx_hash}", self.name
                )
            await asyncio.sleep(poll_interval)

    @staticmethod
    def receipt_succeeded(receipt: dict) -> bool:
        return int(receipt.get("status", "0x0"), 16) == 1
