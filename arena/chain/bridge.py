"""
USDC payout pipeline: exchange -> Arbitrum -> cBridge -> BSC -> recipient.

Every hop re-reads balances instead of trusting the previous step, so a
pipeline interrupted at any point can be resumed by running it again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..core.config import Settings, get_settings
from ..core.errors import PayoutFailedError, PayoutPendingError
from ..traders.base import BaseTrader, TradeError
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

logger = logging.getLogger(__name__)

ARBITRUM_USDC_DECIMALS = 6
BSC_USDC_DECIMALS = 18

BRIDGE_BUFFER_PCT = 1.0   # covers bridge fees and slippage
BRIDGE_BUFFER_USD = 0.5
WITHDRAW_EXTRA_USD = 1.0  # exchange withdrawal fee
APPROVE_MULTIPLIER = 10

TRANSFER_CONFIRMATIONS = 3
BRIDGE_CONFIRMATIONS = 2
APPROVE_CONFIRMATIONS = 1

# Called with (raw_tx, tx_hash) after signing and before broadcast
SignedTxHook = Callable[[str, str], Awaitable[None]]


@dataclass
class PayoutResult:
    tx_hash: str
    chain: str = "bsc"
    bridged: bool = False


class BridgeService:
    """
    Moves USDC to BSC and pays recipients from the platform wallet.

    Usage:
        bridge = BridgeService(trader, arbitrum_client, bsc_client)
        result = await bridge.payout("0xabc...", 25.0)
    """

    def __init__(
        self,
        trader: BaseTrader,
        arbitrum: EvmClient,
        bsc: EvmClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.trader = trader
        self.arbitrum = arbitrum
        self.bsc = bsc
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock

    # =========================================================================
    # Balances
    # =========================================================================

    async def arbitrum_usdc_balance(self) -> float:
        raw = await self.arbitrum.erc20_balance(self.settings.arbitrum_usdc_address)
        return from_base_units(raw, ARBITRUM_USDC_DECIMALS)

    async def bsc_usdc_balance(self) -> float:
        raw = await self.bsc.erc20_balance(self.settings.bsc_usdc_address)
        return from_base_units(raw, BSC_USDC_DECIMALS)

    async def _read_balance(self, read: Callable[[], Awaitable[float]], stage: str) -> float:
        try:
            return await read()
        except ChainError as e:
            raise PayoutPendingError(stage, f"Balance read failed: {e.message}") from e

    async def _wait_for_balance(
        self,
        read: Callable[[], Awaitable[float]],
        target: float,
        timeout: float,
        poll: float,
        stage: str,
    ) -> float:
        deadline = self._clock() + timeout
        while True:
            try:
                balance = await read()
            except ChainError as e:
                logger.warning(f"[{stage}] balance read failed, retrying: {e}")
                balance = 0.0
            if balance >= target:
                return balance
            if self._clock() >= deadline:
                raise PayoutPendingError(
                    stage,
                    f"Timed out after {timeout:.0f}s waiting for {target:.2f} USDC "
                    f"(have {balance:.2f})",
                )
            await self._sleep(poll)

    # =========================================================================
    # Hops
    # =========================================================================

    async def withdraw_from_exchange(self, amount: float) -> None:
        """Withdraw USDC from the exchange to the platform's Arbitrum address."""
        logger.info(f"Withdrawing {amount:.2f} USDC from exchange to Arbitrum")
        try:
            await self.trader.withdraw(amount, self.arbitrum.address)
        except TradeError as e:
            raise PayoutFailedError("withdraw", f"Exchange withdrawal failed: {e.message}") from e

    async def wait_for_arbitrum_funds(self, target: float) -> float:
        return await self._wait_for_balance(
            self.arbitrum_usdc_balance,
            target,
            self.settings.source_funds_timeout,
            self.settings.source_funds_poll,
            "arbitrum_funds",
        )

    async def wait_for_bsc_funds(self, target: float) -> float:
        return await self._wait_for_balance(
            self.bsc_usdc_balance,
            target,
            self.settings.bridge_timeout,
            self.settings.bridge_poll,
            "bridge",
        )

    async def _send_and_confirm(
        self,
        client: EvmClient,
        to: str,
        data: str,
        confirmations: int,
        stage: str,
        on_signed: Optional[SignedTxHook] = None,
    ) -> str:
        try:
            raw_tx, tx_hash = await client.sign_transaction(to, data)
        except ChainError as e:
            raise PayoutFailedError(stage, f"Could not sign {client.name} transaction: {e.message}") from e
        if on_signed is not None:
            await on_signed(raw_tx, tx_hash)
        try:
            await client.send_raw_transaction(raw_tx)
        except ChainError as e:
            # The node may have accepted it before the error surfaced
            raise PayoutPendingError(stage, f"Broadcast of {tx_hash} unconfirmed: {e.message}") from e
        return await self.confirm(client, tx_hash, confirmations, stage)

    async def confirm(
        self,
        client: EvmClient,
        tx_hash: str,
        confirmations: int,
        stage: str,
    ) -> str:
        """Wait for a receipt; a timeout leaves the tx in flight."""
        try:
            receipt = await client.wait_for_receipt(
                tx_hash,
                timeout=self.settings.receipt_timeout,
                confirmations=confirmations,
            )
        except ChainTimeoutError as e:
            raise PayoutPendingError(stage, f"{tx_hash} not confirmed yet: {e.message}") from e
        except ChainError as e:
            raise PayoutPendingError(stage, f"Receipt lookup for {tx_hash} failed: {e.message}") from e
        if not client.receipt_succeeded(receipt):
            raise PayoutFailedError(stage, f"Transaction {tx_hash} reverted")
        return tx_hash

    async def ensure_allowance(self, amount: int) -> None:
        token = self.settings.arbitrum_usdc_address
        spender = self.settings.cbridge_address
        try:
            current = await self.arbitrum.erc20_allowance(token, spender)
        except ChainError as e:
            raise PayoutPendingError("approve", f"Allowance read failed: {e.message}") from e
        if current >= amount:
            return
        logger.info("Approving cBridge to spend Arbitrum USDC")
        await self._send_and_confirm(
            self.arbitrum,
            token,
            erc20_approve_data(spender, amount * APPROVE_MULTIPLIER),
            APPROVE_CONFIRMATIONS,
            "approve",
        )

    async def bridge_to_bsc(self, amount: float) -> str:
        """Send USDC through cBridge to our own BSC address."""
        raw_amount = to_base_units(amount, ARBITRUM_USDC_DECIMALS)
        await self.ensure_allowance(raw_amount)
        data = encode_call(
            "send(address,address,uint256,uint64,uint64,uint32)",
            ["address", "address", "uint256", "uint64", "uint64", "uint32"],
            [
                self.bsc.address,
                self.settings.arbitrum_usdc_address,
                raw_amount,
                self.settings.bsc_chain_id,
                int(time.time() * 1000),
                self.settings.bridge_max_slippage,
            ],
        )
        logger.info(f"Bridging {amount:.2f} USDC Arbitrum -> BSC")
        return await self._send_and_confirm(
            self.arbitrum,
            self.settings.cbridge_address,
            data,
            BRIDGE_CONFIRMATIONS,
            "bridge",
        )

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def ensure_bsc_funds(self, amount: float) -> bool:
        """
        Make sure the BSC wallet holds at least amount USDC.

        Returns True when a bridge transfer was needed.
        """
        if await self._read_balance(self.bsc_usdc_balance, "bridge") >= amount:
            return False

        bridge_amount = amount * (1 + BRIDGE_BUFFER_PCT / 100) + BRIDGE_BUFFER_USD
        arbitrum_balance = await self._read_balance(self.arbitrum_usdc_balance, "arbitrum_funds")
        if arbitrum_balance < bridge_amount:
            deficit = bridge_amount - arbitrum_balance + WITHDRAW_EXTRA_USD
            await self.withdraw_from_exchange(deficit)
            await self.wait_for_arbitrum_funds(bridge_amount)

        await self.bridge_to_bsc(bridge_amount)
        await self.wait_for_bsc_funds(amount)
        return True

    async def transfer(
        self,
        to_address: str,
        amount: float,
        on_signed: Optional[SignedTxHook] = None,
    ) -> str:
        """ERC-20 transfer on BSC; checks the balance right before signing."""
        balance = await self._read_balance(self.bsc_usdc_balance, "transfer")
        if balance < amount:
            raise PayoutFailedError(
                "transfer", f"Insufficient BSC USDC: have {balance:.2f}, need {amount:.2f}"
            )
        return await self._send_and_confirm(
            self.bsc,
            self.settings.bsc_usdc_address,
            erc20_transfer_data(to_address, to_base_units(amount, BSC_USDC_DECIMALS)),
            TRANSFER_CONFIRMATIONS,
            "transfer",
            on_signed=on_signed,
        )

    async def payout(
        self,
        to_address: str,
        amount: float,
        on_signed: Optional[SignedTxHook] = None,
    ) -> PayoutResult:
        bridged = await self.ensure_bsc_funds(amount)
        tx_hash = await self.transfer(to_address, amount, on_signed=on_signed)
        logger.info(f"Paid {amount:.2f} USDC to {to_address} on BSC: {tx_hash}")
        return PayoutResult(tx_hash=tx_hash, chain="bsc", bridged=bridged)

    async def close(self) -> None:
        await asyncio.gather(self.arbitrum.close(), self.bsc.close())
