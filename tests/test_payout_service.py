"""
Tests for the USDC payout pipeline: BridgeService hops and PayoutService
request handling. Chain clients are mocked at the EvmClient boundary.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from arena.chain import BridgeService, ChainError, ChainTimeoutError, EvmClient
from arena.chain.client import to_base_units
from arena.core.errors import AppError, PayoutFailedError, PayoutPendingError
from arena.db.models import TransactionDB, UserDB
from arena.services.ledger_service import TxType
from arena.services.payout_service import PayoutService
from arena.traders.base import TradeError

RECIPIENT = "0x" + "c3" * 20
MINED = {"status": "0x1", "blockNumber": "0x10"}


def _usdc(amount: float, decimals: int) -> int:
    return to_base_units(amount, decimals)


def _chain_client(name: str, address: str) -> MagicMock:
    client = MagicMock()
    client.name = name
    client.address = address
    client.erc20_balance = AsyncMock(return_value=0)
    client.erc20_allowance = AsyncMock(return_value=0)
    client.sign_transaction = AsyncMock(return_value=("0xraw", "0xhash"))
    client.send_raw_transaction = AsyncMock(return_value="sent")
    client.wait_for_receipt = AsyncMock(return_value=MINED)
    client.get_receipt = AsyncMock(return_value=None)
    client.receipt_succeeded = EvmClient.receipt_succeeded
    client.close = AsyncMock()
    return client


@pytest.fixture
def arbitrum():
    return _chain_client("arbitrum", "0x" + "a0" * 20)


@pytest.fixture
def bsc():
    return _chain_client("bsc", "0x" + "b0" * 20)


@pytest.fixture
def bridge(mock_trader, arbitrum, bsc, settings):
    return BridgeService(mock_trader, arbitrum, bsc, settings, sleep=AsyncMock())


@pytest.mark.unit
class TestBridgeService:
    async def test_direct_transfer_when_bsc_is_funded(self, bridge, bsc, arbitrum, mock_trader):
        bsc.erc20_balance.return_value = _usdc(100, 18)

        result = await bridge.payout(RECIPIENT, 25.0)

        assert result.bridged is False
        assert result.tx_hash == "0xhash"
        mock_trader.withdraw.assert_not_awaited()
        arbitrum.sign_transaction.assert_not_awaited()
        bsc.wait_for_receipt.assert_awaited_once()
        assert bsc.wait_for_receipt.await_args.kwargs["confirmations"] == 3

    async def test_bridges_shortfall_through_exchange_withdrawal(
        self, bridge, bsc, arbitrum, mock_trader
    ):
        # $10 on BSC, nothing on Arbitrum; bridge amount is 50 * 1.01 + 0.5 = 51.0
        bsc.erc20_balance.side_effect = [_usdc(10, 18), _usdc(10, 18), _usdc(61, 18), _usdc(61, 18)]
        arbitrum.erc20_balance.side_effect = [0, _usdc(52, 6)]
        arbitrum.sign_transaction.side_effect = [("0xapprove", "0xh1"), ("0xbridge", "0xh2")]

        result = await bridge.payout(RECIPIENT, 50.0)

        assert result.bridged is True
        withdrawn, destination = mock_trader.withdraw.await_args.args
        assert withdrawn == pytest.approx(52.0)
        assert destination == arbitrum.address

        # approve then cBridge send, both on Arbitrum
        assert arbitrum.sign_transaction.await_count == 2
        approve_to, approve_data = arbitrum.sign_transaction.await_args_list[0].args
        assert approve_to == bridge.settings.arbitrum_usdc_address
        assert approve_data.startswith("0x095ea7b3")
        bridge_to, _ = arbitrum.sign_transaction.await_args_list[1].args
        assert bridge_to == bridge.settings.cbridge_address

        transfer_to, transfer_data = bsc.sign_transaction.await_args.args
        assert transfer_to == bridge.settings.bsc_usdc_address
        assert transfer_data.startswith("0xa9059cbb")

    async def test_existing_allowance_skips_approve(self, bridge, bsc, arbitrum):
        bsc.erc20_balance.side_effect = [0, _usdc(30, 18), _usdc(30, 18)]
        arbitrum.erc20_balance.return_value = _usdc(500, 6)
        arbitrum.erc20_allowance.return_value = _usdc(10_000, 6)

        await bridge.payout(RECIPIENT, 20.0)

        assert arbitrum.sign_transaction.await_count == 1

    async def test_bridge_timeout_is_pending(self, bridge, bsc, arbitrum, settings):
        settings.bridge_timeout = 0
        bsc.erc20_balance.return_value = 0
        arbitrum.erc20_balance.return_value = _usdc(500, 6)
        arbitrum.erc20_allowance.return_value = _usdc(10_000, 6)

        with pytest.raises(PayoutPendingError) as exc_info:
            await bridge.payout(RECIPIENT, 20.0)
        assert exc_info.value.stage == "bridge"

    async def test_reverted_transfer_fails(self, bridge, bsc):
        bsc.erc20_balance.return_value = _usdc(100, 18)
        bsc.wait_for_receipt.return_value = {"status": "0x0", "blockNumber": "0x10"}

        with pytest.raises(PayoutFailedError):
            await bridge.transfer(RECIPIENT, 25.0)

    async def test_receipt_timeout_is_pending(self, bridge, bsc):
        bsc.erc20_balance.return_value = _usdc(100, 18)
        bsc.wait_for_receipt.side_effect = ChainTimeoutError("slow", "bsc")

        with pytest.raises(PayoutPendingError):
            await bridge.transfer(RECIPIENT, 25.0)

    async def test_broadcast_error_after_signing_is_pending(self, bridge, bsc):
        bsc.erc20_balance.return_value = _usdc(100, 18)
        bsc.send_raw_transaction.side_effect = ChainError("connection reset", "bsc")
        on_signed = AsyncMock()

        with pytest.raises(PayoutPendingError):
            await bridge.transfer(RECIPIENT, 25.0, on_signed=on_signed)
        on_signed.assert_awaited_once_with("0xraw", "0xhash")

    async def test_failed_withdrawal_fails_payout(self, bridge, bsc, arbitrum, mock_trader):
        bsc.erc20_balance.return_value = 0
        arbitrum.erc20_balance.return_value = 0
        mock_trader.withdraw.side_effect = TradeError("withdrawals paused")

        with pytest.raises(PayoutFailedError) as exc_info:
            await bridge.payout(RECIPIENT, 20.0)
        assert exc_info.value.stage == "withdraw"

    async def test_balance_read_error_is_pending(self, bridge, bsc):
        bsc.erc20_balance.side_effect = ChainError("header not found", "bsc")

        with pytest.raises(PayoutPendingError) as exc_info:
            await bridge.payout(RECIPIENT, 20.0)
        assert exc_info.value.stage == "bridge"

    async def test_allowance_read_error_is_pending(self, bridge, bsc, arbitrum):
        bsc.erc20_balance.return_value = 0
        arbitrum.erc20_balance.return_value = _usdc(500, 6)
        arbitrum.erc20_allowance.side_effect = ChainError("rate limited", "arbitrum")

        with pytest.raises(PayoutPendingError) as exc_info:
            await bridge.payout(RECIPIENT, 20.0)
        assert exc_info.value.stage == "approve"
        arbitrum.sign_transaction.assert_not_awaited()

    async def test_transfer_balance_read_error_is_pending(self, bridge, bsc):
        bsc.erc20_balance.side_effect = ChainError("connection reset", "bsc")

        with pytest.raises(PayoutPendingError) as exc_info:
            await bridge.transfer(RECIPIENT, 25.0)
        assert exc_info.value.stage == "transfer"
        bsc.sign_transaction.assert_not_awaited()


@pytest.fixture
def mock_bridge():
    bridge = MagicMock()
    bridge.ensure_bsc_funds = AsyncMock(return_value=False)
    bridge.transfer = AsyncMock(return_value="0xhash")
    bridge.confirm = AsyncMock(return_value="0xhash")
    bridge.bsc = _chain_client("bsc", "0x" + "b0" * 20)
    return bridge


@pytest.fixture
def payouts(session_factory, mock_bridge):
    return PayoutService(session_factory, mock_bridge)


async def _balance(session_factory, user_id) -> float:
    async with session_factory() as session:
        return (await session.get(UserDB, user_id)).balance_usdt


@pytest.mark.unit
class TestPayoutRequests:
    async def test_create_debits_once_per_request_id(self, payouts, session_factory, test_user):
        first = await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-1")
        again = await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-1")

        assert first.status == "pending"
        assert again.id == first.id
        assert await _balance(session_factory, test_user.id) == 950.0

    async def test_invalid_address_rejected(self, payouts, test_user):
        with pytest.raises(AppError) as exc_info:
            await payouts.create_request(test_user.id, "not-an-address", 50.0)
        assert exc_info.value.status_code == 400

    async def test_request_id_of_another_user_conflicts(self, payouts, db_session, test_user):
        other = UserDB(wallet_address="0x" + "d4" * 20, referral_code="OTHER001", balance_usdt=100.0)
        db_session.add(other)
        await db_session.commit()
        await payouts.create_request(test_user.id, RECIPIENT, 10.0, request_id="shared")

        with pytest.raises(AppError) as exc_info:
            await payouts.create_request(other.id, RECIPIENT, 10.0, request_id="shared")
        assert exc_info.value.status_code == 409


@pytest.mark.unit
class TestPayoutProcessing:
    async def test_successful_payout(self, payouts, mock_bridge, test_user):
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-ok")

        request = await payouts.process("req-ok")

        assert request.status == "sent"
        assert request.tx_hash == "0xhash"
        assert request.attempts == 1
        assert request.completed_at is not None
        mock_bridge.ensure_bsc_funds.assert_awaited_once_with(50.0)

    async def test_retry_rebroadcasts_signed_transfer(self, payouts, mock_bridge, test_user):
        async def sign_then_stall(to_address, amount, on_signed=None):
            await on_signed("0xsigned", "0xtransfer")
            raise PayoutPendingError("transfer", "receipt timeout")

        mock_bridge.transfer.side_effect = sign_then_stall
        mock_bridge.bsc.send_raw_transaction.return_value = "known"
        mock_bridge.confirm.return_value = "0xtransfer"
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-retry")

        stalled = await payouts.process("req-retry")
        assert stalled.status == "sending"
        assert stalled.raw_tx == "0xsigned"
        assert stalled.error == "receipt timeout"

        done = await payouts.process("req-retry")

        assert done.status == "sent"
        assert done.tx_hash == "0xtransfer"
        assert done.attempts == 2
        # The second attempt reused the stored transaction instead of signing again
        mock_bridge.transfer.assert_awaited_once()
        mock_bridge.bsc.send_raw_transaction.assert_awaited_once_with("0xsigned")

    async def test_failed_payout_refunds(self, payouts, mock_bridge, session_factory, test_user):
        mock_bridge.transfer.side_effect = PayoutFailedError("transfer", "reverted")
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-fail")

        request = await payouts.process("req-fail")

        assert request.status == "failed"
        assert await _balance(session_factory, test_user.id) == 1000.0
        async with session_factory() as session:
            rows = (await session.execute(select(TransactionDB))).scalars().all()
        assert sorted((r.type, r.amount) for r in rows) == [
            (TxType.PAYOUT, -50.0),
            (TxType.PAYOUT_REFUND, 50.0),
        ]

    async def test_terminal_request_is_not_reprocessed(self, payouts, mock_bridge, test_user):
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-done")
        await payouts.process("req-done")

        again = await payouts.process("req-done")

        assert again.status == "sent"
        mock_bridge.transfer.assert_awaited_once()

    async def test_superseded_nonce_fails_and_refunds(
        self, payouts, mock_bridge, session_factory, test_user
    ):
        async def sign_then_stall(to_address, amount, on_signed=None):
            await on_signed("0xsigned", "0xtransfer")
            raise PayoutPendingError("transfer", "receipt timeout")

        mock_bridge.transfer.side_effect = sign_then_stall
        mock_bridge.bsc.send_raw_transaction.return_value = "nonce_used"
        mock_bridge.confirm.side_effect = PayoutPendingError("transfer", "not mined")
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-nonce")
        await payouts.process("req-nonce")

        request = await payouts.process("req-nonce")

        assert request.status == "failed"
        assert await _balance(session_factory, test_user.id) == 1000.0

    async def test_chain_read_error_keeps_request_resumable(
        self, session_factory, mock_trader, bsc, arbitrum, settings, test_user
    ):
        bsc.erc20_balance.side_effect = ChainError("header not found", "bsc")
        bridge = BridgeService(mock_trader, arbitrum, bsc, settings, sleep=AsyncMock())
        payouts = PayoutService(session_factory, bridge)
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="r1")

        stalled = await payouts.process("r1")

        assert stalled.status == "bridging"
        assert "header not found" in stalled.error
        assert await _balance(session_factory, test_user.id) == 950.0

        bsc.erc20_balance.side_effect = None
        bsc.erc20_balance.return_value = _usdc(100, 18)
        done = await payouts.process("r1")

        assert done.status == "sent"
        assert done.attempts == 2

    async def test_unexpected_chain_error_is_pending(self, payouts, mock_bridge, test_user):
        mock_bridge.ensure_bsc_funds.side_effect = ChainError("gateway timeout", "arbitrum")
        await payouts.create_request(test_user.id, RECIPIENT, 50.0, request_id="req-chain")

        request = await payouts.process("req-chain")

        assert request.status == "bridging"
        assert request.error == "gateway timeout"

    async def test_unknown_request(self, payouts):
        with pytest.raises(AppError) as exc_info:
            await payouts.process("missing")
        assert exc_info.value.status_code == 404
