"""
Tests for LedgerService free-balance moves.
"""

from uuid import uuid4

import pytest

from arena.core.errors import AppError, DuplicateTransactionError, InsufficientBalanceError
from arena.services.ledger_service import LedgerService, TxType


@pytest.fixture
def ledger(db_session):
    return LedgerService(db_session)


@pytest.mark.unit
class TestLedgerService:
    async def test_credit_records_snapshot(self, ledger, test_user):
        tx = await ledger.credit(test_user.id, 25.0, TxType.DEPOSIT, tx_hash="0xdep")

        assert tx.amount == 25.0
        assert tx.balance_before == 1000.0
        assert tx.balance_after == 1025.0
        assert test_user.balance_usdt == 1025.0

    async def test_debit_is_negative_entry(self, ledger, test_user):
        tx = await ledger.debit(test_user.id, 40.0, TxType.ENERGY_PURCHASE)

        assert tx.amount == -40.0
        assert tx.balance_after == 960.0

    async def test_debit_never_overdraws(self, ledger, test_user):
        with pytest.raises(InsufficientBalanceError):
            await ledger.debit(test_user.id, 1000.01, TxType.MINT)
        assert test_user.balance_usdt == 1000.0

    async def test_replayed_hash_rejected(self, ledger, test_user):
        await ledger.credit(test_user.id, 10.0, TxType.DEPOSIT, tx_hash="0xonce")

        with pytest.raises(DuplicateTransactionError):
            await ledger.ensure_unprocessed("0xonce")

    async def test_unknown_user(self, ledger):
        with pytest.raises(AppError) as exc_info:
            await ledger.credit(uuid4(), 10.0, TxType.DEPOSIT)
        assert exc_info.value.status_code == 404

    async def test_user_history(self, ledger, test_user):
        await ledger.credit(test_user.id, 10.0, TxType.DEPOSIT)
        await ledger.debit(test_user.id, 5.0, TxType.ENERGY_PURCHASE)

        history = await ledger.get_user_transactions(test_user.id)

        assert sorted(t.amount for t in history) == [-5.0, 10.0]
