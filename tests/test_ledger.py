"""Tests for the account ledger."""

import asyncio

import pytest

import ledger
from errors import InsufficientBalance


class TestAccounts:
    async def test_first_contact_creates_zero_balance(self, db):
        account = await ledger.get_or_create_account("42", "alice", "Alice")

        assert account.account_id == "42"
        assert account.balance == 0
        assert account.is_admin is False

    async def test_second_contact_keeps_balance(self, db):
        await ledger.get_or_create_account("42")
        await ledger.credit("42", 7)

        account = await ledger.get_or_create_account("42", "alice")

        assert account.balance == 7

    async def test_admin_flag_is_promoted(self, db):
        await ledger.get_or_create_account("1")
        account = await ledger.get_or_create_account("1", is_admin=True)

        assert account.is_admin is True

    async def test_unknown_account_has_zero_balance(self, db):
        assert await ledger.get_balance("nobody") == 0
        assert await ledger.get_account("nobody") is None

    async def test_list_accounts_sorted_by_balance(self, db):
        for uid, amount in (("a", 1), ("b", 9), ("c", 4)):
            await ledger.get_or_create_account(uid)
            await ledger.credit(uid, amount)

        accounts = await ledger.list_accounts()

        assert [a.account_id for a in accounts] == ["b", "c", "a"]


class TestDebitCredit:
    async def test_credit_then_debit(self, db):
        await ledger.get_or_create_account("42")
        await ledger.credit("42", 5)

        account = await ledger.try_debit("42", 3)

        assert account.balance == 2
        assert await ledger.get_balance("42") == 2

    async def test_debit_over_balance_leaves_balance_untouched(self, db):
        await ledger.credit("42", 2)

        with pytest.raises(InsufficientBalance) as exc:
            await ledger.try_debit("42", 3)

        assert exc.value.required == 3
        assert exc.value.available == 2
        assert await ledger.get_balance("42") == 2

    async def test_debit_unknown_account(self, db):
        with pytest.raises(InsufficientBalance) as exc:
            await ledger.try_debit("ghost", 1)
        assert exc.value.available == 0

    async def test_debit_whole_balance_reaches_zero(self, db):
        await ledger.credit("42", 4)
        account = await ledger.try_debit("42", 4)
        assert account.balance == 0

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    async def test_rejects_non_positive_or_non_int_amounts(self, db, amount):
        with pytest.raises(ValueError):
            await ledger.try_debit("42", amount)
        with pytest.raises(ValueError):
            await ledger.credit("42", amount)

    async def test_concurrent_debits_never_overspend(self, db):
        await ledger.credit("42", 3)

        results = await asyncio.gather(
            *(ledger.try_debit("42", 1) for _ in range(10)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, ledger.Account)]
        rejections = [r for r in results if isinstance(r, InsufficientBalance)]
        assert len(successes) == 3
        assert len(rejections) == 7
        assert await ledger.get_balance("42") == 0
