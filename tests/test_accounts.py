"""
Test suite for the account ledger calculator

Balances are folds over the voucher history, so besides the arithmetic the
tests check that CONTRA transfers move money exactly once and that the
result never depends on the order vouchers arrive in.
"""

import itertools
import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_ledger.accounts import (
    CASH, JOURNAL, AccountRegistry, AccountStatus, BankAccount, Category, Payment,
    PaymentCategory, PaymentType, VoucherType, compute_account_balance,
    account_statement, compute_account_balances, general_ledger
)
from lending_ledger.exceptions import ValidationError


NOW = datetime(2025, 3, 15, 10, 0, tzinfo=timezone.utc)


def make_payment(payment_id, type=PaymentType.IN, amount="100", mode=CASH, voucher_type=None, **kwargs):
    if voucher_type is None:
        voucher_type = VoucherType.RECEIPT if type == PaymentType.IN else VoucherType.PAYMENT
    return Payment(
        id=payment_id,
        created_at=kwargs.pop('created_at', NOW),
        updated_at=NOW,
        type=type,
        voucher_type=voucher_type,
        mode=mode,
        amount=Decimal(amount),
        source_id=kwargs.pop('source_id', "CUST001"),
        source_name=kwargs.pop('source_name', "Ravi Traders"),
        category=kwargs.pop('category', "GENERAL"),
        date=kwargs.pop('date', date(2025, 3, 15)),
        **kwargs
    )


def make_bank(bank_id, opening="0", status=AccountStatus.ACTIVE):
    return BankAccount(
        id=bank_id, created_at=NOW, updated_at=NOW,
        name=f"{bank_id} Bank", opening_balance=Decimal(opening), status=status
    )


class TestComputeAccountBalance:
    """Test the balance fold"""

    def test_cash_in_then_out(self):
        """Opening 1000, receive 500, pay 200"""
        opening = {CASH: Decimal('1000')}
        received = make_payment("P1", PaymentType.IN, "500")

        assert compute_account_balance([received], opening, CASH) == Decimal('1500')

        paid = make_payment("P2", PaymentType.OUT, "200")
        assert compute_account_balance([received, paid], opening, CASH) == Decimal('1300')

    def test_missing_opening_balance_starts_at_zero(self):
        payments = [make_payment("P1", PaymentType.IN, "250", mode="CUB")]
        assert compute_account_balance(payments, {}, "CUB") == Decimal('250')

    def test_only_matching_account_counts(self):
        payments = [
            make_payment("P1", PaymentType.IN, "500", mode=CASH),
            make_payment("P2", PaymentType.IN, "700", mode="CUB"),
        ]
        assert compute_account_balance(payments, {}, CASH) == Decimal('500')
        assert compute_account_balance(payments, {}, "CUB") == Decimal('700')
        assert compute_account_balance(payments, {}, "KVB") == Decimal('0')

    def test_contra_moves_money_once(self):
        """A transfer debits its source and credits its target, nothing else"""
        opening = {CASH: Decimal('1000'), "KVB": Decimal('0')}
        transfer = make_payment(
            "C1", PaymentType.OUT, "300", mode=CASH,
            voucher_type=VoucherType.CONTRA, target_mode="KVB", category="TRANSFER"
        )

        balances = compute_account_balances([transfer], opening, [CASH, "KVB"])

        assert balances[CASH] == Decimal('700')
        assert balances["KVB"] == Decimal('300')
        assert sum(balances.values()) == Decimal('1000')

    def test_journal_entries_do_not_touch_cash(self):
        entry = make_payment("J1", PaymentType.IN, "900", mode=JOURNAL, voucher_type=VoucherType.JOURNAL)
        assert compute_account_balance([entry], {CASH: Decimal('100')}, CASH) == Decimal('100')

    def test_order_independence(self):
        """Every permutation of the history gives the same balances"""
        payments = [
            make_payment("P1", PaymentType.IN, "500", mode=CASH),
            make_payment("P2", PaymentType.OUT, "120.50", mode=CASH),
            make_payment("P3", PaymentType.IN, "999.99", mode="KVB"),
            make_payment("P4", PaymentType.OUT, "300", mode=CASH, voucher_type=VoucherType.CONTRA,
                         target_mode="KVB", category="TRANSFER"),
            make_payment("P5", PaymentType.OUT, "45", mode="KVB"),
            make_payment("P6", PaymentType.OUT, "75", mode="KVB", voucher_type=VoucherType.CONTRA,
                         target_mode=CASH, category="TRANSFER"),
        ]
        opening = {CASH: Decimal('1000'), "KVB": Decimal('250')}
        expected_cash = compute_account_balance(payments, opening, CASH)
        expected_kvb = compute_account_balance(payments, opening, "KVB")

        for ordering in itertools.permutations(payments):
            assert compute_account_balance(ordering, opening, CASH) == expected_cash
            assert compute_account_balance(ordering, opening, "KVB") == expected_kvb

        assert expected_cash == Decimal('1000') + Decimal('500') - Decimal('120.50') - Decimal('300') + Decimal('75')
        assert expected_kvb == Decimal('250') + Decimal('999.99') + Decimal('300') - Decimal('45') - Decimal('75')


class TestPaymentValidation:
    """Test voucher construction rules"""

    def test_contra_to_same_account_rejected(self):
        with pytest.raises(ValidationError, match="must differ"):
            make_payment("C1", PaymentType.OUT, "100", mode=CASH,
                         voucher_type=VoucherType.CONTRA, target_mode=CASH)

    def test_contra_requires_target(self):
        with pytest.raises(ValidationError, match="needs a target account"):
            make_payment("C1", PaymentType.OUT, "100", voucher_type=VoucherType.CONTRA)

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError, match="cannot be negative"):
            make_payment("P1", amount="-1")

    def test_applies_to_invoice_only_for_receipts(self):
        assert make_payment("P1", PaymentType.IN, invoice_id="INV1").applies_to_invoice
        assert not make_payment("P2", PaymentType.OUT, invoice_id="INV1").applies_to_invoice
        assert not make_payment("P3", PaymentType.IN).applies_to_invoice

    def test_round_trip_through_dict(self):
        payment = make_payment("P1", PaymentType.IN, "1234.56", category="CUSTOM:Festival Fund",
                               invoice_id="INV1", notes="March royalty")
        data = payment.to_dict()

        assert data['category'] == "CUSTOM:Festival Fund"
        assert data['amount'] == "1234.56"
        assert Payment.from_dict(data) == payment


class TestCategory:
    """Test the category registry"""

    def test_known_categories(self):
        category = Category.parse("royalty")
        assert category.code == "ROYALTY"
        assert category.is_(PaymentCategory.ROYALTY)
        assert not category.custom

    def test_investment_categories(self):
        assert Category.parse("INVESTMENT_FD").code == "INVESTMENT_FD"

    def test_custom_category_is_explicit(self):
        category = Category.custom_category("FITO6")
        assert category.custom
        assert str(category) == "CUSTOM:FITO6"
        assert not category.is_(PaymentCategory.GENERAL)

    def test_unknown_category_rejected(self):
        with pytest.raises(ValidationError, match="Unknown category"):
            Category.parse("FITO6")

    def test_empty_custom_label_rejected(self):
        with pytest.raises(ValidationError, match="needs a label"):
            Category.parse("CUSTOM:  ")


class TestAccountRegistry:
    """Test the closed set of payment modes"""

    def setup_method(self):
        self.registry = AccountRegistry(
            [make_bank("CUB", "5000"), make_bank("KVB", "200", status=AccountStatus.ARCHIVED)],
            cash_opening_balance="1000"
        )

    def test_known_modes(self):
        assert self.registry.is_known(CASH)
        assert self.registry.is_known(JOURNAL)
        assert self.registry.is_known("CUB")
        assert not self.registry.is_known("HDFC")

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValidationError, match="Unknown payment mode"):
            self.registry.validate_mode("HDFC")

    def test_archived_account_closed_to_new_vouchers(self):
        assert self.registry.validate_mode("KVB") == "KVB"
        with pytest.raises(ValidationError, match="archived"):
            self.registry.validate_new_voucher_mode("KVB")

    def test_archived_accounts_leave_dashboards(self):
        assert self.registry.all_accounts() == [CASH, "CUB", "KVB"]
        assert self.registry.active_accounts() == [CASH, "CUB"]

    def test_opening_balances_with_overrides(self):
        balances = self.registry.opening_balances({"CUB": "7500"})
        assert balances == {CASH: Decimal('1000'), "CUB": Decimal('7500'), "KVB": Decimal('200')}

    def test_reserved_ids_cannot_be_banks(self):
        with pytest.raises(ValidationError, match="reserved"):
            make_bank(CASH)


class TestGeneralLedger:
    """Test the voucher listing"""

    def test_filters_and_orders_newest_first(self):
        payments = [
            make_payment("P1", date=date(2025, 1, 10)),
            make_payment("P2", date=date(2025, 2, 10), mode="CUB"),
            make_payment("P3", PaymentType.OUT, date=date(2025, 3, 10), voucher_type=VoucherType.CONTRA,
                         target_mode="CUB", category="TRANSFER"),
            make_payment("P4", date=date(2025, 4, 10)),
        ]

        cub = general_ledger(payments, mode="CUB")
        assert [p.id for p in cub] == ["P3", "P2"]

        ranged = general_ledger(payments, start=date(2025, 2, 1), end=date(2025, 3, 31))
        assert [p.id for p in ranged] == ["P3", "P2"]

        assert [p.id for p in general_ledger(payments)] == ["P4", "P3", "P2", "P1"]


class TestAccountStatement:
    """Test the running balance book"""

    def setup_method(self):
        self.payments = [
            make_payment("P1", amount="500", date=date(2025, 1, 10)),
            make_payment("P4", PaymentType.OUT, "300", date=date(2025, 3, 10), category="EXPENSE"),
            make_payment("P2", amount="200", mode="CUB", date=date(2025, 2, 10)),
            make_payment("P3", PaymentType.OUT, "400", date=date(2025, 2, 20), voucher_type=VoucherType.CONTRA,
                         target_mode="CUB", category="TRANSFER"),
            make_payment("P5", amount="50", date=date(2025, 4, 10)),
        ]
        self.opening = {CASH: Decimal('1000')}

    def test_running_balance_oldest_first(self):
        statement = account_statement(self.payments, self.opening, CASH)

        assert [line.payment.id for line in statement.lines] == ["P1", "P3", "P4", "P5"]
        assert [line.amount for line in statement.lines] == [
            Decimal('500'), Decimal('-400'), Decimal('-300'), Decimal('50')
        ]
        assert [line.running_balance for line in statement.lines] == [
            Decimal('1500'), Decimal('1100'), Decimal('800'), Decimal('850')
        ]
        assert statement.opening_balance == Decimal('1000')
        assert statement.closing_balance == compute_account_balance(self.payments, self.opening, CASH)

    def test_contra_credits_the_target(self):
        statement = account_statement(self.payments, self.opening, "CUB")

        assert [(line.payment.id, line.running_balance) for line in statement.lines] == [
            ("P2", Decimal('200')), ("P3", Decimal('600'))
        ]
        assert statement.opening_balance == Decimal('0')

    def test_range_rolls_earlier_vouchers_into_opening(self):
        statement = account_statement(
            self.payments, self.opening, CASH, start=date(2025, 2, 1), end=date(2025, 3, 31)
        )

        assert statement.opening_balance == Decimal('1500')
        assert [line.payment.id for line in statement.lines] == ["P3", "P4"]
        assert statement.closing_balance == Decimal('800')

    def test_same_day_vouchers_follow_creation_order(self):
        later = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)
        payments = [
            make_payment("B", PaymentType.OUT, "100", created_at=later),
            make_payment("A", amount="100"),
        ]

        statement = account_statement(payments, {}, CASH)
        assert [line.running_balance for line in statement.lines] == [Decimal('100'), Decimal('0')]
