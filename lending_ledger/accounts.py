"""
Account Ledger Module

Vouchers (payments) and the cash/bank accounts they move money through.
Balances are never stored: they are derived by folding the full voucher
history over each account's opening balance. The fold is a plain sum, so
the result does not depend on the order storage returns vouchers in.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Any
from enum import Enum

from .currency import ZERO, to_decimal
from .exceptions import ValidationError
from .storage import StorageRecord, parse_date, parse_datetime


CASH = "CASH"
JOURNAL = "JOURNAL"  # Book entry that moves no cash or bank money


class PaymentType(Enum):
    """Direction of money relative to the business"""
    IN = "IN"
    OUT = "OUT"


class VoucherType(Enum):
    """Voucher kinds"""
    RECEIPT = "RECEIPT"    # Money received
    PAYMENT = "PAYMENT"    # Money paid out
    CONTRA = "CONTRA"      # Transfer between two of our own accounts
    JOURNAL = "JOURNAL"    # Adjustment without cash movement


class AccountStatus(Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class PaymentCategory(Enum):
    """Categories the reports understand"""
    ROYALTY = "ROYALTY"
    INTEREST = "INTEREST"
    INTEREST_OUT = "INTEREST_OUT"
    CHIT = "CHIT"
    CHIT_SAVINGS = "CHIT_SAVINGS"
    GENERAL = "GENERAL"
    OTHER_BUSINESS = "OTHER_BUSINESS"
    DIRECT_INCOME = "DIRECT_INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"
    PRINCIPAL = "PRINCIPAL"
    PRINCIPAL_RECOVERY = "PRINCIPAL_RECOVERY"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    LOAN_INTEREST = "LOAN_INTEREST"
    INVESTMENT = "INVESTMENT"


INVESTMENT_PREFIX = "INVESTMENT_"
CUSTOM_PREFIX = "CUSTOM:"


@dataclass(frozen=True)
class Category:
    """
    A validated voucher category.

    Known categories map onto PaymentCategory. Investment vouchers use
    INVESTMENT_<investment type>. Anything user-defined must be explicit:
    "CUSTOM:<label>".
    """
    code: str
    custom: bool = False

    @classmethod
    def parse(cls, value: Any) -> 'Category':
        if isinstance(value, Category):
            return value
        if isinstance(value, PaymentCategory):
            return cls(value.value)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Invalid category: {value!r}", field="category")
        code = value.strip()
        if code.startswith(CUSTOM_PREFIX):
            label = code[len(CUSTOM_PREFIX):].strip()
            if not label:
                raise ValidationError("Custom category needs a label", field="category")
            return cls(label, custom=True)
        code = code.upper()
        if code in PaymentCategory.__members__:
            return cls(code)
        if code.startswith(INVESTMENT_PREFIX) and len(code) > len(INVESTMENT_PREFIX):
            return cls(code)
        raise ValidationError(
            f"Unknown category {value!r}; use CUSTOM:<label> for user-defined categories",
            field="category"
        )

    @classmethod
    def custom_category(cls, label: str) -> 'Category':
        return cls.parse(CUSTOM_PREFIX + label)

    def is_(self, known: PaymentCategory) -> bool:
        return not self.custom and self.code == known.value

    def __str__(self) -> str:
        return f"{CUSTOM_PREFIX}{self.code}" if self.custom else self.code


@dataclass
class BankAccount(StorageRecord):
    """A bank account the business holds; CASH is implicit and has no record"""
    name: str
    opening_balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 1

    def __post_init__(self):
        self.opening_balance = to_decimal(self.opening_balance)
        if self.id in (CASH, JOURNAL):
            raise ValidationError(f"{self.id} is reserved and cannot be a bank account id", field="id")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BankAccount':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            opening_balance=to_decimal(data.get('opening_balance', '0')),
            status=AccountStatus(data.get('status', 'ACTIVE')),
            version=data.get('version', 1)
        )


@dataclass
class Payment(StorageRecord):
    """
    A voucher. Once its effects are settled into invoice balances it is
    only changed through edit/delete, which reverse those effects first.
    """
    type: PaymentType
    voucher_type: VoucherType
    mode: str
    amount: Decimal
    source_id: str
    source_name: str
    category: Category
    date: date
    target_mode: Optional[str] = None
    invoice_id: Optional[str] = None
    related_auction_id: Optional[str] = None
    notes: Optional[str] = None
    business_unit: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.category = Category.parse(self.category)
        if self.amount < ZERO:
            raise ValidationError("Payment amount cannot be negative", field="amount")
        if not self.mode:
            raise ValidationError("Payment mode is required", field="mode")

        if self.voucher_type == VoucherType.CONTRA:
            if not self.target_mode:
                raise ValidationError("CONTRA voucher needs a target account", field="target_mode")
            if self.target_mode == self.mode:
                raise ValidationError("CONTRA source and target accounts must differ", field="target_mode")

    @property
    def applies_to_invoice(self) -> bool:
        """True when this voucher reduces an invoice balance"""
        return bool(self.invoice_id) and self.type == PaymentType.IN

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['category'] = str(self.category)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            type=PaymentType(data['type']),
            voucher_type=VoucherType(data['voucher_type']),
            mode=data['mode'],
            amount=to_decimal(data['amount']),
            source_id=data.get('source_id', ''),
            source_name=data.get('source_name', ''),
            category=Category.parse(data['category']),
            date=parse_date(data['date']),
            target_mode=data.get('target_mode'),
            invoice_id=data.get('invoice_id'),
            related_auction_id=data.get('related_auction_id'),
            notes=data.get('notes'),
            business_unit=data.get('business_unit'),
            created_by=data.get('created_by'),
            version=data.get('version', 1)
        )


def account_effect(payment: Payment, account: str) -> Decimal:
    """Signed amount payment moves into (positive) or out of (negative) account"""
    if payment.mode == account:
        return payment.amount if payment.type == PaymentType.IN else -payment.amount
    if payment.voucher_type == VoucherType.CONTRA and payment.target_mode == account:
        return payment.amount
    return ZERO


def compute_account_balance(
    payments: Iterable[Payment],
    opening_balances: Dict[str, Any],
    account: str
) -> Decimal:
    """
    Current balance of one account.

    A voucher drawn on the account adds (IN) or subtracts (OUT) its amount.
    A CONTRA voucher targeting the account adds its amount whatever its
    type. Since a CONTRA can never target its own source account, each
    CONTRA moves money out of exactly one account and into exactly one.
    """
    balance = to_decimal(opening_balances.get(account, ZERO))
    for payment in payments:
        balance += account_effect(payment, account)
    return balance


class AccountRegistry:
    """
    The closed set of modes a voucher may use: CASH, JOURNAL and the
    registered bank accounts. Archived accounts stay valid for history but
    drop out of active_accounts(), which dashboards use.
    """

    def __init__(self, bank_accounts: Iterable[BankAccount] = (), cash_opening_balance: Any = ZERO):
        self._banks: Dict[str, BankAccount] = {b.id: b for b in bank_accounts}
        self.cash_opening_balance = to_decimal(cash_opening_balance)

    def is_known(self, mode: str) -> bool:
        return mode in (CASH, JOURNAL) or mode in self._banks

    def validate_mode(self, mode: Optional[str], field: str = "mode") -> str:
        if not mode or not self.is_known(mode):
            raise ValidationError(f"Unknown payment mode: {mode!r}", field=field)
        return mode

    def validate_new_voucher_mode(self, mode: Optional[str], field: str = "mode") -> str:
        """New vouchers may not be drawn on archived accounts"""
        self.validate_mode(mode, field)
        bank = self._banks.get(mode)
        if bank is not None and not bank.is_active:
            raise ValidationError(f"Bank account {mode} is archived", field=field)
        return mode

    def all_accounts(self) -> List[str]:
        """CASH plus every bank account, archived included"""
        return [CASH] + list(self._banks)

    def active_accounts(self) -> List[str]:
        return [CASH] + [b.id for b in self._banks.values() if b.is_active]

    def opening_balances(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Decimal]:
        """Opening balance per account; settings overrides win over the account record"""
        balances = {CASH: self.cash_opening_balance}
        for bank in self._banks.values():
            balances[bank.id] = bank.opening_balance
        for account, value in (overrides or {}).items():
            balances[account] = to_decimal(value)
        return balances


def compute_account_balances(
    payments: Iterable[Payment],
    opening_balances: Dict[str, Any],
    accounts: Iterable[str]
) -> Dict[str, Decimal]:
    """Balance of every listed account"""
    payments = list(payments)
    return {
        account: compute_account_balance(payments, opening_balances, account)
        for account in accounts
    }


def general_ledger(
    payments: Iterable[Payment],
    start: Optional[date] = None,
    end: Optional[date] = None,
    mode: Optional[str] = None
) -> List[Payment]:
    """Vouchers in a date range touching an account, newest first"""
    result = []
    for payment in payments:
        if start and payment.date < start:
            continue
        if end and payment.date > end:
            continue
        if mode and payment.mode != mode and payment.target_mode != mode:
            continue
        result.append(payment)
    result.sort(key=lambda p: (p.date, p.created_at), reverse=True)
    return result


@dataclass
class StatementLine:
    payment: Payment
    amount: Decimal  # Signed effect on the account
    running_balance: Decimal


@dataclass
class AccountStatement:
    """One account's book: opening row, vouchers oldest first, closing row"""
    account: str
    opening_balance: Decimal
    lines: List[StatementLine]
    closing_balance: Decimal


def account_statement(
    payments: Iterable[Payment],
    opening_balances: Dict[str, Any],
    account: str,
    start: Optional[date] = None,
    end: Optional[date] = None
) -> AccountStatement:
    """
    Running balance of one account over a date range.

    Vouchers dated before start roll into the opening balance and vouchers
    after end are left out, so closing_balance is the balance as of end.
    Same-day vouchers are ordered by creation time.
    """
    touching = sorted(
        (p for p in payments
         if p.mode == account or (p.voucher_type == VoucherType.CONTRA and p.target_mode == account)),
        key=lambda p: (p.date, p.created_at, p.id)
    )
    balance = to_decimal(opening_balances.get(account, ZERO))
    opening = balance
    lines = []
    for payment in touching:
        if end and payment.date > end:
            break
        effect = account_effect(payment, account)
        balance += effect
        if start and payment.date < start:
            opening = balance
            continue
        lines.append(StatementLine(payment, effect, balance))
    return AccountStatement(account, opening, lines, balance)
