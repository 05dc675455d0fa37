"""
Investment Module

Savings the business puts away: recurring deposits and external chit funds
(MONTHLY contributions) or one-off placements (LUMP_SUM). Each contribution
is an InvestmentTransaction tied to the voucher that paid it, so deleting
the contribution can reverse exactly that voucher.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import ZERO, to_decimal
from .exceptions import DependencyNotFound, IntegrityViolation, ValidationError
from .storage import StorageRecord, parse_date, parse_datetime


CHIT_SAVINGS = "CHIT_SAVINGS"


class ContributionType(Enum):
    MONTHLY = "MONTHLY"
    LUMP_SUM = "LUMP_SUM"


class InvestmentStatus(Enum):
    ACTIVE = "ACTIVE"
    MATURED = "MATURED"
    CLOSED = "CLOSED"


@dataclass
class InvestmentTransaction:
    """One contribution; dividend is tracked beside, never inside, principal"""
    id: str
    month: int
    amount_paid: Decimal
    dividend: Decimal
    date: date
    payment_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        self.amount_paid = to_decimal(self.amount_paid)
        self.dividend = to_decimal(self.dividend)
        if self.amount_paid < ZERO:
            raise ValidationError("Contribution amount cannot be negative", field="amount_paid")
        if self.dividend < ZERO:
            raise ValidationError("Dividend cannot be negative", field="dividend")

    @property
    def total_payable(self) -> Decimal:
        return self.amount_paid + self.dividend

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InvestmentTransaction':
        return cls(
            id=data['id'],
            month=int(data.get('month', 0)),
            amount_paid=to_decimal(data['amount_paid']),
            dividend=to_decimal(data.get('dividend', '0')),
            date=parse_date(data['date']),
            payment_id=data.get('payment_id'),
            notes=data.get('notes')
        )


@dataclass
class ChitConfig:
    """Terms of an external chit fund the business subscribes to"""
    chit_value: Decimal
    duration_months: int
    monthly_installment: Decimal
    is_prized: bool = False
    prize_month: Optional[int] = None
    prize_amount: Optional[Decimal] = None
    payment_id: Optional[str] = None  # Receipt voucher of the prize money

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChitConfig':
        return cls(
            chit_value=to_decimal(data['chit_value']),
            duration_months=int(data['duration_months']),
            monthly_installment=to_decimal(data['monthly_installment']),
            is_prized=data.get('is_prized', False),
            prize_month=data.get('prize_month'),
            prize_amount=to_decimal(data['prize_amount']) if data.get('prize_amount') is not None else None,
            payment_id=data.get('payment_id')
        )


@dataclass
class Investment(StorageRecord):
    name: str
    type: str
    provider: str
    contribution_type: ContributionType
    amount_invested: Decimal
    start_date: date
    status: InvestmentStatus = InvestmentStatus.ACTIVE
    current_value: Optional[Decimal] = None
    expected_maturity_value: Optional[Decimal] = None
    maturity_date: Optional[date] = None
    transactions: List[InvestmentTransaction] = field(default_factory=list)
    chit_config: Optional[ChitConfig] = None
    notes: Optional[str] = None
    related_auction_id: Optional[str] = None  # Chit auction whose winnings funded it
    version: int = 1

    def __post_init__(self):
        self.amount_invested = to_decimal(self.amount_invested)
        if self.current_value is not None:
            self.current_value = to_decimal(self.current_value)
        if self.amount_invested < ZERO:
            raise ValidationError("Amount invested cannot be negative", field="amount_invested")

    @property
    def is_chit_savings(self) -> bool:
        return self.type == CHIT_SAVINGS or self.chit_config is not None

    @property
    def voucher_category(self) -> str:
        """Category for the vouchers that fund this investment"""
        if self.is_chit_savings:
            return CHIT_SAVINGS
        return f"INVESTMENT_{self.type.upper().replace(' ', '_')}"

    def get_transaction(self, txn_id: str) -> Optional[InvestmentTransaction]:
        for txn in self.transactions:
            if txn.id == txn_id:
                return txn
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Investment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            type=data['type'],
            provider=data.get('provider', ''),
            contribution_type=ContributionType(data['contribution_type']),
            amount_invested=to_decimal(data.get('amount_invested', '0')),
            start_date=parse_date(data['start_date']),
            status=InvestmentStatus(data.get('status', 'ACTIVE')),
            current_value=to_decimal(data['current_value']) if data.get('current_value') is not None else None,
            expected_maturity_value=(
                to_decimal(data['expected_maturity_value'])
                if data.get('expected_maturity_value') is not None else None
            ),
            maturity_date=parse_date(data.get('maturity_date')),
            transactions=[InvestmentTransaction.from_dict(t) for t in data.get('transactions', [])],
            chit_config=ChitConfig.from_dict(data['chit_config']) if data.get('chit_config') else None,
            notes=data.get('notes'),
            related_auction_id=data.get('related_auction_id'),
            version=data.get('version', 1)
        )


def compute_investment_total(investment: Investment) -> Decimal:
    """
    Principal currently invested.

    Recurring and chit-savings investments are worth what has been paid in;
    dividends are excluded. Lump sums report current value when known.
    """
    if investment.contribution_type == ContributionType.MONTHLY or investment.is_chit_savings:
        return sum((t.amount_paid for t in investment.transactions), ZERO)
    if investment.current_value is not None:
        return investment.current_value
    return investment.amount_invested


def record_contribution(investment: Investment, transaction: InvestmentTransaction) -> Investment:
    """
    Append a contribution. A voucher funds at most one contribution, so a
    repeated payment_id is an integrity error rather than a silent no-op.
    """
    if investment.status != InvestmentStatus.ACTIVE:
        raise IntegrityViolation(
            f"Investment {investment.name} is {investment.status.value}; contributions are closed",
            entity_type="investment", entity_id=investment.id
        )
    if transaction.payment_id and any(t.payment_id == transaction.payment_id for t in investment.transactions):
        raise IntegrityViolation(
            f"Voucher {transaction.payment_id} is already recorded against {investment.name}",
            entity_type="investment", entity_id=investment.id
        )
    if investment.get_transaction(transaction.id):
        raise IntegrityViolation(
            f"Contribution {transaction.id} already exists",
            entity_type="investment", entity_id=investment.id
        )

    transactions = sorted(investment.transactions + [transaction], key=lambda t: (t.month, t.date))
    return replace(
        investment,
        transactions=transactions,
        updated_at=datetime.now(timezone.utc),
        version=investment.version + 1
    )


def remove_contribution(investment: Investment, txn_id: str) -> Investment:
    if investment.get_transaction(txn_id) is None:
        raise DependencyNotFound("investment_transaction", txn_id)
    return replace(
        investment,
        transactions=[t for t in investment.transactions if t.id != txn_id],
        updated_at=datetime.now(timezone.utc),
        version=investment.version + 1
    )


def next_contribution_month(investment: Investment) -> int:
    """Month after the latest recorded one, so removed months are not reused"""
    return max((t.month for t in investment.transactions), default=0) + 1


def declare_prize(
    investment: Investment,
    prize_amount: Any,
    prize_month: int,
    payment_id: Optional[str] = None
) -> Investment:
    """Mark an external chit as won; the prize receipt voucher is linked by payment_id"""
    if investment.chit_config is None:
        raise ValidationError(f"Investment {investment.name} is not a chit fund", field="chit_config")
    if investment.chit_config.is_prized:
        raise IntegrityViolation(
            f"Chit {investment.name} was already prized in month {investment.chit_config.prize_month}",
            entity_type="investment", entity_id=investment.id
        )
    prize_amount = to_decimal(prize_amount)
    if prize_amount < ZERO:
        raise ValidationError("Prize amount cannot be negative", field="prize_amount")
    if not 1 <= prize_month <= investment.chit_config.duration_months:
        raise ValidationError("Prize month is outside the chit duration", field="prize_month")

    chit_config = replace(
        investment.chit_config,
        is_prized=True,
        prize_amount=prize_amount,
        prize_month=prize_month,
        payment_id=payment_id
    )
    return replace(
        investment,
        chit_config=chit_config,
        updated_at=datetime.now(timezone.utc),
        version=investment.version + 1
    )


def new_transaction_id() -> str:
    return uuid.uuid4().hex[:9]
