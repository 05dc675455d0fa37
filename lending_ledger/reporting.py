"""
Reporting Module

Dashboard statistics and outstanding reports derived from a LedgerSnapshot.
Everything here is a pure read: the same snapshot always gives the same
numbers, whatever order its collections were loaded in.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Any

from .accounts import CASH, PaymentType, VoucherType, compute_account_balance
from .config import LedgerConfig, get_config
from .currency import ZERO
from .investments import compute_investment_total
from .invoices import InvoiceDirection, InvoiceType
from .snapshot import LedgerSnapshot
from .storage import serialize_value


@dataclass
class DashboardStats:
    """Headline numbers for the dashboard"""
    cash_in_hand: Decimal
    bank_balances: Dict[str, Decimal]
    receivable_outstanding: Decimal
    advances_owed: Decimal
    payable_outstanding: Decimal
    royalty_income_month: Decimal
    interest_income_month: Decimal
    chit_income_month: Decimal
    expenses_month: Decimal
    net_profit_month: Decimal
    total_investments: Decimal
    year: int
    month: int

    @property
    def income_month(self) -> Decimal:
        return self.royalty_income_month + self.interest_income_month + self.chit_income_month

    def to_dict(self) -> Dict[str, Any]:
        return serialize_value({
            'cash_in_hand': self.cash_in_hand,
            'bank_balances': self.bank_balances,
            'receivable_outstanding': self.receivable_outstanding,
            'advances_owed': self.advances_owed,
            'payable_outstanding': self.payable_outstanding,
            'royalty_income_month': self.royalty_income_month,
            'interest_income_month': self.interest_income_month,
            'chit_income_month': self.chit_income_month,
            'expenses_month': self.expenses_month,
            'net_profit_month': self.net_profit_month,
            'total_investments': self.total_investments,
            'year': self.year,
            'month': self.month
        })


def _in_month(value: date, year: int, month: int) -> bool:
    return value.year == year and value.month == month


def customer_balances(
    snapshot: LedgerSnapshot,
    excluded_categories: Iterable[str] = ("PRINCIPAL_RECOVERY",)
) -> Dict[str, Decimal]:
    """
    Invoiced minus received per customer. Positive means the customer owes
    us, negative means they paid in advance. Void invoices and payable
    invoices (direction OUT) do not count.
    """
    excluded = set(excluded_categories)
    balances = {}
    for customer in snapshot.customers.values():
        invoiced = sum(
            (i.amount for i in snapshot.invoices.values()
             if i.customer_id == customer.id and not i.is_void and i.direction == InvoiceDirection.IN),
            ZERO
        )
        paid = sum(
            (p.amount for p in snapshot.payments.values()
             if p.source_id == customer.id and p.type == PaymentType.IN
             and str(p.category) not in excluded),
            ZERO
        )
        balances[customer.id] = invoiced - paid
    return balances


def compute_dashboard_stats(
    snapshot: LedgerSnapshot,
    today: Optional[date] = None,
    config: Optional[LedgerConfig] = None
) -> DashboardStats:
    """
    Cash and active bank balances, outstanding totals, and this month's
    income, expenses and profit.

    Archived bank accounts still count towards history but are left off
    the dashboard.
    """
    config = config or get_config()
    today = today or date.today()
    payments = list(snapshot.payments.values())
    opening = snapshot.account_opening_balances()
    registry = snapshot.registry()

    cash = compute_account_balance(payments, opening, CASH)
    banks = {
        account: compute_account_balance(payments, opening, account)
        for account in registry.active_accounts() if account != CASH
    }

    balances = customer_balances(snapshot, config.receivable_excluded_categories)
    receivable = sum((b for b in balances.values() if b > ZERO), ZERO)
    advances = -sum((b for b in balances.values() if b < ZERO), ZERO)
    payable = sum((l.principal for l in snapshot.liabilities.values() if l.is_active), ZERO)

    month_invoices = [
        i for i in snapshot.invoices.values()
        if not i.is_void and _in_month(i.date, today.year, today.month)
    ]

    def income(invoice_type: InvoiceType) -> Decimal:
        return sum((i.amount for i in month_invoices if i.type == invoice_type), ZERO)

    royalty = income(InvoiceType.ROYALTY)
    interest = income(InvoiceType.INTEREST)
    chit = income(InvoiceType.CHIT)

    expense_excluded = set(config.expense_excluded_categories)
    expenses = sum(
        (p.amount for p in payments
         if p.type == PaymentType.OUT and p.voucher_type == VoucherType.PAYMENT
         and _in_month(p.date, today.year, today.month)
         and str(p.category) not in expense_excluded),
        ZERO
    )

    return DashboardStats(
        cash_in_hand=cash,
        bank_balances=banks,
        receivable_outstanding=receivable,
        advances_owed=advances,
        payable_outstanding=payable,
        royalty_income_month=royalty,
        interest_income_month=interest,
        chit_income_month=chit,
        expenses_month=expenses,
        net_profit_month=royalty + interest + chit - expenses,
        total_investments=sum((compute_investment_total(i) for i in snapshot.investments.values()), ZERO),
        year=today.year,
        month=today.month
    )


@dataclass
class ReceivableLine:
    customer_id: str
    customer_name: str
    phone: str
    total_invoiced: Decimal
    total_paid: Decimal
    total_outstanding: Decimal


@dataclass
class PayableLine:
    liability_id: str
    provider_name: str
    type: str
    principal: Decimal
    remaining_balance: Decimal
    interest_rate: Decimal


def outstanding_receivables(snapshot: LedgerSnapshot) -> List[ReceivableLine]:
    """Customers with something still owed, opening balance included"""
    lines = []
    for customer in snapshot.customers.values():
        invoices = [
            i for i in snapshot.invoices.values()
            if i.customer_id == customer.id and not i.is_void and i.direction == InvoiceDirection.IN
        ]
        invoiced = sum((i.amount for i in invoices), ZERO)
        open_balance = sum((i.balance for i in invoices), ZERO)
        outstanding = open_balance + customer.opening_balance
        if outstanding > ZERO:
            lines.append(ReceivableLine(
                customer_id=customer.id,
                customer_name=customer.name,
                phone=customer.phone,
                total_invoiced=invoiced,
                total_paid=invoiced - open_balance,
                total_outstanding=outstanding
            ))
    lines.sort(key=lambda line: line.total_outstanding, reverse=True)
    return lines


def outstanding_payables(snapshot: LedgerSnapshot) -> List[PayableLine]:
    """Active loans owed by the business"""
    return [
        PayableLine(
            liability_id=l.id,
            provider_name=l.provider_name,
            type=l.type.value,
            principal=l.principal,
            remaining_balance=l.remaining_balance,
            interest_rate=l.interest_rate
        )
        for l in sorted(snapshot.liabilities.values(), key=lambda l: l.provider_name)
        if l.is_active
    ]
