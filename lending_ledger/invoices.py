"""
Invoice Module

Invoices and the balance state machine that payments drive:

    UNPAID <-> PARTIAL <-> PAID      (applying / reversing payments)
    any state -> VOID                (terminal, kept for audit)

The stored balance is a cached projection of the payment log. Every
transition goes through apply_payment/reverse_payment so the cache always
equals amount minus the payments currently applied, and
find_invoice_drift() can prove it.
"""

import re
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Any, Tuple
from enum import Enum

from .currency import ZERO, to_decimal, format_amount
from .exceptions import IntegrityViolation, ValidationError
from .storage import StorageRecord, parse_date, parse_datetime


class InvoiceType(Enum):
    ROYALTY = "ROYALTY"
    INTEREST = "INTEREST"
    CHIT = "CHIT"
    INTEREST_OUT = "INTEREST_OUT"  # Interest the business owes a lender


class InvoiceDirection(Enum):
    IN = "IN"    # Receivable
    OUT = "OUT"  # Payable


class InvoiceStatus(Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


@dataclass
class Invoice(StorageRecord):
    """An amount owed to (IN) or by (OUT) the business"""
    invoice_number: str
    customer_name: str
    type: InvoiceType
    amount: Decimal
    date: date
    direction: InvoiceDirection = InvoiceDirection.IN
    customer_id: Optional[str] = None
    lender_id: Optional[str] = None
    balance: Optional[Decimal] = None
    status: InvoiceStatus = InvoiceStatus.UNPAID
    is_void: bool = False
    voided_at: Optional[datetime] = None
    due_date: Optional[date] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    related_auction_id: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        if self.amount < ZERO:
            raise ValidationError("Invoice amount cannot be negative", field="amount")
        # A fresh invoice owes its full amount
        self.balance = self.amount if self.balance is None else to_decimal(self.balance)

    @property
    def is_outstanding(self) -> bool:
        return not self.is_void and self.balance > ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Invoice':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            invoice_number=data['invoice_number'],
            customer_name=data.get('customer_name', ''),
            type=InvoiceType(data['type']),
            amount=to_decimal(data['amount']),
            date=parse_date(data['date']),
            direction=InvoiceDirection(data.get('direction', 'IN')),
            customer_id=data.get('customer_id'),
            lender_id=data.get('lender_id'),
            balance=to_decimal(data['balance']) if data.get('balance') is not None else None,
            status=InvoiceStatus(data.get('status', 'UNPAID')),
            is_void=data.get('is_void', False),
            voided_at=parse_datetime(data.get('voided_at')),
            due_date=parse_date(data.get('due_date')),
            category=data.get('category'),
            notes=data.get('notes'),
            related_auction_id=data.get('related_auction_id'),
            created_by=data.get('created_by'),
            version=data.get('version', 1)
        )


def compute_invoice_status(amount: Any, balance: Any) -> InvoiceStatus:
    """PAID iff balance <= 0, PARTIAL iff 0 < balance < amount, else UNPAID"""
    amount = to_decimal(amount)
    balance = to_decimal(balance)
    if balance <= ZERO:
        return InvoiceStatus.PAID
    if balance < amount:
        return InvoiceStatus.PARTIAL
    return InvoiceStatus.UNPAID


def _with_balance(invoice: Invoice, balance: Decimal) -> Invoice:
    return replace(
        invoice,
        balance=balance,
        status=compute_invoice_status(invoice.amount, balance),
        updated_at=datetime.now(timezone.utc),
        version=invoice.version + 1
    )


def apply_payment(invoice: Invoice, amount: Any) -> Invoice:
    """
    Apply a received payment. Returns the updated invoice; the input is
    left untouched. Overpayment floors the balance at zero.
    """
    amount = to_decimal(amount)
    if amount < ZERO:
        raise ValidationError("Payment amount cannot be negative", field="amount")
    if invoice.is_void:
        raise IntegrityViolation(
            f"Cannot apply payment to void invoice {invoice.invoice_number}",
            entity_type="invoice", entity_id=invoice.id
        )
    return _with_balance(invoice, max(ZERO, invoice.balance - amount))


def reverse_payment(invoice: Invoice, amount: Any) -> Invoice:
    """
    Undo a previously applied payment. Restoring more than the invoice's
    original amount means the cached balance and the payment log disagree;
    that is reported, never clamped.
    """
    amount = to_decimal(amount)
    if amount < ZERO:
        raise ValidationError("Payment amount cannot be negative", field="amount")
    new_balance = invoice.balance + amount
    if new_balance > invoice.amount:
        raise IntegrityViolation(
            f"Reversing {format_amount(amount)} would raise invoice "
            f"{invoice.invoice_number} balance to {format_amount(new_balance)}, "
            f"above its amount {format_amount(invoice.amount)}",
            entity_type="invoice", entity_id=invoice.id
        )
    return _with_balance(invoice, new_balance)


def void_invoice(invoice: Invoice) -> Invoice:
    """Mark an invoice void. VOID is absorbing."""
    if invoice.is_void:
        raise IntegrityViolation(
            f"Invoice {invoice.invoice_number} is already void",
            entity_type="invoice", entity_id=invoice.id
        )
    now = datetime.now(timezone.utc)
    return replace(invoice, is_void=True, voided_at=now, updated_at=now, version=invoice.version + 1)


def recompute_invoice_balance(invoice: Invoice, payments: Iterable[Any]) -> Decimal:
    """
    Balance derived from the payment log alone: amount minus every IN
    payment linked to this invoice, floored at zero like apply_payment.
    """
    applied = sum(
        (p.amount for p in payments if p.invoice_id == invoice.id and p.applies_to_invoice),
        ZERO
    )
    return max(ZERO, invoice.amount - applied)


def find_invoice_drift(invoices: Iterable[Invoice], payments: Iterable[Any]) -> List[Tuple[Invoice, Decimal]]:
    """Non-void invoices whose cached balance differs from the payment log"""
    payments = list(payments)
    drifted = []
    for invoice in invoices:
        if invoice.is_void:
            continue
        expected = recompute_invoice_balance(invoice, payments)
        if expected != invoice.balance:
            drifted.append((invoice, expected))
    return drifted


# Invoice numbering

INVOICE_NUMBER_PATTERN = re.compile(r'^(?P<prefix>[A-Z]+)-(?P<year>\d{4})-(?P<seq>\d{4,})$')


def format_invoice_number(year: int, sequence: int, prefix: str = "INV") -> str:
    return f"{prefix}-{year}-{sequence:04d}"


def parse_invoice_number(number: str) -> Optional[Tuple[str, int, int]]:
    """(prefix, year, sequence) or None for numbers outside the scheme"""
    match = INVOICE_NUMBER_PATTERN.match(number or "")
    if not match:
        return None
    return match.group('prefix'), int(match.group('year')), int(match.group('seq'))


def max_invoice_sequence(invoice_numbers: Iterable[str], year: int, prefix: str = "INV") -> int:
    """Highest sequence already used for the year, 0 if none"""
    highest = 0
    for number in invoice_numbers:
        parsed = parse_invoice_number(number)
        if parsed and parsed[0] == prefix and parsed[1] == year:
            highest = max(highest, parsed[2])
    return highest


def next_invoice_numbers(
    invoice_numbers: Iterable[str],
    year: int,
    count: int = 1,
    prefix: str = "INV",
    floor: int = 0
) -> List[str]:
    """
    The next `count` numbers for the year: max(existing) + 1 onwards.
    `floor` is the last sequence already reserved, so numbers freed by
    deleted invoices are never handed out twice.
    """
    start = max(max_invoice_sequence(invoice_numbers, year, prefix), floor) + 1
    return [format_invoice_number(year, start + i, prefix) for i in range(count)]
