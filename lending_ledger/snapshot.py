"""
Ledger Snapshot Module

An in-memory copy of every collection the engine reasons about. The
calculators and the coordinator only ever see a snapshot; they never talk
to storage themselves.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Any

from .accounts import AccountRegistry, BankAccount, Payment, CASH
from .chits import ChitGroup
from .currency import ZERO, to_decimal
from .customers import Customer
from .exceptions import DependencyNotFound
from .investments import Investment
from .invoices import Invoice
from .liabilities import Liability
from .storage import StorageInterface, StorageRecord, parse_datetime


# Storage tables
PAYMENTS = "payments"
INVOICES = "invoices"
CHIT_GROUPS = "chit_groups"
INVESTMENTS = "investments"
CUSTOMERS = "customers"
LIABILITIES = "liabilities"
BANK_ACCOUNTS = "bank_accounts"
SETTINGS = "settings"
SEQUENCES = "sequences"
AUDIT_LOGS = "audit_logs"

APP_SETTINGS_ID = "app_settings"


@dataclass
class SequenceCounter(StorageRecord):
    """Last number handed out in a scope such as invoice-2025"""
    last: int = 0
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SequenceCounter':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            last=int(data.get('last', 0)),
            version=data.get('version', 1)
        )


def invoice_scope(year: int) -> str:
    return f"invoice-{year}"


def chit_scope(group_id: str) -> str:
    return f"chit-{group_id}"


def _by_id(records: Iterable[Any]) -> Dict[str, Any]:
    return {r.id: r for r in records}


@dataclass
class LedgerSnapshot:
    """Every collection at one point in time, keyed by id"""
    payments: Dict[str, Payment] = field(default_factory=dict)
    invoices: Dict[str, Invoice] = field(default_factory=dict)
    chit_groups: Dict[str, ChitGroup] = field(default_factory=dict)
    investments: Dict[str, Investment] = field(default_factory=dict)
    customers: Dict[str, Customer] = field(default_factory=dict)
    liabilities: Dict[str, Liability] = field(default_factory=dict)
    bank_accounts: Dict[str, BankAccount] = field(default_factory=dict)
    opening_balances: Dict[str, Decimal] = field(default_factory=dict)
    sequences: Dict[str, SequenceCounter] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def of(
        cls,
        payments: Iterable[Payment] = (),
        invoices: Iterable[Invoice] = (),
        chit_groups: Iterable[ChitGroup] = (),
        investments: Iterable[Investment] = (),
        customers: Iterable[Customer] = (),
        liabilities: Iterable[Liability] = (),
        bank_accounts: Iterable[BankAccount] = (),
        opening_balances: Optional[Dict[str, Any]] = None,
        sequences: Iterable[SequenceCounter] = ()
    ) -> 'LedgerSnapshot':
        """Build a snapshot from plain lists of entities"""
        return cls(
            payments=_by_id(payments),
            invoices=_by_id(invoices),
            chit_groups=_by_id(chit_groups),
            investments=_by_id(investments),
            customers=_by_id(customers),
            liabilities=_by_id(liabilities),
            bank_accounts=_by_id(bank_accounts),
            opening_balances={k: to_decimal(v) for k, v in (opening_balances or {}).items()},
            sequences=_by_id(sequences)
        )

    @classmethod
    def from_storage(cls, storage: StorageInterface) -> 'LedgerSnapshot':
        """Load every collection from a storage backend"""
        settings = storage.load(SETTINGS, APP_SETTINGS_ID) or {}
        return cls.of(
            payments=[Payment.from_dict(d) for d in storage.load_all(PAYMENTS)],
            invoices=[Invoice.from_dict(d) for d in storage.load_all(INVOICES)],
            chit_groups=[ChitGroup.from_dict(d) for d in storage.load_all(CHIT_GROUPS)],
            investments=[Investment.from_dict(d) for d in storage.load_all(INVESTMENTS)],
            customers=[Customer.from_dict(d) for d in storage.load_all(CUSTOMERS)],
            liabilities=[Liability.from_dict(d) for d in storage.load_all(LIABILITIES)],
            bank_accounts=[BankAccount.from_dict(d) for d in storage.load_all(BANK_ACCOUNTS)],
            opening_balances=settings.get('opening_balances', {}),
            sequences=[SequenceCounter.from_dict(d) for d in storage.load_all(SEQUENCES)]
        )

    # Accounts

    def registry(self) -> AccountRegistry:
        return AccountRegistry(
            self.bank_accounts.values(),
            cash_opening_balance=self.opening_balances.get(CASH, ZERO)
        )

    def account_opening_balances(self) -> Dict[str, Decimal]:
        """Bank record balances overlaid with the settings map"""
        return self.registry().opening_balances(self.opening_balances)

    # Lookups that abort a mutation when the reference is dangling

    def get_payment(self, payment_id: str) -> Payment:
        if payment_id not in self.payments:
            raise DependencyNotFound("payment", payment_id)
        return self.payments[payment_id]

    def get_invoice(self, invoice_id: str) -> Invoice:
        if invoice_id not in self.invoices:
            raise DependencyNotFound("invoice", invoice_id)
        return self.invoices[invoice_id]

    def get_chit_group(self, group_id: str) -> ChitGroup:
        if group_id not in self.chit_groups:
            raise DependencyNotFound("chit_group", group_id)
        return self.chit_groups[group_id]

    def get_investment(self, investment_id: str) -> Investment:
        if investment_id not in self.investments:
            raise DependencyNotFound("investment", investment_id)
        return self.investments[investment_id]

    def sequence(self, scope: str) -> Optional[SequenceCounter]:
        return self.sequences.get(scope)

    # Back-references

    def payments_for_invoice(self, invoice_id: str) -> List[Payment]:
        return [p for p in self.payments.values() if p.invoice_id == invoice_id]

    def invoices_for_auction(self, auction_id: str) -> List[Invoice]:
        return [i for i in self.invoices.values() if i.related_auction_id == auction_id]

    def payments_for_auction(self, auction_id: str) -> List[Payment]:
        return [p for p in self.payments.values() if p.related_auction_id == auction_id]

    def investments_for_auction(self, auction_id: str) -> List[Investment]:
        return [i for i in self.investments.values() if i.related_auction_id == auction_id]

    def invoice_numbers(self) -> List[str]:
        return [i.invoice_number for i in self.invoices.values()]
